"""System prompt for agent turns, rendered from the template shipped in ``gitwright/prompts``."""

from importlib import resources

SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"


class _KeepUnknown(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def read_template(name: str = SYSTEM_PROMPT_TEMPLATE) -> str:
    """Read a packaged prompt template."""
    return resources.files("gitwright").joinpath("prompts").joinpath(name).read_text(encoding="utf-8").strip()


class SystemPrompt:
    """Fills the repository context of a session into the prompt template.

    Placeholders with no value are left in the text as written.
    """

    def __init__(self, template: str | None = None):
        self.template = read_template() if template is None else template

    def render(
        self,
        owner: str = "",
        repo_name: str = "",
        clone_url: str = "",
        access_token: str = "",
        workspace_root: str = "/workspace",
    ) -> str:
        values = _KeepUnknown(
            owner=owner,
            repo_name=repo_name,
            clone_url=clone_url,
            access_token=access_token,
            workspace_root=workspace_root.rstrip("/"),
        )
        return self.template.format_map(values)
