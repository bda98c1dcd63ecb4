"""Minimal GitHub REST client used by the repository tools and the web API."""

from typing import Any

import httpx

from gitwright.config import Config, get_config
from gitwright.exceptions import GitHubAPIError
from gitwright.logging import get_logger

log = get_logger(__name__)


class GitHubClient:
    """Async GitHub REST client authenticated with a user access token."""

    def __init__(
        self,
        access_token: str = "",
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "gitwright",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        access_token: str,
        config: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "GitHubClient":
        cfg = config or get_config()
        return cls(
            access_token=access_token,
            api_url=cfg.github.api_url,
            timeout=cfg.github.timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitHubAPIError(f"GitHub request failed: {e}") from e
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            log.warning("GitHub API error", method=method, path=path, status=response.status_code)
            raise GitHubAPIError(
                f"GitHub API error ({response.status_code}): {detail}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_issues(self, owner: str, repo: str) -> list[dict[str, Any]]:
        """List a repository's issues, reduced to the fields the model needs."""
        issues = await self._request("GET", f"/repos/{owner}/{repo}/issues")
        return [
            {
                "id": issue.get("id"),
                "title": issue.get("title"),
                "description": issue.get("body"),
                "state": issue.get("state"),
                "createdAt": issue.get("created_at"),
                "updatedAt": issue.get("updated_at"),
            }
            for issue in issues or []
        ]

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str = "main",
    ) -> dict[str, Any]:
        log.info("Creating pull request", owner=owner, repo=repo, head=head, base=base)
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )

    async def list_repos_for_authenticated_user(self, per_page: int = 100) -> list[dict[str, Any]]:
        repos = await self._request("GET", "/user/repos", params={"per_page": per_page})
        return list(repos or [])

    async def close(self) -> None:
        await self._client.aclose()


def repos_with_open_issues(repos: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep repositories that track issues and have at least one open."""
    return [
        repo
        for repo in repos
        if repo.get("has_issues") and int(repo.get("open_issues") or 0) > 0
    ]
