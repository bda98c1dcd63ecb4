"""GitHub repository tools."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from gitwright.exceptions import GitHubAPIError
from gitwright.integrations.github import GitHubClient
from gitwright.tools.registry import Tool, ToolContext


def _require_github(ctx: ToolContext) -> GitHubClient:
    if ctx.github is None:
        raise GitHubAPIError("GitHub is not connected for this session; no access token was provided")
    return ctx.github


class ListIssuesArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner: str = Field(description="Repository owner")
    repo_name: str = Field(alias="repoName", description="Repository name")


class ListIssuesTool(Tool):
    name = "listIssues"
    description = "List all issues for a given repository"
    args_model = ListIssuesArgs

    async def execute(self, args: ListIssuesArgs, ctx: ToolContext) -> list[dict[str, Any]]:
        return await _require_github(ctx).list_issues(args.owner, args.repo_name)


class CreatePullRequestArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_name: str = Field(alias="repoName")
    owner: str
    title: str
    body: str
    branch_name: str = Field(alias="branchName", description="Branch holding the changes")


class CreatePullRequestTool(Tool):
    name = "createPullRequest"
    description = "Create a pull request for a given repository"
    args_model = CreatePullRequestArgs

    async def execute(self, args: CreatePullRequestArgs, ctx: ToolContext) -> str:
        await _require_github(ctx).create_pull_request(
            owner=args.owner,
            repo=args.repo_name,
            title=args.title,
            body=args.body,
            head=args.branch_name,
            base="main",
        )
        return "Pull request created successfully"
