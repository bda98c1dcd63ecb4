"""Clients for the external services the agent works against."""

from gitwright.integrations.github import GitHubClient
from gitwright.integrations.sandbox import ExecResult, LocalSandbox, RemoteSandbox, Sandbox, create_sandbox

__all__ = [
    "ExecResult",
    "GitHubClient",
    "LocalSandbox",
    "RemoteSandbox",
    "Sandbox",
    "create_sandbox",
]
