"""Sandbox clients: command execution and file I/O against a repository workspace."""

import asyncio
import os
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from gitwright.config import Config, get_config
from gitwright.exceptions import SandboxError
from gitwright.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_base_command(tokens: list[str]) -> str:
    for token in tokens:
        token = token.strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def is_blocked_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Match a command against blocked patterns.

    Patterns without whitespace match the base command of each shell
    segment; patterns with whitespace are searched in the segment text.

    Returns:
        Tuple of (is_blocked, matched_pattern_or_reason)
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"
    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [base for segment in segments if (base := _segment_base_command(segment))]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level else base_commands
        matcher = compiled.search if segment_level else compiled.match
        if any(matcher(target) for target in targets):
            return True, pattern
    return False, ""


class ExecResult(BaseModel):
    """Outcome of one sandbox command."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = Field(default=None)


class Sandbox(ABC):
    """Abstract sandbox: the isolated workspace the agent's repository lives in."""

    workspace_root: str = "/workspace"

    @abstractmethod
    async def exec(self, command: str, timeout: float | None = None) -> ExecResult:
        """Run a shell command inside the sandbox."""
        pass

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read a UTF-8 text file."""
        pass

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Write a UTF-8 text file, creating parent directories."""
        pass

    async def close(self) -> None:
        return None


class RemoteSandbox(Sandbox):
    """Client for an HTTP sandbox service."""

    def __init__(
        self,
        base_url: str,
        sandbox_id: str = "user-123",
        api_key: str = "",
        timeout: float = 120.0,
        workspace_root: str = "/workspace",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.sandbox_id = sandbox_id
        self.workspace_root = workspace_root
        self.timeout = timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _post(self, path: str, payload: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        url = f"/sandboxes/{self.sandbox_id}{path}"
        try:
            response = await self._client.post(url, json=payload, timeout=timeout or self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SandboxError(f"Sandbox request failed ({e.response.status_code}): {e.response.text}") from e
        except httpx.HTTPError as e:
            raise SandboxError(f"Sandbox unreachable: {e}") from e
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def exec(self, command: str, timeout: float | None = None) -> ExecResult:
        log.info("Sandbox exec", sandbox_id=self.sandbox_id, command=command)
        data = await self._post("/exec", {"command": command}, timeout=timeout)
        return ExecResult(
            success=bool(data.get("success", data.get("exitCode", 1) == 0)),
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
            exit_code=data.get("exitCode"),
        )

    async def read_file(self, path: str) -> str:
        data = await self._post("/files/read", {"path": path, "encoding": "utf-8"})
        return str(data.get("content") or "")

    async def write_file(self, path: str, content: str) -> None:
        await self._post("/files/write", {"path": path, "content": content, "encoding": "utf-8"})

    async def close(self) -> None:
        await self._client.aclose()


class LocalSandbox(Sandbox):
    """Sandbox backed by a local directory and subprocesses.

    Paths under ``workspace_root`` are mapped onto ``root``; nothing outside
    ``root`` can be read or written.
    """

    def __init__(
        self,
        root: Path | str,
        workspace_root: str = "/workspace",
        timeout: float = 120.0,
        blocked: list[str] | None = None,
    ):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.workspace_root = workspace_root.rstrip("/") or "/"
        self.timeout = timeout
        self.blocked = list(blocked or [])

    def resolve_path(self, path: str) -> Path:
        raw = str(path or "").strip()
        if not raw:
            raise SandboxError("Path is empty")
        if raw == self.workspace_root or raw.startswith(self.workspace_root + "/"):
            raw = raw[len(self.workspace_root):].lstrip("/")
        candidate = Path(raw)
        if candidate.is_absolute():
            raise SandboxError(f"Path must be inside the workspace: {path}")
        resolved = (self.root / candidate).resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError as e:
            raise SandboxError(f"Path must be inside the workspace: {path}") from e
        return resolved

    def _localize(self, command: str) -> str:
        if self.workspace_root == str(self.root):
            return command
        return command.replace(self.workspace_root + "/", str(self.root) + "/")

    async def exec(self, command: str, timeout: float | None = None) -> ExecResult:
        blocked, matched = is_blocked_command(command, self.blocked)
        if blocked:
            log.warning("Blocked sandbox command", command=command, reason=matched)
            return ExecResult(success=False, stderr=f"Command blocked: {matched}", exit_code=None)

        timeout = max(1.0, float(timeout or self.timeout))
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing sandbox command", command=command, cwd=str(self.root), timeout=timeout)
        process = await asyncio.create_subprocess_shell(
            self._localize(command),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.root),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            label = int(timeout) if timeout.is_integer() else timeout
            return ExecResult(success=False, stderr=f"Command timed out after {label}s", exit_code=None)
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        return ExecResult(
            success=process.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )

    async def read_file(self, path: str) -> str:
        file_path = self.resolve_path(path)
        if not file_path.is_file():
            raise SandboxError(f"File not found: {path}")
        return await asyncio.to_thread(file_path.read_text, encoding="utf-8")

    async def write_file(self, path: str, content: str) -> None:
        file_path = self.resolve_path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_text, content, encoding="utf-8")
        log.info("Sandbox file written", path=str(file_path), chars=len(content))


def create_sandbox(config: Config | None = None) -> Sandbox:
    """Create the sandbox client selected by configuration."""
    cfg = config or get_config()
    if cfg.sandbox.mode == "local":
        return LocalSandbox(
            root=cfg.resolved_local_sandbox_root(),
            workspace_root=cfg.sandbox.workspace_root,
            timeout=cfg.sandbox.timeout,
            blocked=cfg.sandbox.blocked,
        )
    return RemoteSandbox(
        base_url=cfg.sandbox.base_url,
        sandbox_id=cfg.sandbox.sandbox_id,
        api_key=cfg.sandbox.api_key,
        timeout=cfg.sandbox.timeout,
        workspace_root=cfg.sandbox.workspace_root,
    )
