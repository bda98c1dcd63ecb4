"""Tool registry and base tool class."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from gitwright.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    ToolRegistrationError,
    ToolValidationError,
)
from gitwright.logging import get_logger

if TYPE_CHECKING:
    from gitwright.integrations.github import GitHubClient
    from gitwright.integrations.sandbox import Sandbox
    from gitwright.scheduler import TaskScheduler

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    data: Any = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @classmethod
    def from_value(cls, value: Any) -> "ToolResult":
        """Wrap an arbitrary executor return value."""
        if isinstance(value, ToolResult):
            return value
        if isinstance(value, str):
            return cls(success=True, content=value)
        return cls(success=True, content=json.dumps(value, default=str), data=value)

    @property
    def output(self) -> Any:
        """Value recorded as the invocation result on success."""
        return self.data if self.data is not None else self.content


class EmptyArgs(BaseModel):
    """Argument model for tools that take no input."""

    model_config = ConfigDict(extra="ignore")


@dataclass
class ToolContext:
    """Per-call collaborators handed explicitly to every executor."""

    session_id: str = ""
    access_token: str = ""
    sandbox: "Sandbox | None" = None
    github: "GitHubClient | None" = None
    scheduler: "TaskScheduler | None" = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)


Executor = Callable[[BaseModel, ToolContext], Awaitable[Any]]


class Tool:
    """Declaration of a tool: name, schema and confirmation mode.

    Automatic tools override :meth:`execute`. Confirmation-gated tools set
    ``requires_confirmation = True``, leave ``execute`` alone, and are
    registered together with a separate confirmation executor.
    """

    name: str = ""
    description: str = ""
    args_model: type[BaseModel] = EmptyArgs
    requires_confirmation: bool = False
    timeout_seconds: float = 30.0

    async def execute(self, args: BaseModel, ctx: ToolContext) -> Any:
        """Automatic executor; only defined by auto-executing tools."""
        raise NotImplementedError(f"Tool '{self.name}' has no automatic executor")

    @property
    def has_auto_executor(self) -> bool:
        return type(self).execute is not Tool.execute

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
        }

    def gated(self) -> tuple["Tool", Executor]:
        """Return a confirmation-gated declaration of this tool and its executor."""
        if not self.has_auto_executor:
            raise ToolRegistrationError(self.name, "only tools with an executor can be gated")
        return GatedTool(self), self.execute


class GatedTool(Tool):
    """Confirmation-gated declaration wrapping an existing automatic tool."""

    requires_confirmation = True

    def __init__(self, inner: Tool):
        self.name = inner.name
        self.description = inner.description
        self.args_model = inner.args_model
        self.timeout_seconds = inner.timeout_seconds


@dataclass
class _RegisteredTool:
    tool: Tool
    auto_executor: Executor | None = None
    confirmation_executor: Executor | None = None


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, _RegisteredTool] = {}

    def register(self, tool: Tool, confirmation_executor: Executor | None = None) -> None:
        """Register a tool.

        Args:
            tool: Tool declaration to register
            confirmation_executor: Executor for a confirmation-gated tool

        Raises:
            ToolRegistrationError if the tool ends up with both executors,
            neither, or a mode that contradicts ``requires_confirmation``
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        has_auto = tool.has_auto_executor
        has_confirmation = confirmation_executor is not None
        if has_auto and has_confirmation:
            raise ToolRegistrationError(tool.name, "declares both an automatic and a confirmation executor")
        if not has_auto and not has_confirmation:
            raise ToolRegistrationError(tool.name, "declares neither an automatic nor a confirmation executor")
        if tool.requires_confirmation != has_confirmation:
            expected = "a confirmation executor" if tool.requires_confirmation else "an automatic executor"
            raise ToolRegistrationError(tool.name, f"requires_confirmation={tool.requires_confirmation} needs {expected}")

        log.debug("Registering tool", tool=tool.name, gated=has_confirmation)
        self._tools[tool.name] = _RegisteredTool(
            tool=tool,
            auto_executor=tool.execute if has_auto else None,
            confirmation_executor=confirmation_executor,
        )

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        return entry.tool

    def is_confirmation_gated(self, name: str) -> bool:
        entry = self._tools.get(name)
        return entry is not None and entry.confirmation_executor is not None

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [entry.tool.get_definition() for entry in self._tools.values()]

    def validate_arguments(self, name: str, arguments: Any) -> BaseModel:
        """Validate raw arguments against the tool's schema.

        Raises:
            ToolNotFoundError if the tool is unknown
            ToolValidationError if the arguments do not match the schema
        """
        tool = self.get(name)
        if not isinstance(arguments, dict):
            raise ToolValidationError(name, f"expected an object, got {type(arguments).__name__}")
        try:
            return tool.args_model.model_validate(arguments)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolValidationError(name, details) from e

    async def execute(
        self,
        name: str,
        arguments: Any,
        ctx: ToolContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Run an automatic tool. Confirmation-gated tools are rejected here."""
        entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        if entry.auto_executor is None:
            raise ToolExecutionError(name, "Tool requires confirmation and cannot run automatically")
        args = self.validate_arguments(name, arguments)
        return await self._run(entry.tool, entry.auto_executor, args, ctx, abort_event)

    async def execute_confirmed(
        self,
        name: str,
        arguments: Any,
        ctx: ToolContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Run the confirmation executor of a gated tool after human approval."""
        entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        if entry.confirmation_executor is None:
            raise ToolExecutionError(name, "Tool is not confirmation-gated")
        args = self.validate_arguments(name, arguments)
        return await self._run(entry.tool, entry.confirmation_executor, args, ctx, abort_event)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(
        self,
        tool: Tool,
        executor: Executor,
        args: BaseModel,
        ctx: ToolContext,
        abort_event: asyncio.Event | None,
    ) -> ToolResult:
        name = tool.name
        timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))
        abort = abort_event or ctx.abort_event

        execute_task: asyncio.Task[Any] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name, args=args.model_dump())
            execute_task = asyncio.create_task(executor(args, ctx))
            abort_wait_task = asyncio.create_task(abort.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = ToolResult.from_value(await execute_task)
                log.info("Tool executed", tool=name, success=result.success)
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e) or type(e).__name__) from e
        finally:
            await self._cancel_task(abort_wait_task)
