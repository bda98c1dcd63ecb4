"""Chat agent: reconciliation pass, model loop and automatic tool execution."""

import asyncio
from collections.abc import Callable, Mapping
from datetime import timedelta
from enum import StrEnum
from typing import Any

from gitwright.config import Config, get_config
from gitwright.exceptions import SessionBusyError, ToolError
from gitwright.prompt import SystemPrompt
from gitwright.integrations.github import GitHubClient
from gitwright.integrations.sandbox import Sandbox, create_sandbox
from gitwright.llm import (
    LLMProvider,
    TextChunk,
    ToolCall,
    ToolCallChunk,
    UsageChunk,
    get_provider,
    to_provider_messages,
)
from gitwright.logging import get_logger
from gitwright.messages import (
    InvocationState,
    Message,
    TextPart,
    ToolInvocationPart,
    iter_invocations,
    new_call_id,
    new_message_id,
)
from gitwright.resolver import (
    ExecutionLedger,
    Outcome,
    ToolCallResolver,
    attach_decision,
    model_view,
)
from gitwright.sanitizer import sanitize
from gitwright.scheduler import TaskScheduler
from gitwright.session import Session, SessionManager, get_session_manager
from gitwright.stream import (
    FinishEvent,
    NullStreamWriter,
    StatusEvent,
    StreamWriter,
    TextDeltaEvent,
    ToolStateEvent,
)
from gitwright.tools import build_tool_registry
from gitwright.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)


class TurnStatus(StrEnum):
    """How a turn ended."""

    COMPLETED = "completed"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    ABORTED = "aborted"
    MAX_STEPS = "max-steps"
    IGNORED = "ignored"


SCHEDULED_TASK_PREFIX = "Running scheduled task: "


class ChatAgent:
    """Drives one session at a time through reconciliation and the model loop."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        registry: ToolRegistry | None = None,
        session_manager: SessionManager | None = None,
        sandbox: Sandbox | None = None,
        config: Config | None = None,
        system_prompt: SystemPrompt | None = None,
        github_factory: Callable[[str], GitHubClient] | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Optional LLM provider override
            registry: Optional tool registry; built from config by default
            session_manager: Optional session store override
            sandbox: Optional sandbox client; created from config on first use
            github_factory: Builds a GitHub client from an access token
        """
        self.config = config or get_config()
        self.provider = provider
        self.tools = registry if registry is not None else build_tool_registry(self.config)
        self.session_manager = session_manager or get_session_manager()
        self._sandbox = sandbox
        self.system_prompt = system_prompt or SystemPrompt()
        self.github_factory = github_factory or (
            lambda token: GitHubClient.from_config(token, self.config)
        )
        self.max_steps = max(1, int(self.config.model.max_steps))
        self.last_usage: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._ledgers: dict[str, ExecutionLedger] = {}
        # Session id -> (access token, client); replaced when the token changes.
        self._github_clients: dict[str, tuple[str, GitHubClient]] = {}
        self._executions: set[asyncio.Task[Outcome]] = set()

    @property
    def sandbox(self) -> Sandbox:
        if self._sandbox is None:
            self._sandbox = create_sandbox(self.config)
        return self._sandbox

    def _get_provider(self) -> LLMProvider:
        if self.provider is None:
            self.provider = get_provider()
        return self.provider

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def ledger_for(self, session: Session) -> ExecutionLedger:
        """Per-session execution ledger, seeded from persisted metadata once."""
        ledger = self._ledgers.get(session.id)
        if ledger is None:
            ledger = ExecutionLedger.from_dict(session.metadata.get("ledger"))
            self._ledgers[session.id] = ledger
        return ledger

    async def _github_for(self, session: Session) -> GitHubClient | None:
        token = session.access_token
        cached = self._github_clients.get(session.id)
        if cached is not None:
            if cached[0] == token:
                return cached[1]
            del self._github_clients[session.id]
            await cached[1].close()
        if not token:
            return None
        client = self.github_factory(token)
        self._github_clients[session.id] = (token, client)
        return client

    async def _tool_context(self, session: Session, abort_event: asyncio.Event | None) -> ToolContext:
        return ToolContext(
            session_id=session.id,
            access_token=session.access_token,
            sandbox=self.sandbox,
            github=await self._github_for(session),
            scheduler=TaskScheduler(self.session_manager, session.id),
            abort_event=abort_event or asyncio.Event(),
        )

    def build_system_prompt(self, session: Session) -> str:
        repo = session.repository
        return self.system_prompt.render(
            owner=repo.get("owner", ""),
            repo_name=repo.get("repo_name", ""),
            clone_url=repo.get("clone_url", ""),
            access_token=session.access_token,
            workspace_root=self.config.sandbox.workspace_root,
        )

    async def _save(self, session: Session) -> None:
        session.metadata["ledger"] = self.ledger_for(session).to_dict()
        await self.session_manager.save_session(session)

    def _outcome_saver(self, session: Session):
        """Commit an executor outcome to the stored session as soon as it exists.

        Runs inside the executor task, so the outcome reaches the store even
        when the pass that started the executor was cancelled.
        """

        async def save_outcome(call_id: str, outcome: Outcome) -> None:
            messages = list(session.messages)
            for msg_idx, part_idx, invocation in iter_invocations(messages):
                if invocation.call_id != call_id or invocation.is_terminal:
                    continue
                parts = list(messages[msg_idx].parts)
                parts[part_idx] = invocation.transition(outcome.state, outcome.result)
                messages[msg_idx] = messages[msg_idx].with_parts(parts)
                break
            session.replace_messages(messages)
            await self._save(session)

        return save_outcome

    async def wait_for_executions(self) -> None:
        """Wait for confirmation executors that are still running."""
        if self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    async def release_session(self, session_id: str) -> bool:
        """Drop cached per-session state when nothing is running for the session.

        Returns:
            True if the state was released
        """
        if self.is_busy(session_id):
            return False
        ledger = self._ledgers.get(session_id)
        if ledger is not None and ledger.in_flight_ids():
            return False
        self._locks.pop(session_id, None)
        self._ledgers.pop(session_id, None)
        cached = self._github_clients.pop(session_id, None)
        if cached is not None:
            await cached[1].close()
        log.debug("Released session state", session_id=session_id)
        return True

    async def run_turn(
        self,
        session: Session,
        writer: StreamWriter | None = None,
        decisions: Mapping[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnStatus:
        """Reconcile pending tool calls, then let the model continue.

        Args:
            session: Session whose log is reconciled and extended
            writer: Live stream for the connected client, if any
            decisions: Human decisions keyed by call id, attached before the pass
            abort_event: Set to abandon the turn between transitions

        Raises:
            SessionBusyError if a pass is already running and the policy is ``reject``
        """
        return await self._run_locked(session, writer, abort_event, decisions=decisions)

    async def submit_user_message(
        self,
        session: Session,
        text: str,
        writer: StreamWriter | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnStatus:
        message = Message.text("user", text)
        return await self._run_locked(session, writer, abort_event, new_message=message)

    async def submit_decision(
        self,
        session: Session,
        call_id: str,
        payload: Any,
        writer: StreamWriter | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> TurnStatus:
        return await self.run_turn(session, writer, decisions={call_id: payload}, abort_event=abort_event)

    async def execute_task(
        self,
        session: Session,
        description: str,
        writer: StreamWriter | None = None,
    ) -> TurnStatus:
        """Re-enter a session for a scheduled task."""
        log.info("Executing scheduled task", session_id=session.id, description=description)
        message = Message.text("user", f"{SCHEDULED_TASK_PREFIX}{description}")
        return await self._run_locked(session, writer, None, new_message=message)

    async def _run_locked(
        self,
        session: Session,
        writer: StreamWriter | None,
        abort_event: asyncio.Event | None,
        decisions: Mapping[str, Any] | None = None,
        new_message: Message | None = None,
    ) -> TurnStatus:
        lock = self._lock_for(session.id)
        if lock.locked() and self.config.reconciliation.concurrent_policy == "reject":
            raise SessionBusyError(session.id)
        async with lock:
            if new_message is not None:
                session.append(new_message)
            if decisions:
                open_ids = {
                    inv.call_id for _, _, inv in iter_invocations(session.messages) if not inv.is_terminal
                }
                matched = [call_id for call_id in decisions if call_id in open_ids]
                if not matched:
                    log.info("Ignoring decision for settled or unknown call", call_ids=list(decisions))
                    return TurnStatus.IGNORED
                for call_id in matched:
                    session.replace_messages(attach_decision(session.messages, call_id, decisions[call_id]))
            return await self._turn(session, writer or NullStreamWriter(), abort_event)

    async def _turn(
        self,
        session: Session,
        writer: StreamWriter,
        abort_event: asyncio.Event | None,
    ) -> TurnStatus:
        ctx = await self._tool_context(session, abort_event)
        ledger = self.ledger_for(session)
        stale_seconds = self.config.reconciliation.stale_approved_seconds
        cleaned = sanitize(
            session.messages,
            stale_approved_after=timedelta(seconds=stale_seconds) if stale_seconds is not None else None,
            known_call_ids=ledger.known_ids(),
        )

        resolver = ToolCallResolver(
            self.tools,
            ledger=ledger,
            writer=writer,
            rejection_message=self.config.reconciliation.rejection_message,
            on_outcome=self._outcome_saver(session),
            executions=self._executions,
        )
        result = await resolver.resolve(cleaned, ctx=ctx, abort_event=abort_event)
        session.replace_messages(result.messages)
        await self._save(session)

        if result.aborted:
            await writer.emit(StatusEvent(status=TurnStatus.ABORTED))
            return TurnStatus.ABORTED
        if result.pending:
            log.info("Awaiting confirmation", session_id=session.id, pending=len(result.pending))
            await writer.emit(StatusEvent(status=TurnStatus.AWAITING_CONFIRMATION))
            return TurnStatus.AWAITING_CONFIRMATION

        return await self._model_loop(session, writer, ctx, abort_event)

    async def _model_loop(
        self,
        session: Session,
        writer: StreamWriter,
        ctx: ToolContext,
        abort_event: asyncio.Event | None,
    ) -> TurnStatus:
        provider = self._get_provider()
        system_prompt = self.build_system_prompt(session)
        definitions = self.tools.get_definitions()

        for step in range(self.max_steps):
            if abort_event is not None and abort_event.is_set():
                await writer.emit(StatusEvent(status=TurnStatus.ABORTED))
                return TurnStatus.ABORTED

            llm_messages = to_provider_messages(model_view(session.messages), system_prompt)
            message_id = new_message_id()
            text = ""
            calls: list[ToolCall] = []
            aborted = False
            log.debug("Model step", session_id=session.id, step=step, messages=len(llm_messages))

            async for chunk in provider.stream(llm_messages, tools=definitions):
                if abort_event is not None and abort_event.is_set():
                    aborted = True
                    break
                if isinstance(chunk, TextChunk):
                    text += chunk.text
                    await writer.emit(TextDeltaEvent(message_id=message_id, delta=chunk.text))
                elif isinstance(chunk, ToolCallChunk):
                    calls.append(chunk.call)
                elif isinstance(chunk, UsageChunk):
                    self.last_usage = dict(chunk.usage)

            if aborted:
                if text:
                    session.append(Message(id=message_id, role="assistant", parts=[TextPart(text=text)]))
                    await self._save(session)
                await writer.emit(StatusEvent(status=TurnStatus.ABORTED))
                return TurnStatus.ABORTED

            parts: list[Any] = [TextPart(text=text)] if text else []
            parts.extend(self._invocations_for(session, calls))
            if parts:
                session.append(Message(id=message_id, role="assistant", parts=parts))

            if not calls:
                await self._save(session)
                await writer.emit(FinishEvent(message_id=message_id))
                return TurnStatus.COMPLETED

            awaiting = await self._run_tool_calls(session, message_id, writer, ctx, abort_event)
            await self._save(session)
            if awaiting:
                await writer.emit(StatusEvent(status=TurnStatus.AWAITING_CONFIRMATION))
                return TurnStatus.AWAITING_CONFIRMATION

        log.warning("Model step limit reached", session_id=session.id, max_steps=self.max_steps)
        await writer.emit(StatusEvent(status=TurnStatus.MAX_STEPS))
        return TurnStatus.MAX_STEPS

    def _invocations_for(self, session: Session, calls: list[ToolCall]) -> list[ToolInvocationPart]:
        seen = {inv.call_id for _, _, inv in iter_invocations(session.messages)}
        ledger = self.ledger_for(session)
        invocations = []
        for call in calls:
            call_id = call.id
            if not call_id or call_id in seen or call_id in ledger:
                call_id = new_call_id()
            seen.add(call_id)
            invocations.append(ToolInvocationPart(
                call_id=call_id,
                tool_name=call.name,
                args=call.arguments,
                state=InvocationState.INPUT_AVAILABLE,
            ))
        return invocations

    async def _run_tool_calls(
        self,
        session: Session,
        message_id: str,
        writer: StreamWriter,
        ctx: ToolContext,
        abort_event: asyncio.Event | None,
    ) -> bool:
        """Settle the invocations of the newest assistant message.

        Returns:
            True if any invocation is waiting for human confirmation
        """
        msg_idx = len(session.messages) - 1
        message = session.messages[msg_idx]
        if message.id != message_id:
            return False

        ledger = self.ledger_for(session)
        parts = list(message.parts)
        awaiting = False
        for part_idx, part in enumerate(parts):
            if not isinstance(part, ToolInvocationPart):
                continue

            if self.tools.has_tool(part.tool_name) and self.tools.is_confirmation_gated(part.tool_name):
                parts[part_idx] = part.transition(InvocationState.CONFIRMATION_PENDING)
                awaiting = True
                await writer.emit(ToolStateEvent(
                    call_id=part.call_id,
                    tool_name=part.tool_name,
                    state=InvocationState.CONFIRMATION_PENDING,
                ))
                continue

            outcome = await self._execute_auto(part, ctx, abort_event)
            ledger.record(part.call_id, outcome)
            parts[part_idx] = part.transition(outcome.state, outcome.result)
            log.info("Tool invocation resolved", call_id=part.call_id, tool=part.tool_name, state=outcome.state)
            await writer.emit(ToolStateEvent(
                call_id=part.call_id,
                tool_name=part.tool_name,
                state=outcome.state,
                result=outcome.result,
            ))

        session.messages[msg_idx] = message.with_parts(parts)
        return awaiting

    async def _execute_auto(
        self,
        invocation: ToolInvocationPart,
        ctx: ToolContext,
        abort_event: asyncio.Event | None,
    ) -> Outcome:
        try:
            tool_result = await self.tools.execute(invocation.tool_name, invocation.args, ctx, abort_event=abort_event)
        except ToolError as e:
            return Outcome(InvocationState.OUTPUT_ERROR, str(e))
        if tool_result.success:
            return Outcome(InvocationState.OUTPUT_AVAILABLE, tool_result.output)
        return Outcome(InvocationState.OUTPUT_ERROR, tool_result.error)

    async def close(self) -> None:
        await self.wait_for_executions()
        for _, client in self._github_clients.values():
            await client.close()
        self._github_clients.clear()
        if self._sandbox is not None:
            await self._sandbox.close()
        if self.provider is not None:
            await self.provider.close()
