"""Tool-call resolver: settle confirmation-gated invocations and splice results into the log.

One reconciliation pass walks the sanitized log in message order, then part
order. For every non-terminal invocation of a confirmation-gated tool it
looks up the human decision and either leaves the invocation pending,
synthesizes a rejection, or runs the tool's confirmation executor. Each
terminal transition is committed to the log, recorded in the
:class:`ExecutionLedger` and mirrored to the stream before the next
invocation is considered.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from gitwright.exceptions import ToolError, ToolNotFoundError, ToolValidationError
from gitwright.logging import get_logger
from gitwright.messages import (
    TERMINAL_STATES,
    Decision,
    InvocationState,
    Message,
    ToolInvocationPart,
    iter_invocations,
    parse_decision,
)
from gitwright.stream import StreamWriter, ToolStateEvent
from gitwright.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)

DEFAULT_REJECTION_MESSAGE = "Error: User denied access to tool execution"


class DecisionSource(Protocol):
    """Supplies the human decision for a confirmation-gated invocation."""

    def decision_for(self, invocation: ToolInvocationPart) -> Decision: ...


class InlineDecisions:
    """Read the decision carried on the invocation part itself."""

    def decision_for(self, invocation: ToolInvocationPart) -> Decision:
        return parse_decision(invocation.decision)


class MappingDecisions:
    """Decisions keyed by call id, e.g. collected from client messages."""

    def __init__(self, decisions: Mapping[str, Any] | None = None):
        self._decisions = dict(decisions or {})

    def set(self, call_id: str, payload: Any) -> None:
        self._decisions[call_id] = payload

    def decision_for(self, invocation: ToolInvocationPart) -> Decision:
        return parse_decision(self._decisions.get(invocation.call_id))


class ChainedDecisions:
    """First source with a definite answer wins."""

    def __init__(self, *sources: DecisionSource):
        self._sources = sources

    def decision_for(self, invocation: ToolInvocationPart) -> Decision:
        for source in self._sources:
            decision = source.decision_for(invocation)
            if decision != Decision.UNDECIDED:
                return decision
        return Decision.UNDECIDED


@dataclass(frozen=True)
class Outcome:
    """Terminal state and result committed for one call id."""

    state: InvocationState
    result: Any = None


class ExecutionLedger:
    """Per-session record of terminal outcomes, keyed by call id.

    The ledger is what makes re-scans idempotent: a call id with a recorded
    outcome is never executed again, and a call id whose executor is still
    running is never started twice.
    """

    def __init__(self, outcomes: Mapping[str, Outcome] | None = None):
        self._outcomes: dict[str, Outcome] = dict(outcomes or {})
        self._in_flight: set[str] = set()

    def get(self, call_id: str) -> Outcome | None:
        return self._outcomes.get(call_id)

    def record(self, call_id: str, outcome: Outcome) -> None:
        if outcome.state not in TERMINAL_STATES:
            raise ValueError(f"Ledger only records terminal outcomes, got {outcome.state}")
        self._outcomes.setdefault(call_id, outcome)

    def begin(self, call_id: str) -> bool:
        """Mark an execution as started. Returns False if it already ran or is running."""
        if call_id in self._outcomes or call_id in self._in_flight:
            return False
        self._in_flight.add(call_id)
        return True

    def finish(self, call_id: str) -> None:
        self._in_flight.discard(call_id)

    def is_in_flight(self, call_id: str) -> bool:
        return call_id in self._in_flight

    def in_flight_ids(self) -> set[str]:
        return set(self._in_flight)

    def known_ids(self) -> set[str]:
        """Call ids that have an outcome or a running executor."""
        return set(self._outcomes) | self._in_flight

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._outcomes

    def __len__(self) -> int:
        return len(self._outcomes)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            call_id: {"state": outcome.state.value, "result": outcome.result}
            for call_id, outcome in self._outcomes.items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ExecutionLedger":
        outcomes: dict[str, Outcome] = {}
        for call_id, raw in (data or {}).items():
            try:
                state = InvocationState(raw["state"])
            except (KeyError, TypeError, ValueError):
                log.warning("Ignoring malformed ledger entry", call_id=call_id)
                continue
            if state in TERMINAL_STATES:
                outcomes[call_id] = Outcome(state=state, result=raw.get("result"))
        return cls(outcomes)


def model_view(messages: Sequence[Message]) -> list[Message]:
    """Project the log onto what may be submitted to the model.

    Only terminal invocations survive; a message whose parts were all
    excluded is dropped.
    """
    view: list[Message] = []
    for message in messages:
        parts = [
            part
            for part in message.parts
            if not isinstance(part, ToolInvocationPart) or part.is_terminal
        ]
        if len(parts) == len(message.parts):
            view.append(message)
        elif parts:
            view.append(message.with_parts(parts))
    return view


def attach_decision(messages: Sequence[Message], call_id: str, payload: Any) -> list[Message]:
    """Return a new log with ``payload`` attached to the pending invocation ``call_id``.

    Terminal invocations are left untouched, so confirming twice is a no-op.
    """
    updated = list(messages)
    for msg_idx, part_idx, invocation in iter_invocations(messages):
        if invocation.call_id != call_id or invocation.is_terminal:
            continue
        parts = list(updated[msg_idx].parts)
        parts[part_idx] = invocation.model_copy(update={"decision": payload})
        updated[msg_idx] = updated[msg_idx].with_parts(parts)
    return updated


@dataclass
class ResolveResult:
    """Outcome of one reconciliation pass."""

    messages: list[Message]
    events: list[ToolStateEvent] = field(default_factory=list)
    aborted: bool = False

    @property
    def model_messages(self) -> list[Message]:
        return model_view(self.messages)

    @property
    def pending(self) -> list[ToolInvocationPart]:
        return [
            invocation
            for _, _, invocation in iter_invocations(self.messages)
            if invocation.state == InvocationState.CONFIRMATION_PENDING
        ]


OutcomeCallback = Callable[[str, Outcome], Awaitable[None]]


class ToolCallResolver:
    """Resolve confirmation-gated invocations strictly in log order."""

    def __init__(
        self,
        registry: ToolRegistry,
        ledger: ExecutionLedger | None = None,
        writer: StreamWriter | None = None,
        rejection_message: str = DEFAULT_REJECTION_MESSAGE,
        on_outcome: OutcomeCallback | None = None,
        executions: set[asyncio.Task[Outcome]] | None = None,
    ):
        self.registry = registry
        self.ledger = ledger if ledger is not None else ExecutionLedger()
        self.writer = writer
        self.rejection_message = rejection_message
        self.on_outcome = on_outcome
        # Running confirmation executors; they outlive a cancelled pass.
        self.executions = executions if executions is not None else set()

    async def resolve(
        self,
        messages: Sequence[Message],
        decisions: DecisionSource | None = None,
        ctx: ToolContext | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ResolveResult:
        """Run one reconciliation pass over a sanitized log.

        Args:
            messages: Sanitized session log
            decisions: Where human decisions come from (defaults to inline)
            ctx: Collaborators for confirmation executors
            abort_event: When set, the pass stops before the next invocation

        Returns:
            ResolveResult with the rewritten log and the committed events
        """
        source = decisions or InlineDecisions()
        context = ctx or ToolContext()
        result = ResolveResult(messages=list(messages))

        for msg_idx, part_idx, invocation in list(iter_invocations(result.messages)):
            if abort_event is not None and abort_event.is_set():
                log.info("Reconciliation pass abandoned", call_id=invocation.call_id)
                result.aborted = True
                break
            if invocation.is_terminal or invocation.state == InvocationState.INPUT_STREAMING:
                continue

            recorded = self.ledger.get(invocation.call_id)
            if recorded is not None:
                log.debug("Reusing recorded outcome", call_id=invocation.call_id, state=recorded.state)
                self._splice(result, msg_idx, part_idx, invocation.transition(recorded.state, recorded.result))
                continue

            if not self.registry.has_tool(invocation.tool_name):
                error = ToolNotFoundError(invocation.tool_name)
                await self._commit(result, msg_idx, part_idx, invocation, Outcome(InvocationState.OUTPUT_ERROR, str(error)))
                continue

            if not self.registry.is_confirmation_gated(invocation.tool_name):
                continue

            if invocation.state == InvocationState.APPROVED:
                log.warning(
                    "Approved invocation has no terminal result yet; not re-executing",
                    call_id=invocation.call_id,
                    in_flight=self.ledger.is_in_flight(invocation.call_id),
                )
                continue

            decision = source.decision_for(invocation)
            if decision == Decision.UNDECIDED:
                if invocation.state != InvocationState.CONFIRMATION_PENDING:
                    self._splice(result, msg_idx, part_idx, invocation.transition(InvocationState.CONFIRMATION_PENDING))
                continue

            if decision == Decision.REJECT:
                outcome = Outcome(InvocationState.REJECTED, self.rejection_message)
                await self._commit(result, msg_idx, part_idx, invocation, outcome)
                continue

            try:
                self.registry.validate_arguments(invocation.tool_name, invocation.args)
            except ToolValidationError as e:
                await self._commit(result, msg_idx, part_idx, invocation, Outcome(InvocationState.OUTPUT_ERROR, str(e)))
                continue

            approved = invocation.transition(InvocationState.APPROVED)
            self._splice(result, msg_idx, part_idx, approved)
            outcome = await self._execute(approved, context)
            if outcome is None:
                continue
            await self._commit(result, msg_idx, part_idx, approved, outcome, record=False)

        return result

    async def _execute(self, invocation: ToolInvocationPart, ctx: ToolContext) -> Outcome | None:
        """Run the confirmation executor once; survives cancellation of the pass."""
        if not self.ledger.begin(invocation.call_id):
            return self.ledger.get(invocation.call_id)
        task = asyncio.ensure_future(self._run_and_record(invocation, ctx))
        self.executions.add(task)
        task.add_done_callback(self.executions.discard)
        return await asyncio.shield(task)

    async def _run_and_record(self, invocation: ToolInvocationPart, ctx: ToolContext) -> Outcome:
        # A fresh abort event: dropping the client connection must not kill a started executor.
        exec_ctx = ToolContext(
            session_id=ctx.session_id,
            access_token=ctx.access_token,
            sandbox=ctx.sandbox,
            github=ctx.github,
            scheduler=ctx.scheduler,
        )
        try:
            tool_result = await self.registry.execute_confirmed(
                invocation.tool_name,
                invocation.args,
                exec_ctx,
                abort_event=exec_ctx.abort_event,
            )
            if tool_result.success:
                outcome = Outcome(InvocationState.OUTPUT_AVAILABLE, tool_result.output)
            else:
                outcome = Outcome(InvocationState.OUTPUT_ERROR, tool_result.error)
        except ToolError as e:
            outcome = Outcome(InvocationState.OUTPUT_ERROR, str(e))
        except Exception as e:
            log.error("Confirmation executor crashed", call_id=invocation.call_id, error=str(e))
            outcome = Outcome(InvocationState.OUTPUT_ERROR, str(e) or type(e).__name__)
        finally:
            self.ledger.finish(invocation.call_id)

        await self._record(invocation.call_id, outcome)
        return outcome

    async def _record(self, call_id: str, outcome: Outcome) -> None:
        self.ledger.record(call_id, outcome)
        if self.on_outcome is None:
            return
        try:
            await self.on_outcome(call_id, outcome)
        except Exception as e:
            log.error("Outcome callback failed", call_id=call_id, error=str(e))

    @staticmethod
    def _splice(result: ResolveResult, msg_idx: int, part_idx: int, part: ToolInvocationPart) -> None:
        message = result.messages[msg_idx]
        parts = list(message.parts)
        parts[part_idx] = part
        result.messages[msg_idx] = message.with_parts(parts)

    async def _commit(
        self,
        result: ResolveResult,
        msg_idx: int,
        part_idx: int,
        invocation: ToolInvocationPart,
        outcome: Outcome,
        record: bool = True,
    ) -> None:
        if record:
            await self._record(invocation.call_id, outcome)

        self._splice(result, msg_idx, part_idx, invocation.transition(outcome.state, outcome.result))
        event = ToolStateEvent(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            state=outcome.state,
            result=outcome.result,
        )
        result.events.append(event)
        log.info("Tool invocation resolved", call_id=invocation.call_id, tool=invocation.tool_name, state=outcome.state)
        if self.writer is not None:
            await self.writer.emit(event)
