"""History sanitizer: strip tool invocations left half-written by an interrupted run."""

from collections.abc import Container, Sequence
from datetime import datetime, timedelta

from gitwright.logging import get_logger
from gitwright.messages import (
    InvocationState,
    Message,
    ToolInvocationPart,
    UnparsedPart,
    utcnow,
)

log = get_logger(__name__)

INTERRUPTED_EXECUTION_RESULT = "Execution was interrupted before completing."


def sanitize(
    messages: Sequence[Message],
    stale_approved_after: timedelta | None = None,
    now: datetime | None = None,
    known_call_ids: Container[str] = (),
) -> list[Message]:
    """Return a copy of the log that is safe to hand to the model.

    Invocations still in ``input-streaming`` and parts that failed to parse
    are removed; a message left without parts is removed entirely. Every
    other invocation state is kept as is, except that, when
    ``stale_approved_after`` is set, an ``approved`` invocation that has not
    reached a terminal state within the window is closed as ``output-error``.
    Call ids in ``known_call_ids`` (executions the ledger has recorded or is
    still running) are never closed this way.
    Message and part order are preserved. The function has no side effects
    and ``sanitize(sanitize(log)) == sanitize(log)``.
    """
    current = now or utcnow()
    cleaned: list[Message] = []
    dropped = 0

    for message in messages:
        kept = []
        changed = False
        for part in message.parts:
            if isinstance(part, UnparsedPart):
                changed = True
                dropped += 1
                continue
            if isinstance(part, ToolInvocationPart):
                if part.state == InvocationState.INPUT_STREAMING:
                    changed = True
                    dropped += 1
                    continue
                if (
                    stale_approved_after is not None
                    and part.state == InvocationState.APPROVED
                    and current - part.updated_at >= stale_approved_after
                    and part.call_id not in known_call_ids
                ):
                    log.warning(
                        "Closing stale approved invocation",
                        call_id=part.call_id,
                        tool=part.tool_name,
                    )
                    part = part.transition(
                        InvocationState.OUTPUT_ERROR,
                        INTERRUPTED_EXECUTION_RESULT,
                        now=current,
                    )
                    changed = True
            kept.append(part)

        if changed and not kept:
            continue
        cleaned.append(message.with_parts(kept) if changed else message)

    if dropped:
        log.info("Sanitized history", dropped_parts=dropped, messages=len(cleaned))
    return cleaned
