from datetime import UTC, datetime, timedelta

from gitwright.messages import (
    InvocationState,
    Message,
    TextPart,
    ToolInvocationPart,
    UnparsedPart,
    iter_invocations,
)
from gitwright.sanitizer import INTERRUPTED_EXECUTION_RESULT, sanitize

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _invocation(call_id: str, state: InvocationState, **kwargs) -> ToolInvocationPart:
    return ToolInvocationPart(
        call_id=call_id,
        tool_name="getWeatherInformation",
        args={"city": "Paris"},
        state=state,
        **kwargs,
    )


def test_removes_streaming_invocation_and_emptied_message():
    user = Message.text("user", "weather in Paris?")
    crashed = Message(role="assistant", parts=[_invocation("c1", InvocationState.INPUT_STREAMING)])
    later = Message.text("user", "hello?")

    cleaned = sanitize([user, crashed, later])

    assert [m.id for m in cleaned] == [user.id, later.id]


def test_keeps_other_parts_of_a_partially_streamed_message():
    message = Message(
        role="assistant",
        parts=[
            TextPart(text="Let me check."),
            _invocation("c1", InvocationState.INPUT_STREAMING),
            _invocation("c2", InvocationState.CONFIRMATION_PENDING),
        ],
    )

    [cleaned] = sanitize([message])

    assert cleaned.id == message.id
    assert isinstance(cleaned.parts[0], TextPart)
    assert [inv.call_id for inv in cleaned.invocations()] == ["c2"]
    assert cleaned.invocations()[0].state == InvocationState.CONFIRMATION_PENDING


def test_never_leaves_streaming_invocations():
    messages = [
        Message(role="assistant", parts=[_invocation(f"c{i}", state)])
        for i, state in enumerate(InvocationState)
        if state not in {InvocationState.OUTPUT_AVAILABLE, InvocationState.OUTPUT_ERROR, InvocationState.REJECTED}
    ]

    cleaned = sanitize(messages)

    assert all(inv.state != InvocationState.INPUT_STREAMING for _, _, inv in iter_invocations(cleaned))


def test_is_idempotent():
    messages = [
        Message.text("user", "hi"),
        Message(role="assistant", parts=[
            _invocation("c1", InvocationState.INPUT_STREAMING),
            UnparsedPart(raw={"type": "mystery"}),
            _invocation("c2", InvocationState.APPROVED, updated_at=NOW - timedelta(hours=2)),
        ]),
        Message(role="assistant", parts=[_invocation("c3", InvocationState.OUTPUT_AVAILABLE, result="sunny")]),
    ]

    once = sanitize(messages, stale_approved_after=timedelta(minutes=5), now=NOW)
    twice = sanitize(once, stale_approved_after=timedelta(minutes=5), now=NOW)

    assert twice == once


def test_unchanged_messages_are_passed_through():
    message = Message(role="assistant", parts=[_invocation("c1", InvocationState.CONFIRMATION_PENDING)])

    [cleaned] = sanitize([message])

    assert cleaned is message


def test_drops_unparsed_parts():
    message = Message(role="assistant", parts=[UnparsedPart(raw=[1, 2]), TextPart(text="ok")])

    [cleaned] = sanitize([message])

    assert cleaned.parts == [TextPart(text="ok")]


def test_keeps_messages_that_were_already_empty():
    empty = Message(role="assistant", parts=[])

    assert sanitize([empty]) == [empty]


def test_stale_approved_is_left_alone_by_default():
    message = Message(role="assistant", parts=[
        _invocation("c1", InvocationState.APPROVED, updated_at=NOW - timedelta(days=1)),
    ])

    [cleaned] = sanitize([message], now=NOW)

    assert cleaned.invocations()[0].state == InvocationState.APPROVED


def test_stale_approved_is_closed_as_error_after_window():
    stale = _invocation("old", InvocationState.APPROVED, updated_at=NOW - timedelta(minutes=10))
    fresh = _invocation("new", InvocationState.APPROVED, updated_at=NOW - timedelta(seconds=30))
    message = Message(role="assistant", parts=[stale, fresh])

    [cleaned] = sanitize([message], stale_approved_after=timedelta(minutes=5), now=NOW)

    old, new = cleaned.invocations()
    assert old.state == InvocationState.OUTPUT_ERROR
    assert old.result == INTERRUPTED_EXECUTION_RESULT
    assert new.state == InvocationState.APPROVED


def test_stale_window_skips_executions_the_ledger_knows():
    finished = _invocation("done", InvocationState.APPROVED, updated_at=NOW - timedelta(minutes=10))
    lost = _invocation("lost", InvocationState.APPROVED, updated_at=NOW - timedelta(minutes=10))
    message = Message(role="assistant", parts=[finished, lost])

    [cleaned] = sanitize(
        [message],
        stale_approved_after=timedelta(minutes=5),
        now=NOW,
        known_call_ids={"done"},
    )

    kept, closed = cleaned.invocations()
    assert kept.state == InvocationState.APPROVED
    assert closed.state == InvocationState.OUTPUT_ERROR
