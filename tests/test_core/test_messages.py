import pytest
from pydantic import ValidationError

from gitwright.exceptions import MalformedHistoryError
from gitwright.messages import (
    APPROVAL_NO,
    APPROVAL_YES,
    Decision,
    InvocationState,
    Message,
    TextPart,
    ToolInvocationPart,
    UnparsedPart,
    dump_messages,
    iter_invocations,
    load_messages,
    parse_decision,
)


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("approve", Decision.APPROVE),
        (APPROVAL_YES, Decision.APPROVE),
        (True, Decision.APPROVE),
        ({"approved": True}, Decision.APPROVE),
        ("reject", Decision.REJECT),
        (APPROVAL_NO, Decision.REJECT),
        (False, Decision.REJECT),
        ({"decision": "no"}, Decision.REJECT),
        (None, Decision.UNDECIDED),
        ("maybe later", Decision.UNDECIDED),
        (42, Decision.UNDECIDED),
        ({"approved": "yes please"}, Decision.UNDECIDED),
    ],
)
def test_parse_decision(payload, expected):
    assert parse_decision(payload) == expected


def test_result_only_allowed_in_terminal_state():
    with pytest.raises(ValidationError, match="only allowed in terminal states"):
        ToolInvocationPart(
            call_id="c1",
            tool_name="getWeatherInformation",
            state=InvocationState.CONFIRMATION_PENDING,
            result="sunny",
        )


def test_transition_returns_new_part():
    pending = ToolInvocationPart(
        call_id="c1",
        tool_name="getWeatherInformation",
        args={"city": "Paris"},
        state=InvocationState.CONFIRMATION_PENDING,
    )
    done = pending.transition(InvocationState.OUTPUT_AVAILABLE, "sunny")

    assert pending.state == InvocationState.CONFIRMATION_PENDING
    assert pending.result is None
    assert done.state == InvocationState.OUTPUT_AVAILABLE
    assert done.result == "sunny"
    assert done.is_terminal
    assert done.call_id == "c1"
    assert done.args == {"city": "Paris"}

    # Non-terminal targets never carry a result.
    approved = pending.transition(InvocationState.APPROVED, "ignored")
    assert approved.result is None


def test_from_dict_keeps_unparseable_parts_verbatim():
    raw_bad = {"type": "tool-invocation", "call_id": "c1", "tool_name": "x", "state": "approved", "result": "r"}
    message = Message.from_dict({
        "id": "m1",
        "role": "assistant",
        "parts": [
            {"type": "text", "text": "hello"},
            raw_bad,
            {"type": "image", "url": "http://example.com/cat.png"},
        ],
    })

    assert isinstance(message.parts[0], TextPart)
    assert isinstance(message.parts[1], UnparsedPart)
    assert isinstance(message.parts[2], UnparsedPart)
    assert message.to_dict()["parts"][1] == raw_bad


def test_from_dict_rejects_non_object_and_bad_role():
    with pytest.raises(MalformedHistoryError, match="must be an object"):
        Message.from_dict(["not", "a", "message"])
    with pytest.raises(MalformedHistoryError, match="Invalid message"):
        Message.from_dict({"id": "m1", "role": "robot", "parts": []})


def test_load_messages_skips_malformed_messages():
    good = Message.text("user", "hi")
    messages = load_messages([good.to_dict(), "garbage", {"role": "robot"}])

    assert [m.id for m in messages] == [good.id]
    assert messages[0].text_content() == "hi"


def test_dump_and_load_preserve_invocation_state():
    invocation = ToolInvocationPart(
        call_id="c1",
        tool_name="getWeatherInformation",
        args={"city": "Paris"},
        state=InvocationState.REJECTED,
        result="denied",
    )
    original = Message(id="m1", role="assistant", parts=[TextPart(text="checking"), invocation])

    [loaded] = load_messages(dump_messages([original]))

    assert loaded.id == "m1"
    assert loaded.invocations()[0].state == InvocationState.REJECTED
    assert loaded.invocations()[0].result == "denied"
    assert loaded.created_at == original.created_at


def test_iter_invocations_follows_log_order():
    first = ToolInvocationPart(call_id="a", tool_name="t")
    second = ToolInvocationPart(call_id="b", tool_name="t")
    third = ToolInvocationPart(call_id="c", tool_name="t")
    messages = [
        Message(role="assistant", parts=[first, TextPart(text="x"), second]),
        Message.text("user", "ok"),
        Message(role="assistant", parts=[third]),
    ]

    positions = [(m, p, inv.call_id) for m, p, inv in iter_invocations(messages)]

    assert positions == [(0, 0, "a"), (0, 2, "b"), (2, 0, "c")]
