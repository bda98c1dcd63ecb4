import asyncio

import pytest

from gitwright.exceptions import TransportError
from gitwright.messages import InvocationState
from gitwright.stream import (
    FinishEvent,
    NullStreamWriter,
    StatusEvent,
    StreamWriter,
    TextDeltaEvent,
    ToolStateEvent,
)


def _collector():
    sent: list[dict] = []

    async def send(payload):
        sent.append(payload)

    return sent, send


def test_wire_format_uses_client_field_names():
    event = ToolStateEvent(call_id="c1", tool_name="getWeatherInformation", state=InvocationState.APPROVED)

    assert event.to_wire() == {
        "type": "tool-state",
        "callId": "c1",
        "toolName": "getWeatherInformation",
        "newState": "approved",
    }
    assert TextDeltaEvent(message_id="m1", delta="Hi").to_wire() == {
        "type": "text-delta",
        "messageId": "m1",
        "delta": "Hi",
    }
    assert FinishEvent().to_wire() == {"type": "finish"}


@pytest.mark.asyncio
async def test_delivers_events_in_emit_order():
    sent, send = _collector()
    writer = StreamWriter(send, buffer_size=2)

    for i in range(10):
        assert await writer.emit(TextDeltaEvent(message_id="m1", delta=str(i)))
    await writer.close()

    assert [p["delta"] for p in sent] == [str(i) for i in range(10)]
    assert writer.delivered == 10
    assert writer.dropped == 0
    assert writer.error is None


@pytest.mark.asyncio
async def test_transport_failure_is_silent():
    async def send(payload):
        raise ConnectionResetError("gone")

    writer = StreamWriter(send)

    await writer.emit(StatusEvent(status="one"))
    await writer.close()

    assert not writer.is_open
    assert writer.delivered == 0
    assert writer.dropped == 1
    assert isinstance(writer.error, TransportError)
    assert "gone" in str(writer.error)
    assert await writer.emit(StatusEvent(status="two")) is False


@pytest.mark.asyncio
async def test_full_buffer_drops_instead_of_blocking():
    async def send(payload):
        await asyncio.Event().wait()

    writer = StreamWriter(send, buffer_size=1, emit_timeout=0.05)

    results = [await writer.emit(StatusEvent(status=str(i))) for i in range(4)]
    await asyncio.wait_for(writer.close(), timeout=2)

    assert False in results
    assert not writer.is_open
    assert str(writer.error) == "buffer full"
    assert writer.dropped >= 1


@pytest.mark.asyncio
async def test_emit_after_close_is_dropped():
    sent, send = _collector()
    writer = StreamWriter(send)
    await writer.close()

    assert await writer.emit(StatusEvent(status="late")) is False
    assert sent == []


@pytest.mark.asyncio
async def test_null_writer_accepts_everything():
    writer = NullStreamWriter()

    assert await writer.emit(StatusEvent(status="x"))
    await writer.close()
