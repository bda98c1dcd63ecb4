"""Typed stream events and the ordering-preserving writer that mirrors them to a client."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from gitwright.exceptions import TransportError
from gitwright.logging import get_logger
from gitwright.messages import InvocationState

log = get_logger(__name__)


class StreamEvent(BaseModel):
    """Base class for events delivered to a live connection."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ToolStateEvent(StreamEvent):
    """One committed tool invocation transition."""

    type: Literal["tool-state"] = "tool-state"
    call_id: str = Field(serialization_alias="callId")
    tool_name: str = Field(serialization_alias="toolName")
    state: InvocationState = Field(serialization_alias="newState")
    result: Any = None


class TextDeltaEvent(StreamEvent):
    """Incremental model output."""

    type: Literal["text-delta"] = "text-delta"
    message_id: str = Field(serialization_alias="messageId")
    delta: str


class MessageEvent(StreamEvent):
    """A full message, used when replaying the stored log to a new connection."""

    type: Literal["message"] = "message"
    message: dict[str, Any]
    replay: bool = False


class StatusEvent(StreamEvent):
    type: Literal["status"] = "status"
    status: str


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    message: str


class FinishEvent(StreamEvent):
    type: Literal["finish"] = "finish"
    message_id: str | None = Field(default=None, serialization_alias="messageId")


SendCallable = Callable[[dict[str, Any]], Awaitable[None]]


class StreamWriter:
    """Append-only, ordering-preserving mirror of events onto a connection.

    Events are queued into a bounded buffer and delivered by a single drain
    task, so delivery order equals ``emit`` order. ``emit`` waits at most
    ``emit_timeout`` seconds for buffer space. When the buffer stays full or
    the connection fails, the writer stops delivering and further events are
    dropped; callers are never interrupted by transport problems. The first
    failure is kept in ``error``.
    """

    def __init__(
        self,
        send: SendCallable,
        buffer_size: int = 256,
        emit_timeout: float = 2.0,
    ):
        self._send = send
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=max(1, buffer_size))
        self._emit_timeout = max(0.0, emit_timeout)
        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False
        self._failed = False
        self.delivered = 0
        self.dropped = 0
        self.error: TransportError | None = None

    @property
    def is_open(self) -> bool:
        return not (self._closed or self._failed)

    def _ensure_drain(self) -> None:
        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain())

    def _report_failure(self, reason: str) -> None:
        if self.error is None:
            self.error = TransportError(reason)
            log.warning("Stream transport failure; dropping further events", reason=reason)
        self._failed = True

    async def emit(self, event: StreamEvent) -> bool:
        """Queue an event for delivery. Returns False when it was dropped."""
        if not self.is_open:
            self.dropped += 1
            log.debug("Dropping event for closed stream", event_type=event.type)
            return False
        self._ensure_drain()
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._emit_timeout)
        except TimeoutError:
            self.dropped += 1
            self._report_failure("buffer full")
            return False
        return True

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            if self._failed:
                self.dropped += 1
                continue
            try:
                await self._send(event.to_wire())
                self.delivered += 1
            except Exception as e:
                self.dropped += 1
                self._report_failure(str(e) or type(e).__name__)

    async def close(self) -> None:
        """Flush buffered events and stop the drain task."""
        if self._closed:
            return
        self._closed = True
        if self._drain_task is None:
            return
        try:
            await asyncio.wait_for(self._queue.put(None), timeout=self._emit_timeout)
            await self._drain_task
        except TimeoutError:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass


class NullStreamWriter(StreamWriter):
    """Writer for passes with no live client attached."""

    def __init__(self) -> None:
        super().__init__(send=self._discard)

    @staticmethod
    async def _discard(payload: dict[str, Any]) -> None:
        return None

    async def emit(self, event: StreamEvent) -> bool:
        return True
