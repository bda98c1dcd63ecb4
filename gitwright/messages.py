"""Conversation message model shared by the sanitizer, resolver and store.

A session log is an ordered list of :class:`Message` objects. Each message
holds ordered parts: plain text or a single tool invocation. Models are
frozen; every rewrite produces a new object via ``model_copy``.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from gitwright.exceptions import MalformedHistoryError
from gitwright.logging import get_logger

log = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(UTC)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class InvocationState(StrEnum):
    """Lifecycle state of one tool invocation."""

    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    CONFIRMATION_PENDING = "confirmation-pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"


TERMINAL_STATES = frozenset({
    InvocationState.OUTPUT_AVAILABLE,
    InvocationState.OUTPUT_ERROR,
    InvocationState.REJECTED,
})


class Decision(StrEnum):
    """Human decision attached to a confirmation-gated invocation."""

    APPROVE = "approve"
    REJECT = "reject"
    UNDECIDED = "undecided"


# Strings sent by chat UIs built on the human-in-the-loop pattern.
APPROVAL_YES = "Yes, confirmed."
APPROVAL_NO = "No, denied."

_APPROVE_WORDS = {"approve", "approved", "yes", "y", "confirm", "confirmed", APPROVAL_YES.lower()}
_REJECT_WORDS = {"reject", "rejected", "deny", "denied", "no", "n", APPROVAL_NO.lower()}


def parse_decision(payload: Any) -> Decision:
    """Map a raw decision payload to a :class:`Decision`.

    Unrecognised payloads are treated as undecided, never as errors.
    """
    if isinstance(payload, Decision):
        return payload
    if isinstance(payload, bool):
        return Decision.APPROVE if payload else Decision.REJECT
    if isinstance(payload, str):
        word = payload.strip().lower()
        if word in _APPROVE_WORDS:
            return Decision.APPROVE
        if word in _REJECT_WORDS:
            return Decision.REJECT
        return Decision.UNDECIDED
    if isinstance(payload, dict):
        if "decision" in payload:
            return parse_decision(payload["decision"])
        if isinstance(payload.get("approved"), bool):
            return parse_decision(payload["approved"])
    return Decision.UNDECIDED


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolInvocationPart(BaseModel):
    """One invocation of a named tool."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool-invocation"] = "tool-invocation"
    call_id: str
    tool_name: str
    args: Any = Field(default_factory=dict)
    state: InvocationState = InvocationState.INPUT_AVAILABLE
    result: Any = None
    decision: Any = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _result_only_when_terminal(self) -> "ToolInvocationPart":
        if self.state not in TERMINAL_STATES and self.result is not None:
            raise ValueError(f"result is only allowed in terminal states, got state={self.state}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(
        self,
        state: InvocationState,
        result: Any = None,
        now: datetime | None = None,
    ) -> "ToolInvocationPart":
        """Return a copy moved to ``state`` with an optional terminal result."""
        return self.model_copy(update={
            "state": state,
            "result": result if state in TERMINAL_STATES else None,
            "updated_at": now or utcnow(),
        })


class UnparsedPart(BaseModel):
    """A persisted part that failed to parse; carried verbatim until sanitized."""

    model_config = ConfigDict(frozen=True)

    type: Literal["unparsed"] = "unparsed"
    raw: Any = None


Part = Annotated[TextPart | ToolInvocationPart | UnparsedPart, Field(discriminator="type")]

_known_part_adapter: TypeAdapter[TextPart | ToolInvocationPart] = TypeAdapter(
    Annotated[TextPart | ToolInvocationPart, Field(discriminator="type")]
)


def parse_part(raw: Any) -> TextPart | ToolInvocationPart | UnparsedPart:
    """Parse one persisted part, falling back to :class:`UnparsedPart`."""
    if isinstance(raw, (TextPart, ToolInvocationPart, UnparsedPart)):
        return raw
    try:
        return _known_part_adapter.validate_python(raw)
    except ValidationError as e:
        log.debug("Unparseable message part", error=str(e))
        return UnparsedPart(raw=raw)


class Message(BaseModel):
    """A message in the session log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: Literal["user", "assistant", "system"]
    parts: list[Part] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def text(cls, role: Literal["user", "assistant", "system"], text: str) -> "Message":
        """Create a message with a single text part."""
        return cls(role=role, parts=[TextPart(text=text)])

    def with_parts(self, parts: Iterable[Any]) -> "Message":
        """Return a copy of this message with ``parts`` replaced."""
        return self.model_copy(update={"parts": list(parts)})

    def invocations(self) -> list[ToolInvocationPart]:
        return [part for part in self.parts if isinstance(part, ToolInvocationPart)]

    def text_content(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "id": self.id,
            "role": self.role,
            "parts": [
                part.raw if isinstance(part, UnparsedPart) else part.model_dump(mode="json")
                for part in self.parts
            ],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Create from dictionary; malformed parts become :class:`UnparsedPart`."""
        if not isinstance(data, dict):
            raise MalformedHistoryError(f"Message payload must be an object, got {type(data).__name__}")
        raw_parts = data.get("parts", [])
        if not isinstance(raw_parts, list):
            raw_parts = [raw_parts]
        try:
            return cls(
                id=data.get("id") or new_message_id(),
                role=data.get("role"),
                parts=[parse_part(raw) for raw in raw_parts],
                created_at=data.get("created_at") or utcnow(),
            )
        except ValidationError as e:
            raise MalformedHistoryError(f"Invalid message {data.get('id')!r}: {e}") from e


def load_messages(raw_messages: Iterable[Any]) -> list[Message]:
    """Parse a persisted log, skipping messages that cannot be parsed at all."""
    messages: list[Message] = []
    for raw in raw_messages:
        try:
            messages.append(Message.from_dict(raw))
        except MalformedHistoryError as e:
            log.warning("Dropping malformed message", error=str(e))
    return messages


def dump_messages(messages: Iterable[Message]) -> list[dict[str, Any]]:
    return [message.to_dict() for message in messages]


def iter_invocations(messages: Iterable[Message]) -> Iterator[tuple[int, int, ToolInvocationPart]]:
    """Yield ``(message_index, part_index, invocation)`` in log order."""
    for msg_idx, message in enumerate(messages):
        for part_idx, part in enumerate(message.parts):
            if isinstance(part, ToolInvocationPart):
                yield msg_idx, part_idx, part
