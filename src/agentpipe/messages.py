"""Pydantic v2 models for messages decoded from the CLI's stdout."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter


class _MessageBase(BaseModel):
    """Fields shared by every message the CLI emits.

    Unknown keys are kept (``extra="allow"``) so newer CLI versions do not
    break decoding.
    """

    model_config = ConfigDict(extra="allow")

    session_id: str | None = Field(
        default=None,
        description="CLI-owned conversation identifier",
    )


class UserMessage(_MessageBase):
    """A user turn echoed back, usually carrying tool results."""

    type: Literal["user"] = "user"
    message: dict[str, Any] = Field(description="API message with role and content")
    parent_tool_use_id: str | None = None


class AssistantMessage(_MessageBase):
    """An assistant turn; content blocks live in ``message["content"]``."""

    type: Literal["assistant"] = "assistant"
    message: dict[str, Any] = Field(description="API message with role and content")
    parent_tool_use_id: str | None = None

    @property
    def content(self) -> list[dict[str, Any]]:
        blocks = self.message.get("content")
        if not isinstance(blocks, list):
            return []
        return [b for b in blocks if isinstance(b, dict)]

    @property
    def text(self) -> str:
        """Concatenated text of all ``text`` blocks."""
        return "".join(
            str(b.get("text", "")) for b in self.content if b.get("type") == "text"
        )


class SystemMessage(_MessageBase):
    """System notification, e.g. the ``init`` event listing tools."""

    type: Literal["system"] = "system"
    subtype: str = Field(description="System event kind")


class ResultMessage(_MessageBase):
    """Final message of a turn with cost and usage figures."""

    type: Literal["result"] = "result"
    subtype: str = Field(description="'success' or an error kind")
    session_id: str = Field(description="CLI-owned conversation identifier")
    duration_ms: int = 0
    duration_api_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None


class StreamEvent(_MessageBase):
    """Partial-message streaming event."""

    type: Literal["stream_event"] = "stream_event"
    uuid: str | None = None
    event: dict[str, Any] = Field(default_factory=dict)


class GenericMessage(_MessageBase):
    """Any message type this library does not model explicitly."""

    type: str = Field(default="unknown", description="Message type discriminator")


_KNOWN_TYPES = frozenset({"user", "assistant", "system", "result", "stream_event"})


def _message_discriminator(v: Any) -> str:
    """Map raw data or a model instance to its union tag."""
    if isinstance(v, dict):
        kind = v.get("type")
    else:
        kind = getattr(v, "type", None)
    if isinstance(kind, str) and kind in _KNOWN_TYPES:
        return kind
    return "generic"


Message = Annotated[
    Annotated[UserMessage, Tag("user")]
    | Annotated[AssistantMessage, Tag("assistant")]
    | Annotated[SystemMessage, Tag("system")]
    | Annotated[ResultMessage, Tag("result")]
    | Annotated[StreamEvent, Tag("stream_event")]
    | Annotated[GenericMessage, Tag("generic")],
    Discriminator(_message_discriminator),
]
"""Discriminated union of every message the decoder can emit."""

_MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(data: dict[str, Any]) -> Message:
    """Validate a decoded JSON object into a :data:`Message`.

    Raises:
        pydantic.ValidationError: If the object does not match its type.
    """
    return _MESSAGE_ADAPTER.validate_python(data)
