"""Typed events decoded from the CLI's stream-json output.

Each stdout line is one JSON object whose ``type`` field selects a variant.
The protocol keeps growing, so ``system``, ``result`` and permission denial
records keep every key they do not model in an open ``extra`` map, and lines
that cannot be decoded are skipped rather than treated as fatal.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = structlog.get_logger(__name__)


class _Event(BaseModel):
    """Base for closed variants: unknown keys are ignored."""

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-compatible wire shape, extra fields included."""
        return self.model_dump(mode="json")


class _OpenEvent(_Event):
    """Base for variants that keep unmodeled keys."""

    model_config = ConfigDict(frozen=True, extra="allow")

    @property
    def extra(self) -> dict[str, Any]:
        """Every key of the line that is not a modeled field."""
        return dict(self.model_extra or {})


class PermissionDenial(BaseModel):
    """A tool call the CLI refused to run without permission."""

    model_config = ConfigDict(frozen=True, extra="allow")

    tool_name: str
    reason: str

    @property
    def extra(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class SystemEvent(_OpenEvent):
    type: Literal["system"] = "system"
    subtype: str | None = None

    @property
    def native_session_id(self) -> str | None:
        """The session id the CLI assigned itself, if this event reports one."""
        value = (self.model_extra or {}).get("session_id")
        if isinstance(value, str) and value:
            return value
        return None


class AssistantEvent(_Event):
    type: Literal["assistant"] = "assistant"
    message: Any


class UserEvent(_Event):
    type: Literal["user"] = "user"
    message: Any


class TextDeltaEvent(_Event):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolStartEvent(_Event):
    type: Literal["tool_start"] = "tool_start"
    tool_name: str
    input: Any


class ToolEndEvent(_Event):
    type: Literal["tool_end"] = "tool_end"
    tool_name: str
    output: str | None = None


class PermissionRequestEvent(_Event):
    type: Literal["permission_request"] = "permission_request"
    session_id: str
    denials: list[PermissionDenial]


class ResultEvent(_OpenEvent):
    type: Literal["result"] = "result"
    subtype: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


class SessionEndEvent(_Event):
    type: Literal["session_end"] = "session_end"


StreamEvent = Annotated[
    Union[
        SystemEvent,
        AssistantEvent,
        UserEvent,
        TextDeltaEvent,
        ToolStartEvent,
        ToolEndEvent,
        PermissionRequestEvent,
        ResultEvent,
        ErrorEvent,
        SessionEndEvent,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def decode_line(line: str | bytes) -> StreamEvent | None:
    """Decode one line of CLI output into an event.

    Returns None for blank lines and for anything that does not match a known
    variant: invalid JSON, a missing or unknown ``type``, or a known ``type``
    with the wrong shape.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        return _adapter.validate_json(line)
    except ValidationError as exc:
        logger.debug(
            "Skipping undecodable line",
            errors=exc.error_count(),
            line=line[:200],
        )
        return None


class StreamDecoder:
    """Line decoder for a single stream that counts what it keeps and drops."""

    def __init__(self) -> None:
        self.decoded = 0
        self.skipped = 0

    def decode(self, line: str | bytes) -> StreamEvent | None:
        event = decode_line(line)
        if event is None:
            # Blank lines are not worth counting.
            text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
            if text.strip():
                self.skipped += 1
        else:
            self.decoded += 1
        return event
