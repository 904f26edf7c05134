"""Stream events consumed by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union


Role = Literal["user", "assistant", "tool", "error", "system"]


@dataclass(frozen=True)
class TextChunk:
    """A piece of streamed message text."""

    role: Role
    content: str


@dataclass(frozen=True)
class ToolCallRequest:
    """The backend asks for a local tool to run."""

    call_id: str
    tool_name: str
    raw_arguments: Any


@dataclass(frozen=True)
class ToolCallCompletion:
    """The backend's own execution channel reports a call as finished."""

    call_id: str
    tool_name: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class ContextCompressionStart:
    id: str
    text: str


@dataclass(frozen=True)
class ContextCompressionEnd:
    id: str
    text: str


@dataclass(frozen=True)
class SessionError:
    message: str


@dataclass(frozen=True)
class UserInputRequired:
    pass


@dataclass(frozen=True)
class StreamComplete:
    pass


@dataclass(frozen=True)
class Unknown:
    """An event kind this engine does not handle; kept for logging."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[
    TextChunk,
    ToolCallRequest,
    ToolCallCompletion,
    ContextCompressionStart,
    ContextCompressionEnd,
    SessionError,
    UserInputRequired,
    StreamComplete,
    Unknown,
]

TERMINAL_EVENTS = (SessionError, UserInputRequired, StreamComplete)


__all__ = [
    "ContextCompressionEnd",
    "ContextCompressionStart",
    "Role",
    "SessionError",
    "StreamComplete",
    "StreamEvent",
    "TERMINAL_EVENTS",
    "TextChunk",
    "ToolCallCompletion",
    "ToolCallRequest",
    "Unknown",
    "UserInputRequired",
]
