"""Transport contract between a session and the reasoning backend."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Protocol

from toolstream.engine.events import StreamEvent

MessageSource = Literal["user", "tool"]


@dataclass(frozen=True)
class Ack:
    ok: bool = True
    data: Any = None


@dataclass(frozen=True)
class OutboundMessage:
    """A message sent to the backend: a user turn or a tool result."""

    content: str
    source: MessageSource = "user"

    def to_payload(self) -> dict[str, Any]:
        return {"content": self.content, "source": self.source}


def tool_result_message(call_id: str, content: str, result_text: str, *, is_error: bool) -> OutboundMessage:
    """Fold a local tool result into the message the backend expects."""

    body = {
        "type": "tool",
        "tool_id": call_id,
        "content": content,
        "resultText": result_text,
        "is_error": is_error,
    }
    return OutboundMessage(content=json.dumps(body, ensure_ascii=False, indent=2), source="tool")


class Transport(Protocol):
    async def start_session(self, session_id: str | None, *, mode: str, tools: list[dict[str, Any]]) -> str: ...

    def open_stream(self, session_id: str) -> AsyncIterator[StreamEvent]: ...

    async def send(self, session_id: str, message: OutboundMessage) -> Ack: ...

    async def cancel(self, session_id: str) -> Ack: ...

    async def close_session(self, session_id: str) -> Ack: ...

    async def get_history(self, session_id: str) -> list[dict[str, Any]]: ...

    async def generate_title(self, content: str) -> str | None: ...


__all__ = [
    "Ack",
    "MessageSource",
    "OutboundMessage",
    "Transport",
    "tool_result_message",
]
