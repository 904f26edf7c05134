from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from toolstream.config import EngineConfig
from toolstream.engine.events import StreamEvent
from toolstream.engine.retry import RetryController, RetryPolicy
from toolstream.engine.session import Session
from toolstream.errors import TransientTransportError, TransportError
from toolstream.tools.registry import ToolRegistry
from toolstream.transport.base import Ack, OutboundMessage

_END = object()


class FakeTransport:
    """In-process backend: tests push events, sends are recorded."""

    def __init__(self, session_id: str = "s-1") -> None:
        self.session_id = session_id
        self.started: list[dict[str, Any]] = []
        self.sent: list[OutboundMessage] = []
        self.cancelled: list[str] = []
        self.closed: list[str] = []
        self.history: list[dict[str, Any]] = []
        self.title: str | None = None
        self.send_failures: list[Exception] = []
        self.cancel_error: Exception | None = None
        self.stream_opens = 0
        self._events: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, *events: StreamEvent) -> None:
        for event in events:
            self._events.put_nowait(event)

    def end_stream(self) -> None:
        self._events.put_nowait(_END)

    def break_stream(self, exc: Exception) -> None:
        self._events.put_nowait(exc)

    async def start_session(self, session_id: str | None, *, mode: str, tools: list[dict[str, Any]]) -> str:
        self.started.append({"session_id": session_id, "mode": mode, "tools": tools})
        return session_id or self.session_id

    async def open_stream(self, session_id: str) -> AsyncIterator[StreamEvent]:
        self.stream_opens += 1
        while True:
            item = await self._events.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def send(self, session_id: str, message: OutboundMessage) -> Ack:
        if self.send_failures:
            raise self.send_failures.pop(0)
        self.sent.append(message)
        return Ack(ok=True)

    async def cancel(self, session_id: str) -> Ack:
        self.cancelled.append(session_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        return Ack(ok=True)

    async def close_session(self, session_id: str) -> Ack:
        self.closed.append(session_id)
        return Ack(ok=True)

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        return list(self.history)

    async def generate_title(self, content: str) -> str | None:
        return self.title


class MemoryStore:
    """SessionStore keeping everything in dicts."""

    def __init__(self) -> None:
        self.meta: dict[str, dict[str, Any]] = {}
        self.transcripts: dict[str, list[dict[str, Any]]] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.transcript_saves = 0

    def save_meta(self, session_id: str, meta: dict[str, Any]) -> None:
        self.meta[session_id] = {**self.meta.get(session_id, {}), **meta}

    def load_meta(self, session_id: str) -> dict[str, Any]:
        return dict(self.meta.get(session_id, {}))

    def save_transcript(self, session_id: str, messages: Any) -> None:
        self.transcripts[session_id] = list(messages)
        self.transcript_saves += 1

    def load_transcript(self, session_id: str) -> list[dict[str, Any]]:
        return list(self.transcripts.get(session_id, []))

    def append_event(self, session_id: str, entry: dict[str, Any]) -> None:
        self.events.setdefault(session_id, []).append(entry)

    def load_event_log(self, session_id: str) -> list[dict[str, Any]]:
        return list(self.events.get(session_id, []))

    def list_sessions(self) -> list[dict[str, Any]]:
        return [{"id": key, **value} for key, value in self.meta.items()]


def transient(status: int = 502) -> TransientTransportError:
    return TransientTransportError(f"HTTP {status}", status=status)


def fatal(status: int = 400) -> TransportError:
    return TransportError(f"HTTP {status}", status=status)


def make_session(
    transport: FakeTransport | None = None,
    registry: ToolRegistry | None = None,
    *,
    store: Any = None,
    config: EngineConfig | None = None,
    sleeps: list[float] | None = None,
) -> Session:
    """Session wired to fakes; retry delays are recorded instead of slept."""

    recorded = sleeps if sleeps is not None else []

    async def _sleep(delay: float) -> None:
        recorded.append(delay)

    return Session(
        transport or FakeTransport(),
        registry or ToolRegistry(),
        store=store,
        config=config,
        retry=RetryController(RetryPolicy(max_retries=3, delay_s=1.0), sleep=_sleep),
        auto_title=False,
    )


async def settle(rounds: int = 50) -> None:
    """Let queued tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)
