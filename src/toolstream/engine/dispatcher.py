"""Dispatch table for items consumed by a session's loop.

The loop sees backend `StreamEvent`s plus a few internal items posted by the
session's own tasks (tool results, stream closure, failed deliveries, idle
timeouts). Everything here runs on the loop, one item at a time, so transcript
and tracker mutations never interleave.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from toolstream.engine.blocks import render_error_block, render_state_block
from toolstream.engine.events import (
    ContextCompressionEnd,
    ContextCompressionStart,
    SessionError,
    StreamComplete,
    StreamEvent,
    TextChunk,
    ToolCallCompletion,
    ToolCallRequest,
    Unknown,
    UserInputRequired,
)
from toolstream.engine.replay import (
    APPROVAL_BREAK,
    APPROVAL_TOOL,
    display_arguments,
    final_state,
    resolve_call,
    start_call,
)
from toolstream.engine.tool_text import describe_tool_result
from toolstream.errors import DeliveryError
from toolstream.log_utils import log_context, log_event, preview
from toolstream.tools.results import ToolResult
from toolstream.transport.base import tool_result_message

if TYPE_CHECKING:
    from toolstream.engine.session import Session

logger = logging.getLogger(__name__)

COMPRESSION_DEFAULT_TEXT = "Compressing conversation context"


@dataclass(frozen=True)
class ToolOutcome:
    """A local handler finished; posted back by its task."""

    call_id: str
    tool_name: str
    raw_arguments: Any
    result: ToolResult


@dataclass(frozen=True)
class StreamClosed:
    error: Exception | None = None


@dataclass(frozen=True)
class DeliveryFailed:
    error: DeliveryError


@dataclass(frozen=True)
class IdleTimeout:
    timeout_s: float


LoopItem = Union[StreamEvent, ToolOutcome, StreamClosed, DeliveryFailed, IdleTimeout]


def compression_block_id(compression_id: str) -> str:
    return f"compress-{compression_id}"


class EventDispatcher:
    def __init__(self, session: "Session") -> None:
        self._session = session

    async def handle(self, item: LoopItem) -> None:
        session = self._session
        if session.state in ("completed", "closed") and not isinstance(item, IdleTimeout):
            log_event(
                logger,
                "dispatch.dropped",
                level=logging.DEBUG,
                item=type(item).__name__,
                state=session.state,
            )
            return

        if isinstance(item, TextChunk):
            self._on_text(item)
        elif isinstance(item, ToolCallRequest):
            self._on_tool_request(item)
        elif isinstance(item, ToolOutcome):
            self._on_tool_outcome(item)
        elif isinstance(item, ToolCallCompletion):
            self._on_tool_completion(item)
        elif isinstance(item, ContextCompressionStart):
            self._append_text(
                "assistant",
                render_state_block("doing", item.text or COMPRESSION_DEFAULT_TEXT, compression_block_id(item.id)),
            )
        elif isinstance(item, ContextCompressionEnd):
            self._append_text(
                "assistant",
                render_state_block("done", item.text or COMPRESSION_DEFAULT_TEXT, compression_block_id(item.id)),
            )
        elif isinstance(item, SessionError):
            self.fail(item.message)
        elif isinstance(item, UserInputRequired):
            self._on_user_input_required()
        elif isinstance(item, StreamComplete):
            self._complete()
        elif isinstance(item, StreamClosed):
            self._on_stream_closed(item)
        elif isinstance(item, DeliveryFailed):
            self.fail(str(item.error), status=item.error.status)
        elif isinstance(item, IdleTimeout):
            await self._on_idle_timeout(item)
        elif isinstance(item, Unknown):
            log_event(logger, "dispatch.unknown", kind=item.kind, payload=preview(item.payload))
        else:
            log_event(logger, "dispatch.unhandled", level=logging.WARNING, item=type(item).__name__)

    def _append_text(self, role: str, text: str) -> None:
        session = self._session
        session.transcript.append(role, text)  # type: ignore[arg-type]
        session.recorder.record_text(role, text)

    def _on_text(self, event: TextChunk) -> None:
        session = self._session
        if session.state == "waitingForUser":
            session.state = "streaming"
        self._append_text(event.role, event.content)

    def _on_tool_request(self, event: ToolCallRequest) -> None:
        session = self._session
        with log_context(tool_call_id=event.call_id):
            if not start_call(session.tracker, event.call_id, event.tool_name, event.raw_arguments):
                return
            session.recorder.record_request(event.call_id, event.tool_name, event.raw_arguments)
            session.spawn_tool(event)

    def _on_tool_outcome(self, outcome: ToolOutcome) -> None:
        session = self._session
        result = outcome.result
        if session.tracker.is_pending(outcome.call_id):
            state = result.final_state
            session.tracker.complete(outcome.call_id, state, tool_name=outcome.tool_name)
            session.recorder.record_completion(outcome.call_id, state, outcome.tool_name)
        else:
            log_event(
                logger,
                "dispatch.tool_result.already_resolved",
                level=logging.DEBUG,
                tool_call_id=outcome.call_id,
            )
        record = session.tracker.get(outcome.call_id)
        arguments = record.arguments if record is not None else display_arguments(outcome.raw_arguments)
        message = tool_result_message(
            outcome.call_id,
            result.content,
            describe_tool_result(outcome.tool_name, arguments, is_error=result.is_error),
            is_error=result.is_error,
        )
        session.spawn_delivery(message)

    def _on_tool_completion(self, event: ToolCallCompletion) -> None:
        session = self._session
        if event.tool_name == APPROVAL_TOOL:
            self._append_text("assistant", APPROVAL_BREAK)
            return
        state = final_state(event.is_error)
        if resolve_call(session.tracker, event.call_id, state, event.tool_name):
            session.recorder.record_completion(event.call_id, state, event.tool_name)

    def interrupt_pending(self) -> None:
        session = self._session
        interrupted = session.tracker.interrupt_pending()
        session.recorder.record_interrupted(record.id for record in interrupted)

    def _on_user_input_required(self) -> None:
        session = self._session
        session.transcript.finalize_last()
        session.state = "waitingForUser"
        session.waiting = False
        session.recorder.flush()
        session.persist()

    def _complete(self) -> None:
        session = self._session
        self.interrupt_pending()
        session.transcript.finalize_last()
        session.state = "completed"
        session.waiting = False
        session.recorder.flush()
        session.persist()
        log_event(logger, "session.completed", messages=len(session.transcript))

    def fail(self, message: str, *, status: int | None = None) -> None:
        session = self._session
        self.interrupt_pending()
        session.transcript.finalize_last()
        block = render_error_block(message, status)
        session.transcript.append_block("error", block)
        session.recorder.record_text("error", block)
        session.state = "completed"
        session.waiting = False
        session.recorder.flush()
        session.persist()
        log_event(logger, "session.failed", level=logging.WARNING, error=message, status=status)

    def _on_stream_closed(self, item: StreamClosed) -> None:
        if item.error is None:
            log_event(logger, "stream.closed.without_completion", level=logging.WARNING)
            self._complete()
            return
        status = getattr(item.error, "status", None)
        self.fail(str(item.error) or type(item.error).__name__, status=status)

    async def _on_idle_timeout(self, item: IdleTimeout) -> None:
        session = self._session
        if not session.waiting:
            return
        log_event(logger, "session.idle_timeout", level=logging.WARNING, timeout_s=item.timeout_s)
        block = render_error_block(f"No response from the server within {item.timeout_s:g}s")
        session.transcript.append_block("error", block)
        session.recorder.record_text("error", block)
        await session.stop()


__all__ = [
    "DeliveryFailed",
    "EventDispatcher",
    "IdleTimeout",
    "LoopItem",
    "StreamClosed",
    "ToolOutcome",
    "compression_block_id",
]
