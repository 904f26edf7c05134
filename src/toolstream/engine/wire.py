"""Decoding of the backend's newline-delimited JSON stream into `StreamEvent`s.

The backend tags every line with a ``type`` field. Payload bodies are validated
with pydantic models that ignore unknown keys, so additive backend changes do
not break decoding; a line that fails validation degrades to `Unknown`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

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
from toolstream.log_utils import log_event, preview

logger = logging.getLogger(__name__)

CHUNK_EVENT = "ModelClientStreamingChunkEvent"
TEXT_MESSAGE_EVENT = "TextMessage"
TOOL_REQUEST_EVENT = "tool_call_request"
TOOL_EXECUTION_EVENT = "ToolCallExecutionEvent"
COMPRESSION_PREFIX = "context_compression_"
COMPRESSION_START_EVENT = "context_compression_start"
ERROR_EVENT = "error"
USER_INPUT_EVENT = "user_input_required"
COMPLETED_EVENT = "TaskCompleted"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StreamingChunkPayload(_Payload):
    content: str | None = None


class ToolCallRequestPayload(_Payload):
    tool_id: str | int
    tool_name: str = Field(..., min_length=1)
    tool_args: Any = None


class ExecutionResultPayload(_Payload):
    call_id: str | int | None = None
    name: str | None = None
    is_error: bool = False


class ToolCallExecutionPayload(_Payload):
    content: list[ExecutionResultPayload] = Field(default_factory=list)


class CompressionPayload(_Payload):
    id: str | int = ""
    content: str = ""


class ErrorPayload(_Payload):
    message: str | None = None


def decode_payload(payload: Any) -> list[StreamEvent]:
    """Map one decoded JSON object to zero or more stream events."""

    if not isinstance(payload, dict):
        return [Unknown(kind=type(payload).__name__, payload={"value": payload})]
    kind = str(payload.get("type") or "")
    try:
        return _decode_known(kind, payload)
    except ValidationError as exc:
        log_event(
            logger,
            "stream.decode.invalid",
            level=logging.WARNING,
            kind=kind,
            errors=exc.error_count(),
            payload=preview(payload),
        )
        return [Unknown(kind=kind, payload=payload)]


def _decode_known(kind: str, payload: dict[str, Any]) -> list[StreamEvent]:
    if kind == CHUNK_EVENT:
        chunk = StreamingChunkPayload.model_validate(payload)
        if not chunk.content:
            return []
        return [TextChunk(role="assistant", content=chunk.content)]
    if kind == TOOL_REQUEST_EVENT:
        request = ToolCallRequestPayload.model_validate(payload)
        return [
            ToolCallRequest(
                call_id=str(request.tool_id),
                tool_name=request.tool_name,
                raw_arguments=request.tool_args,
            )
        ]
    if kind == TOOL_EXECUTION_EVENT:
        execution = ToolCallExecutionPayload.model_validate(payload)
        return [
            ToolCallCompletion(call_id=str(item.call_id), tool_name=item.name or "", is_error=item.is_error)
            for item in execution.content
            if item.call_id is not None
        ]
    if kind.startswith(COMPRESSION_PREFIX):
        compression = CompressionPayload.model_validate(payload)
        if kind.startswith(COMPRESSION_START_EVENT):
            return [ContextCompressionStart(id=str(compression.id), text=compression.content)]
        return [ContextCompressionEnd(id=str(compression.id), text=compression.content)]
    if kind == ERROR_EVENT:
        error = ErrorPayload.model_validate(payload)
        return [SessionError(message=error.message or "Unknown error")]
    if kind == USER_INPUT_EVENT:
        return [UserInputRequired()]
    if kind == COMPLETED_EVENT:
        return [StreamComplete()]
    return [Unknown(kind=kind, payload=payload)]


def decode_line(line: str) -> list[StreamEvent]:
    """Decode a single NDJSON line; blank or malformed lines yield nothing."""

    if not line.strip():
        return []
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        log_event(logger, "stream.decode.bad_json", level=logging.WARNING, error=str(exc), line=preview(line))
        return []
    return decode_payload(payload)


__all__ = ["decode_line", "decode_payload"]
