"""Rebuild transcript and tool-call state from a persisted event log.

The log is an ordered list of JSON objects in the backend's history format::

    {"type": "ToolCallRequestEvent", "content": [{"id", "name", "arguments"}]}
    {"type": "ToolCallExecutionEvent", "content": [{"call_id", "is_error", "state"?}]}
    {"role": "...", "content": "..."}

Replay drives the same `ToolCallTracker` and display-text helpers as the live
dispatcher, so a resumed transcript matches one that was live all along.
`HistoryRecorder` writes the live stream back out in this format.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from toolstream.engine.tool_text import describe_tool_call, describe_tool_result
from toolstream.engine.tracker import FinalState, ToolCallTracker
from toolstream.engine.transcript import ROLES, Transcript
from toolstream.errors import DuplicateToolCallError
from toolstream.log_utils import log_event
from toolstream.tools.arguments import normalize_tool_arguments

if TYPE_CHECKING:
    from toolstream.store import SessionStore

logger = logging.getLogger(__name__)

REQUEST_ENTRY = "ToolCallRequestEvent"
EXECUTION_ENTRY = "ToolCallExecutionEvent"

# Approval prompts finish through the backend with no state block, only a paragraph break.
APPROVAL_TOOL = "ask_approval"
APPROVAL_BREAK = "\n\n"

_FINAL_STATES = ("done", "warn", "error")


class _Entry(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RequestItem(_Entry):
    id: str | int
    name: str = ""
    arguments: Any = None


class ExecutionItem(_Entry):
    call_id: str | int
    name: str = ""
    is_error: bool = False
    state: str | None = None
    interrupted: bool = False


class RequestEntry(_Entry):
    content: list[RequestItem] = Field(default_factory=list)


class ExecutionEntry(_Entry):
    content: list[ExecutionItem] = Field(default_factory=list)


def final_state(is_error: bool, state: str | None = None) -> FinalState:
    if state in _FINAL_STATES:
        return state  # type: ignore[return-value]
    return "error" if is_error else "done"


def display_arguments(raw_arguments: Any) -> Any:
    """Arguments as the display helpers see them: parsed when possible."""

    parsed = normalize_tool_arguments(raw_arguments)
    return parsed.value if parsed.ok else raw_arguments


def start_call(tracker: ToolCallTracker, call_id: str, tool_name: str, raw_arguments: Any) -> bool:
    """Start a call unless the id is already in flight; shared with live dispatch."""

    arguments = display_arguments(raw_arguments)
    try:
        tracker.start(call_id, tool_name, describe_tool_call(tool_name, arguments), arguments)
    except DuplicateToolCallError as exc:
        log_event(logger, "tool.call.duplicate", level=logging.WARNING, tool_call_id=exc.call_id, tool=tool_name)
        return False
    return True


def resolve_call(tracker: ToolCallTracker, call_id: str, state: FinalState, tool_name: str = "") -> bool:
    """Complete a call, ignoring ids that were already completed."""

    if not tracker.is_pending(call_id) and tracker.was_completed(call_id):
        log_event(logger, "tool.call.already_completed", level=logging.DEBUG, tool_call_id=call_id)
        return False
    fallback = describe_tool_result(tool_name or "tool", None, is_error=state == "error")
    tracker.complete(call_id, state, fallback, tool_name=tool_name)
    return True


def replay_event_log(
    entries: Iterable[dict[str, Any]],
    transcript: Transcript,
    tracker: ToolCallTracker,
) -> int:
    """Apply ``entries`` in order and interrupt whatever is left unresolved.

    Returns the number of entries applied. Malformed entries are logged and
    skipped.
    """

    applied = 0
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            log_event(logger, "replay.entry.skipped", level=logging.WARNING, index=index, reason="not_an_object")
            continue
        kind = entry.get("type")
        try:
            if kind == REQUEST_ENTRY:
                for item in RequestEntry.model_validate(entry).content:
                    start_call(tracker, str(item.id), item.name, item.arguments)
            elif kind == EXECUTION_ENTRY:
                for result in ExecutionEntry.model_validate(entry).content:
                    if result.name == APPROVAL_TOOL:
                        transcript.append("assistant", APPROVAL_BREAK)
                    elif result.interrupted:
                        tracker.interrupt(str(result.call_id))
                    else:
                        resolve_call(tracker, str(result.call_id), final_state(result.is_error, result.state), result.name)
            elif entry.get("role") in ROLES:
                content = entry.get("content")
                if isinstance(content, str) and content:
                    transcript.append(entry["role"], content)
            else:
                log_event(logger, "replay.entry.skipped", level=logging.DEBUG, index=index, kind=kind)
                continue
        except ValidationError as exc:
            log_event(
                logger,
                "replay.entry.invalid",
                level=logging.WARNING,
                index=index,
                kind=kind,
                errors=exc.error_count(),
            )
            continue
        applied += 1

    tracker.interrupt_pending()
    transcript.finalize_last()
    log_event(logger, "replay.done", entries=applied, messages=len(transcript))
    return applied


class HistoryRecorder:
    """Appends live-session activity to a store's event log.

    Consecutive text of one role is buffered into a single entry and flushed
    before any other entry is written.
    """

    def __init__(self, store: "SessionStore", session_id: str) -> None:
        self._store = store
        self.session_id = session_id
        self._role: str | None = None
        self._buffer: list[str] = []

    def record_text(self, role: str, text: str) -> None:
        if not text:
            return
        if self._role != role:
            self.flush()
            self._role = role
        self._buffer.append(text)

    def record_request(self, call_id: str, tool_name: str, raw_arguments: Any) -> None:
        self.flush()
        item = {"id": call_id, "name": tool_name, "arguments": raw_arguments}
        self._write({"type": REQUEST_ENTRY, "content": [item]})

    def record_completion(self, call_id: str, state: FinalState, tool_name: str = "") -> None:
        self.flush()
        item = {"call_id": call_id, "name": tool_name, "is_error": state == "error", "state": state}
        self._write({"type": EXECUTION_ENTRY, "content": [item]})

    def record_interrupted(self, call_ids: Iterable[str]) -> None:
        items = [{"call_id": call_id, "is_error": True, "state": "error", "interrupted": True} for call_id in call_ids]
        if not items:
            return
        self.flush()
        self._write({"type": EXECUTION_ENTRY, "content": items})

    def record_entry(self, entry: dict[str, Any]) -> None:
        """Append an entry that is already in log format."""

        self.flush()
        self._write(entry)

    def flush(self) -> None:
        if self._role is None or not self._buffer:
            self._role = None
            self._buffer = []
            return
        entry = {"role": self._role, "content": "".join(self._buffer)}
        self._role = None
        self._buffer = []
        self._write(entry)

    def _write(self, entry: dict[str, Any]) -> None:
        try:
            self._store.append_event(self.session_id, entry)
        except OSError as exc:
            log_event(logger, "history.append.failed", level=logging.WARNING, error=str(exc))


__all__ = [
    "APPROVAL_BREAK",
    "APPROVAL_TOOL",
    "EXECUTION_ENTRY",
    "HistoryRecorder",
    "REQUEST_ENTRY",
    "display_arguments",
    "final_state",
    "replay_event_log",
    "resolve_call",
    "start_call",
]
