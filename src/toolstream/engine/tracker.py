"""Lifecycle tracking for tool calls, keyed by the backend's call id."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from toolstream.engine.blocks import render_state_block
from toolstream.engine.transcript import Transcript
from toolstream.errors import DuplicateToolCallError
from toolstream.log_utils import log_event

logger = logging.getLogger(__name__)

ToolCallState = Literal["doing", "done", "warn", "error"]
FinalState = Literal["done", "warn", "error"]

INTERRUPTED_SUFFIX = " (interrupted)"


@dataclass
class ToolCallRecord:
    id: str
    tool_name: str
    arguments: Any = None
    state: ToolCallState = "doing"
    display_text: str = ""
    history: list[ToolCallState] = field(default_factory=list)


class ToolCallTracker:
    """Correlates call ids with ``doing -> done|warn|error`` records.

    Every transition is rendered into the transcript as a state block. Calls
    may complete in any order; several may be ``doing`` at once.
    """

    def __init__(self, transcript: Transcript) -> None:
        self._transcript = transcript
        self._pending: dict[str, ToolCallRecord] = {}
        self._completed: dict[str, ToolCallRecord] = {}

    @property
    def pending(self) -> dict[str, ToolCallRecord]:
        return dict(self._pending)

    def get(self, call_id: str) -> ToolCallRecord | None:
        return self._pending.get(call_id) or self._completed.get(call_id)

    def is_pending(self, call_id: str) -> bool:
        return call_id in self._pending

    def was_completed(self, call_id: str) -> bool:
        return call_id in self._completed

    def start(self, call_id: str, tool_name: str, display_text: str, arguments: Any = None) -> ToolCallRecord:
        if call_id in self._pending:
            raise DuplicateToolCallError(call_id)
        record = ToolCallRecord(
            id=call_id,
            tool_name=tool_name,
            arguments=arguments,
            display_text=display_text,
            history=["doing"],
        )
        self._pending[call_id] = record
        self._completed.pop(call_id, None)
        self._transcript.append("assistant", render_state_block("doing", display_text, call_id))
        log_event(logger, "tool.track.start", tool_call_id=call_id, tool=tool_name)
        return record

    def complete(
        self,
        call_id: str,
        state: FinalState,
        display_text: str = "",
        *,
        tool_name: str = "",
    ) -> ToolCallRecord:
        """Record the final state of a call.

        The text captured at ``start`` is reused; ``display_text`` is only used
        when no record exists (completion observed before its request).
        """

        record = self._pending.pop(call_id, None)
        if record is None:
            log_event(
                logger,
                "tool.track.orphan_completion",
                level=logging.WARNING,
                tool_call_id=call_id,
                state=state,
            )
            record = ToolCallRecord(id=call_id, tool_name=tool_name, display_text=display_text or tool_name)
        record.state = state
        record.history.append(state)
        self._completed[call_id] = record
        self._transcript.append("assistant", render_state_block(state, record.display_text, call_id))
        log_event(logger, "tool.track.complete", tool_call_id=call_id, state=state)
        return record

    def interrupt(self, call_id: str) -> ToolCallRecord | None:
        """Mark one unresolved call as an interrupted error."""

        record = self._pending.pop(call_id, None)
        if record is None:
            return None
        record.state = "error"
        record.history.append("error")
        record.display_text = f"{record.display_text}{INTERRUPTED_SUFFIX}"
        self._completed[call_id] = record
        self._transcript.append("assistant", render_state_block("error", record.display_text, call_id))
        return record

    def interrupt_pending(self) -> list[ToolCallRecord]:
        """Mark every unresolved call as an interrupted error, in request order."""

        interrupted = [record for record in map(self.interrupt, list(self._pending)) if record is not None]
        if interrupted:
            log_event(
                logger,
                "tool.track.interrupted",
                level=logging.WARNING,
                tool_call_ids=[record.id for record in interrupted],
            )
        return interrupted


__all__ = ["FinalState", "INTERRUPTED_SUFFIX", "ToolCallRecord", "ToolCallState", "ToolCallTracker"]
