"""Rendered blocks embedded in transcript text.

Tool-call states and errors are stored inline in message content as fenced
JSON so a persisted transcript carries them without a side channel.
"""

from __future__ import annotations

import json
import re
from typing import Any

STATE_FENCE = "tool-state"
ERROR_FENCE = "error"

_STATE_BLOCK_RE = re.compile(r"```" + STATE_FENCE + r"\n(.*?)\n```", re.DOTALL)
_ERROR_BLOCK_RE = re.compile(r"```" + ERROR_FENCE + r"\n(.*?)\n```", re.DOTALL)
_ANY_BLOCK_RE = re.compile(r"\n*```(" + STATE_FENCE + "|" + ERROR_FENCE + r")\n(.*?)\n```\n*", re.DOTALL)


def _fence(kind: str, body: dict[str, Any]) -> str:
    return f"\n\n```{kind}\n{json.dumps(body, ensure_ascii=False)}\n```\n\n"


def render_state_block(state: str, text: str, block_id: str) -> str:
    return _fence(STATE_FENCE, {"state": state, "text": text, "id": block_id})


def render_error_block(message: str, status: int | None = None) -> str:
    body: dict[str, Any] = {"message": message}
    if status is not None:
        body["status"] = status
    return _fence(ERROR_FENCE, body)


def _parse(pattern: re.Pattern[str], text: str) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for match in pattern.finditer(text or ""):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            blocks.append(data)
    return blocks


def parse_state_blocks(text: str) -> list[dict[str, Any]]:
    """Return the ``{state, text, id}`` bodies found in ``text``, in order."""

    return _parse(_STATE_BLOCK_RE, text)


def parse_error_blocks(text: str) -> list[dict[str, Any]]:
    return _parse(_ERROR_BLOCK_RE, text)


def split_blocks(text: str) -> list[tuple[str, Any]]:
    """Split ``text`` into ``("text", str)`` runs and ``(fence, body)`` blocks."""

    parts: list[tuple[str, Any]] = []
    position = 0
    for match in _ANY_BLOCK_RE.finditer(text or ""):
        try:
            body = json.loads(match.group(2))
        except json.JSONDecodeError:
            continue
        if match.start() > position:
            parts.append(("text", text[position : match.start()]))
        parts.append((match.group(1), body))
        position = match.end()
    if position < len(text or ""):
        parts.append(("text", text[position:]))
    return parts


__all__ = [
    "ERROR_FENCE",
    "STATE_FENCE",
    "parse_error_blocks",
    "parse_state_blocks",
    "render_error_block",
    "render_state_block",
    "split_blocks",
]
