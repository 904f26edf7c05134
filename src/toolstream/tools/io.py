"""Helpers for keeping tool output within transport limits."""

from __future__ import annotations

from toolstream.tools.results import ToolResult

TRUNCATED_SUFFIX = "\n[truncated]"


def truncate_text(value: str, limit: int) -> tuple[str, bool]:
    if limit <= 0 or len(value) <= limit:
        return value, False
    keep = max(0, limit - len(TRUNCATED_SUFFIX))
    return f"{value[:keep]}{TRUNCATED_SUFFIX}", True


def truncate_result(result: ToolResult, limit: int) -> ToolResult:
    """Return ``result`` with oversized content clipped and flagged."""

    content, truncated = truncate_text(result.content, limit)
    if not truncated:
        return result
    return result.model_copy(update={"content": content, "metadata": {**result.metadata, "truncated": True}})


__all__ = ["TRUNCATED_SUFFIX", "truncate_result", "truncate_text"]
