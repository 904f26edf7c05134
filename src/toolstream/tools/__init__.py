"""Tool registry, argument normalization and result types."""

from __future__ import annotations

from toolstream.tools.arguments import ParsedArguments, normalize_tool_arguments, repair_path_backslashes
from toolstream.tools.registry import ToolHandler, ToolRegistry, ToolSpec
from toolstream.tools.results import ToolResult

__all__ = [
    "ParsedArguments",
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "normalize_tool_arguments",
    "repair_path_backslashes",
]
