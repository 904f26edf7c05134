"""Short human-readable descriptions for tool-call state blocks."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from toolstream.tools.registry import MCP_PREFIX


def strip_mcp_prefix(tool_name: str) -> str:
    return tool_name[len(MCP_PREFIX):] if tool_name.startswith(MCP_PREFIX) else tool_name


def _basename(path: Any) -> str:
    text = str(path or "").replace("\\", "/").rstrip("/")
    return text.rsplit("/", 1)[-1] or text or "unknown"


def _host(url: Any) -> str:
    try:
        parsed = urlparse(str(url or ""))
    except ValueError:
        return str(url)
    return parsed.netloc or str(url) or "unknown"


def _command(cmd: Any, limit: int = 60) -> str:
    text = " ".join(str(cmd or "unknown").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


_START_TEMPLATES = {
    "read_file": lambda a: f"Reading {_basename(a.get('path'))}",
    "create_file": lambda a: f"Creating {_basename(a.get('path'))}",
    "edit_file": lambda a: f"Editing {_basename(a.get('path'))}",
    "delete_file": lambda a: f"Deleting {_basename(a.get('path'))}",
    "create_folder": lambda a: f"Creating folder {_basename(a.get('path'))}",
    "delete_folder": lambda a: f"Deleting folder {_basename(a.get('path'))}",
    "list_directory": lambda a: f"Listing {_basename(a.get('path'))}",
    "get_directory_tree": lambda a: f"Reading directory tree of {_basename(a.get('path'))}",
    "check_exists": lambda a: f"Checking {_basename(a.get('path'))}",
    "execute_command": lambda a: f"Running `{_command(a.get('command'))}`",
    "fetch": lambda a: f"Fetching {_host(a.get('url'))}",
}

_RESULT_TEMPLATES = {
    "read_file": lambda a: f"Read {_basename(a.get('path'))}",
    "create_file": lambda a: f"Created {_basename(a.get('path'))}",
    "edit_file": lambda a: f"Edited {_basename(a.get('path'))}",
    "delete_file": lambda a: f"Deleted {_basename(a.get('path'))}",
    "create_folder": lambda a: f"Created folder {_basename(a.get('path'))}",
    "delete_folder": lambda a: f"Deleted folder {_basename(a.get('path'))}",
    "list_directory": lambda a: f"Listed {_basename(a.get('path'))}",
    "get_directory_tree": lambda a: f"Read directory tree of {_basename(a.get('path'))}",
    "check_exists": lambda a: f"Checked {_basename(a.get('path'))}",
    "execute_command": lambda a: f"`{_command(a.get('command'))}` finished",
    "fetch": lambda a: f"Fetched {_host(a.get('url'))}",
}


def describe_tool_call(tool_name: str, arguments: Any = None) -> str:
    """Text shown while a call is in the ``doing`` state."""

    name = strip_mcp_prefix(tool_name)
    if not isinstance(arguments, dict):
        return f"Running tool: {name}"
    template = _START_TEMPLATES.get(name)
    if template is None:
        return f"Running tool: {name}"
    return template(arguments)


def describe_tool_result(tool_name: str, arguments: Any = None, *, is_error: bool = False) -> str:
    """Text summarizing a finished call, reported back to the backend."""

    name = strip_mcp_prefix(tool_name)
    if is_error:
        return f"{name} failed"
    template = _RESULT_TEMPLATES.get(name)
    if template is None or not isinstance(arguments, dict):
        return f"{name} finished"
    return template(arguments)


__all__ = ["MCP_PREFIX", "describe_tool_call", "describe_tool_result", "strip_mcp_prefix"]
