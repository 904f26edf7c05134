"""Result shape returned by every tool handler."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolResult(BaseModel):
    """Outcome of one tool call.

    Failure is always expressed through ``is_error``; handlers never raise
    past the registry. ``metadata["warning"]`` marks a result that succeeded
    with caveats.
    """

    model_config = ConfigDict(extra="ignore")

    is_error: bool = False
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def warning(self) -> bool:
        return bool(self.metadata.get("warning"))

    @property
    def final_state(self) -> str:
        if self.is_error:
            return "error"
        if self.warning:
            return "warn"
        return "done"

    @classmethod
    def error(cls, message: str, **metadata: Any) -> "ToolResult":
        return cls(is_error=True, content=message, metadata=metadata)

    @classmethod
    def coerce(cls, raw: Any) -> "ToolResult":
        """Normalize handler return values into a `ToolResult`.

        Accepts a `ToolResult`, a ``{"is_error", "content", "metadata"}`` dict,
        a ``{"content", "error"}`` dict, plain text, or ``None``.
        """

        if isinstance(raw, ToolResult):
            return raw
        if raw is None:
            return cls()
        if isinstance(raw, str):
            return cls(content=raw)
        if isinstance(raw, dict):
            if "is_error" in raw:
                data = dict(raw)
                data["is_error"] = bool(data.get("is_error"))
                data["content"] = _as_text(data.get("content"))
                if not isinstance(data.get("metadata"), dict):
                    data["metadata"] = {}
                if data.get("warning"):
                    data["metadata"] = {**data["metadata"], "warning": data["warning"]}
                return cls.model_validate(data)
            error = raw.get("error")
            content = _as_text(raw.get("content"))
            metadata = {k: v for k, v in raw.items() if k not in {"content", "error"}}
            if error:
                return cls(is_error=True, content=content or _as_text(error), metadata=metadata)
            return cls(content=content, metadata=metadata)
        return cls(content=_as_text(raw))


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


__all__ = ["ToolResult"]
