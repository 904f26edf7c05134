"""Structured logging for the engine.

Every log call names a stable dotted event (``tool.track.start``) and passes
its data as keyword fields. Session and tool-call ids are attached through
`log_context` rather than threaded through every call.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, TypeVar

T = TypeVar("T")

DEFAULT_LOG_FILE = "toolstream.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
QUIET_LOGGERS = {"httpx": logging.WARNING, "httpcore": logging.WARNING}

_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("toolstream_log_context", default={})


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=lambda: dict(QUIET_LOGGERS))


def _level(value: str) -> int:
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(value)
    return level


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _setting(name: str, parse: Callable[[str], T], default: T) -> T:
    """Read ``TOOLSTREAM_LOG_<name>``; unset or unparsable values give ``default``."""

    raw = os.getenv(f"TOOLSTREAM_LOG_{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        return default


def build_log_config(*, log_file_name: str = DEFAULT_LOG_FILE, default_level: int = logging.INFO) -> LogConfig:
    from toolstream.paths import ensure_dir, log_dir

    directory = _setting("DIR", lambda raw: ensure_dir(Path(raw).expanduser()), None) or log_dir()
    return LogConfig(
        log_file=directory / log_file_name,
        level=_setting("LEVEL", _level, default_level),
        stderr=_setting("STDERR", _flag, False),
        json=_setting("JSON", _flag, False),
        max_bytes=_setting("MAX_BYTES", int, DEFAULT_LOG_MAX_BYTES),
        backup_count=_setting("BACKUPS", int, DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Route the root logger to a rotating file, plus stderr when asked.

    Handlers installed by an earlier call are replaced.
    """

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(config.level)

    formatter = JsonFormatter() if config.json else ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach identifiers to every record logged inside the block; ``None`` values are skipped."""

    token = _context.set({**_context.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _context.reset(token)


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    logger.log(level, event, exc_info=exc_info, extra={"event_fields": fields})


def preview(text: object, limit: int = 160) -> str:
    """Single-line, clipped rendering of a value for log fields."""

    flat = str(text).replace("\n", "\\n")
    return flat if len(flat) <= limit else flat[:limit] + "..."


def _as_pair(key: str, value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    else:
        text = str(value)
        if not text or any(ch.isspace() or ch in '="' for ch in text):
            text = json.dumps(text)
    return f"{key}={text}"


class ContextFilter(logging.Filter):
    """Snapshot the active `log_context` onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_context.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


def _fields_of(record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
    return getattr(record, "context_fields", {}), getattr(record, "event_fields", {})


class ContextFormatter(logging.Formatter):
    """``<standard line> key=value ...``, context first, keys sorted."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        context, fields = _fields_of(record)
        pairs = [
            _as_pair(key, source[key])
            for source in (context, fields)
            for key in sorted(source)
            if source[key] is not None
        ]
        line = super().formatMessage(record)
        return " ".join([line, *pairs]) if pairs else line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context, fields = _fields_of(record)
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
