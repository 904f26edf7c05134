"""Engine configuration loaded from the environment and `.env` files."""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from toolstream.paths import state_dir

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
DEFAULT_SEND_RETRIES = 3
DEFAULT_RETRY_DELAY_S = 1.0
DEFAULT_TOOL_TIMEOUT_S = 60.0
DEFAULT_HTTP_TIMEOUT_S = 30.0
DEFAULT_MAX_SESSIONS = 50

# Keep a single tool result well below typical backend request limits.
TOOL_OUTPUT_LIMIT = 48 * 1024

SESSION_MODES = ("agent", "qa")


@dataclass(frozen=True)
class EngineConfig:
    server_url: str = DEFAULT_SERVER_URL
    send_retries: int = DEFAULT_SEND_RETRIES
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S
    tool_timeout_s: float | None = DEFAULT_TOOL_TIMEOUT_S
    tool_output_limit: int = TOOL_OUTPUT_LIMIT
    idle_timeout_s: float | None = None
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    state_dir: Path | None = None
    max_sessions: int = DEFAULT_MAX_SESSIONS
    mode: str = "agent"


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    with contextlib.suppress(ValueError):
        parsed = float(value)
        return parsed if parsed > 0 else None
    return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def load_config(env_file: str | Path | None = None) -> EngineConfig:
    """Build an `EngineConfig` from `TOOLSTREAM_*` variables.

    An explicit ``env_file`` is loaded first, then a `.env` in the working
    directory; variables already present in the process win over both.
    """

    if env_file is not None:
        load_dotenv(env_file, override=False)
    load_dotenv(override=False)

    mode = os.getenv("TOOLSTREAM_MODE", "agent").strip().lower()
    if mode not in SESSION_MODES:
        mode = "agent"
    state_override = os.getenv("TOOLSTREAM_STATE_DIR")

    return EngineConfig(
        server_url=os.getenv("TOOLSTREAM_SERVER_URL", DEFAULT_SERVER_URL).rstrip("/"),
        send_retries=max(0, _env_int("TOOLSTREAM_SEND_RETRIES", DEFAULT_SEND_RETRIES)),
        retry_delay_s=_env_float("TOOLSTREAM_RETRY_DELAY_S", DEFAULT_RETRY_DELAY_S) or 0.0,
        tool_timeout_s=_env_float("TOOLSTREAM_TOOL_TIMEOUT_S", DEFAULT_TOOL_TIMEOUT_S),
        tool_output_limit=_env_int("TOOLSTREAM_TOOL_OUTPUT_LIMIT", TOOL_OUTPUT_LIMIT),
        idle_timeout_s=_env_float("TOOLSTREAM_IDLE_TIMEOUT_S", None),
        http_timeout_s=_env_float("TOOLSTREAM_HTTP_TIMEOUT_S", DEFAULT_HTTP_TIMEOUT_S) or DEFAULT_HTTP_TIMEOUT_S,
        state_dir=Path(state_override).expanduser() if state_override else None,
        max_sessions=_env_int("TOOLSTREAM_MAX_SESSIONS", DEFAULT_MAX_SESSIONS),
        mode=mode,
    )


def resolve_state_dir(config: EngineConfig) -> Path:
    if config.state_dir is not None:
        config.state_dir.mkdir(parents=True, exist_ok=True)
        return config.state_dir
    return state_dir()
