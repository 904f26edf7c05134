"""Session persistence.

Each session gets a directory under the state dir holding ``meta.json`` (title,
mode, timestamps), ``transcript.json`` (the rendered messages) and
``events.jsonl`` (the ordered event log used for replay).
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Protocol

from toolstream.config import DEFAULT_MAX_SESSIONS
from toolstream.log_utils import log_event

logger = logging.getLogger(__name__)

META_FILE = "meta.json"
TRANSCRIPT_FILE = "transcript.json"
EVENTS_FILE = "events.jsonl"


class SessionStore(Protocol):
    def save_meta(self, session_id: str, meta: dict[str, Any]) -> None: ...

    def load_meta(self, session_id: str) -> dict[str, Any]: ...

    def save_transcript(self, session_id: str, messages: Iterable[dict[str, Any]]) -> None: ...

    def load_transcript(self, session_id: str) -> list[dict[str, Any]]: ...

    def append_event(self, session_id: str, entry: dict[str, Any]) -> None: ...

    def load_event_log(self, session_id: str) -> list[dict[str, Any]]: ...

    def list_sessions(self) -> list[dict[str, Any]]: ...


@dataclass
class FileSessionStore:
    """Persist session metadata, transcripts and event logs on disk."""

    root: Path
    max_sessions: int = DEFAULT_MAX_SESSIONS

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.cleanup()

    def session_dir(self, session_id: str) -> Path:
        path = self._path(session_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in {".", ".."}:
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.root / session_id

    def save_meta(self, session_id: str, meta: dict[str, Any]) -> None:
        merged = {**self.load_meta(session_id), **meta, "id": session_id, "updated_at": time.time()}
        merged.setdefault("created_at", merged["updated_at"])
        path = self.session_dir(session_id) / META_FILE
        path.write_text(json.dumps(merged, indent=2, ensure_ascii=False), encoding="utf-8")

    def load_meta(self, session_id: str) -> dict[str, Any]:
        data = self._read_json(self._path(session_id) / META_FILE)
        return data if isinstance(data, dict) else {}

    def save_transcript(self, session_id: str, messages: Iterable[dict[str, Any]]) -> None:
        path = self.session_dir(session_id) / TRANSCRIPT_FILE
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(list(messages), indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def load_transcript(self, session_id: str) -> list[dict[str, Any]]:
        data = self._read_json(self._path(session_id) / TRANSCRIPT_FILE)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def append_event(self, session_id: str, entry: dict[str, Any]) -> None:
        path = self.session_dir(session_id) / EVENTS_FILE
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def load_event_log(self, session_id: str) -> list[dict[str, Any]]:
        path = self._path(session_id) / EVENTS_FILE
        if not path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                log_event(
                    logger,
                    "store.event_log.bad_line",
                    level=logging.WARNING,
                    session_id=session_id,
                    line=lineno,
                    error=str(exc),
                )
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries

    def list_sessions(self) -> List[dict[str, Any]]:
        """Stored sessions, most recently updated first."""

        sessions = []
        for path in self._session_paths():
            meta = self.load_meta(path.name)
            sessions.append(
                {
                    "id": path.name,
                    "title": meta.get("title") or "",
                    "mode": meta.get("mode") or "",
                    "updated_at": meta.get("updated_at") or path.stat().st_mtime,
                }
            )
        sessions.sort(key=lambda item: item["updated_at"], reverse=True)
        return sessions

    def delete(self, session_id: str) -> None:
        shutil.rmtree(self._path(session_id), ignore_errors=True)

    def cleanup(self) -> None:
        """Bound session storage by keeping only the newest `max_sessions` sessions."""

        try:
            entries = [(path, path.stat().st_mtime) for path in self._session_paths()]
        except FileNotFoundError:
            return

        if self.max_sessions <= 0 or len(entries) <= self.max_sessions:
            return

        entries.sort(key=lambda t: t[1], reverse=True)
        for path, _ in entries[self.max_sessions :]:
            shutil.rmtree(path, ignore_errors=True)
        log_event(logger, "store.cleanup", removed=len(entries) - self.max_sessions)

    def _session_paths(self) -> list[Path]:
        if not self.root.exists():
            return []
        return [
            path
            for path in self.root.iterdir()
            if path.is_dir() and ((path / META_FILE).exists() or (path / EVENTS_FILE).exists())
        ]

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log_event(logger, "store.read_failed", level=logging.WARNING, path=str(path), error=str(exc))
            return None


class NullSessionStore:
    """Store that keeps nothing; used when persistence is disabled."""

    def save_meta(self, session_id: str, meta: dict[str, Any]) -> None:
        return None

    def load_meta(self, session_id: str) -> dict[str, Any]:
        return {}

    def save_transcript(self, session_id: str, messages: Iterable[dict[str, Any]]) -> None:
        return None

    def load_transcript(self, session_id: str) -> list[dict[str, Any]]:
        return []

    def append_event(self, session_id: str, entry: dict[str, Any]) -> None:
        return None

    def load_event_log(self, session_id: str) -> list[dict[str, Any]]:
        return []

    def list_sessions(self) -> list[dict[str, Any]]:
        return []


__all__ = ["EVENTS_FILE", "FileSessionStore", "META_FILE", "NullSessionStore", "SessionStore", "TRANSCRIPT_FILE"]
