"""Console rendering of transcripts with rich."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Callable, Sequence

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from toolstream.engine.blocks import ERROR_FENCE, STATE_FENCE, split_blocks
from toolstream.engine.transcript import Message

STATE_STYLES = {"doing": "yellow", "done": "green", "warn": "yellow", "error": "red"}
STATE_ICONS = {"doing": "...", "done": "ok", "warn": "!!", "error": "xx"}
ROLE_STYLES = {"assistant": "", "user": "bold", "tool": "cyan", "error": "red", "system": "dim"}

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()


def _render_and_print(*args: Any, **kwargs: Any) -> None:
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")


def render_content(content: str, role: str = "assistant") -> Text:
    """Render message text, turning state and error blocks into status lines."""

    rendered = Text()
    for kind, body in split_blocks(content):
        if kind == STATE_FENCE and isinstance(body, dict):
            state = str(body.get("state") or "doing")
            line = f"\n[{STATE_ICONS.get(state, state)}] {body.get('text', '')}\n"
            rendered.append(line, style=STATE_STYLES.get(state, ""))
        elif kind == ERROR_FENCE and isinstance(body, dict):
            status = body.get("status")
            suffix = f" (HTTP {status})" if status else ""
            rendered.append(f"\nError{suffix}: {body.get('message', '')}\n", style="red")
        else:
            rendered.append(str(body), style=ROLE_STYLES.get(role, ""))
    return rendered


class TranscriptPrinter:
    """Prints only what is new since the previous `update` call."""

    def __init__(self, printer: Callable[..., None] | None = None, *, echo_user: bool = False) -> None:
        self._print = printer or _render_and_print
        self._echo_user = echo_user
        self._printed: list[int] = []

    def update(self, messages: Sequence[Message]) -> None:
        if len(messages) < len(self._printed):
            self._printed = self._printed[: len(messages)]
        for index, message in enumerate(messages):
            if index >= len(self._printed):
                self._printed.append(0)
            seen = self._printed[index]
            if len(message.content) <= seen:
                continue
            delta = message.content[seen:]
            self._printed[index] = len(message.content)
            if message.role == "user" and not self._echo_user:
                continue
            if message.role == "user":
                self._print(Text(f"> {delta}", style=ROLE_STYLES["user"]))
                continue
            self._print(render_content(delta, message.role), end="")


def print_transcript(messages: Sequence[Message], printer: Callable[..., None] | None = None) -> None:
    TranscriptPrinter(printer, echo_user=True).update(messages)
    (printer or _render_and_print)("")


def print_sessions(sessions: Sequence[dict[str, Any]], printer: Callable[..., None] | None = None) -> None:
    table = Table(title="Sessions", show_lines=False)
    table.add_column("id")
    table.add_column("title")
    table.add_column("mode")
    for item in sessions:
        table.add_row(str(item.get("id", "")), str(item.get("title") or "-"), str(item.get("mode") or "-"))
    (printer or _render_and_print)(table)


def print_notice(message: str, *, style: str = "magenta") -> None:
    _render_and_print(Text(message, style=style))


__all__ = ["TranscriptPrinter", "print_notice", "print_sessions", "print_transcript", "render_content"]
