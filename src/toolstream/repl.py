"""Interactive prompt loop driving a `Session`."""

from __future__ import annotations

import asyncio
import sys

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore
from prompt_toolkit.patch_stdout import patch_stdout  # type: ignore

from toolstream.display import print_notice
from toolstream.engine.session import Session
from toolstream.errors import SessionStateError

CANCEL_TOKEN = "__CANCEL__"
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit"}


def _key_bindings() -> KeyBindings:
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    return kb


async def wait_turn_or_cancel(session: Session, prompt: PromptSession) -> bool:
    """Wait for the running turn; Esc stops it. Returns True if cancelled."""

    turn_task = asyncio.create_task(session.wait_turn())
    key_task = asyncio.create_task(prompt.prompt_async(""))
    done, _pending = await asyncio.wait({turn_task, key_task}, return_when=asyncio.FIRST_COMPLETED)
    cancelled = False
    if key_task in done and key_task.result() == CANCEL_TOKEN and session.waiting:
        await session.stop()
        cancelled = True
    if not key_task.done():
        key_task.cancel()
        await asyncio.gather(key_task, return_exceptions=True)
    if not turn_task.done():
        turn_task.cancel()
        await asyncio.gather(turn_task, return_exceptions=True)
    return cancelled


async def interactive_loop(session: Session) -> None:
    """Read user lines, send them, and wait for each turn to finish."""

    prompt: PromptSession = PromptSession(key_bindings=_key_bindings())
    with patch_stdout():
        while True:
            try:
                title = f"{session.title} " if session.title else ""
                line = await prompt.prompt_async(f"{title}[{session.mode}]> ")
            except EOFError:
                break
            except KeyboardInterrupt:
                print("", file=sys.stderr)
                continue

            if line == CANCEL_TOKEN or not line.strip():
                continue
            command = line.strip()
            if command.lower() in EXIT_COMMANDS:
                break
            if command == "/stop":
                await session.stop()
                continue
            if command == "/status":
                pending = ", ".join(session.pending_calls) or "none"
                print_notice(f"[session {session.id or '-'} state={session.state} pending={pending}]")
                continue

            try:
                ack = await session.send(line)
            except SessionStateError as exc:
                print_notice(f"[{exc}]", style="red")
                continue
            if not ack.ok:
                continue
            while session.waiting:
                if await wait_turn_or_cancel(session, prompt):
                    print_notice("[cancelled]")


__all__ = ["CANCEL_TOKEN", "interactive_loop", "wait_turn_or_cancel"]
