"""Command-line entry point: ``chat``, ``replay`` and ``sessions``."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from dataclasses import replace
from typing import Sequence

from toolstream import __version__
from toolstream.config import SESSION_MODES, EngineConfig, load_config, resolve_state_dir
from toolstream.display import TranscriptPrinter, print_notice, print_sessions, print_transcript
from toolstream.engine.replay import replay_event_log
from toolstream.engine.session import Session
from toolstream.engine.tracker import ToolCallTracker
from toolstream.engine.transcript import Transcript
from toolstream.errors import DeliveryError
from toolstream.log_utils import build_log_config, configure_logging, log_event
from toolstream.paths import ensure_dir
from toolstream.repl import interactive_loop
from toolstream.store import FileSessionStore, NullSessionStore, SessionStore
from toolstream.tools.registry import ToolRegistry
from toolstream.transport.http import HttpTransport

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolstream", description="Streaming tool-invocation session client.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", help="Extra .env file to load before reading TOOLSTREAM_* settings")
    parser.add_argument("--server", help="Backend base URL (overrides TOOLSTREAM_SERVER_URL)")
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Start or resume an interactive session")
    chat.add_argument("--session", help="Resume this session id (replays its history first)")
    chat.add_argument("--mode", choices=SESSION_MODES, help="Session mode")
    chat.add_argument(
        "--tools",
        action="append",
        default=[],
        metavar="MODULE",
        help="Import MODULE and call its register_tools(registry); may repeat",
    )
    chat.add_argument("--no-store", action="store_true", help="Do not persist transcripts or event logs")

    replay_cmd = sub.add_parser("replay", help="Print a stored session rebuilt from its event log")
    replay_cmd.add_argument("session_id")

    sessions = sub.add_parser("sessions", help="List stored sessions")
    sessions.add_argument("--limit", type=int, default=20)
    return parser


def load_tool_modules(registry: ToolRegistry, modules: Sequence[str]) -> None:
    """Import each module and let it register its handlers."""

    for name in modules:
        module = importlib.import_module(name)
        register = getattr(module, "register_tools", None)
        if not callable(register):
            raise SystemExit(f"{name} has no register_tools(registry) function")
        register(registry)
        log_event(logger, "cli.tools.loaded", module=name, tools=len(registry))


def _store(config: EngineConfig, *, disabled: bool = False) -> SessionStore:
    if disabled:
        return NullSessionStore()
    return FileSessionStore(ensure_dir(resolve_state_dir(config) / "sessions"), max_sessions=config.max_sessions)


async def run_chat(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = ToolRegistry(timeout_s=config.tool_timeout_s, output_limit=config.tool_output_limit)
    load_tool_modules(registry, args.tools)
    printer = TranscriptPrinter()
    store = _store(config, disabled=args.no_store)

    async with HttpTransport.from_config(config) as transport:
        session = Session(
            transport,
            registry,
            store=store,
            config=config,
            mode=args.mode or config.mode,
            on_update=lambda s: printer.update(s.snapshot()),
        )
        try:
            if args.session:
                await session.attach(args.session)
            else:
                await session.start()
        except DeliveryError as exc:
            print_notice(f"[could not reach {config.server_url}: {exc}]", style="red")
            return 1
        print_notice(f"[session {session.id}]")
        try:
            await interactive_loop(session)
        finally:
            await session.close()
    return 0


def run_replay(args: argparse.Namespace, config: EngineConfig) -> int:
    store = _store(config)
    entries = store.load_event_log(args.session_id)
    if not entries:
        print_notice(f"[no stored history for {args.session_id}]", style="red")
        return 1
    transcript = Transcript()
    replay_event_log(entries, transcript, ToolCallTracker(transcript))
    title = store.load_meta(args.session_id).get("title")
    if title:
        print_notice(f"# {title}", style="bold")
    print_transcript(transcript.snapshot())
    return 0


def run_sessions(args: argparse.Namespace, config: EngineConfig) -> int:
    sessions = _store(config).list_sessions()
    if not sessions:
        print_notice("[no stored sessions]")
        return 0
    print_sessions(sessions[: max(args.limit, 0) or None])
    return 0


async def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.env_file)
    configure_logging(build_log_config())
    if args.server:
        config = replace(config, server_url=args.server.rstrip("/"))
    log_event(logger, "cli.start", command=args.command, server=config.server_url)

    if args.command == "chat":
        return await run_chat(args, config)
    if args.command == "replay":
        return run_replay(args, config)
    return run_sessions(args, config)


def run() -> int:
    try:
        return asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        return 130


__all__ = ["build_parser", "load_tool_modules", "main", "run"]
