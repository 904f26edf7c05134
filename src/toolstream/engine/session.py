"""A conversation with the reasoning backend.

A `Session` owns its transcript and tool-call tracker. While connected it runs
two tasks: a stream pump that copies backend events into an `asyncio.Queue`,
and a dispatch loop that consumes the queue one item at a time. Tool handlers
run as independent tasks and post their results back onto the same queue, so
only the loop mutates tracker state for stream and handler events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Iterable, Literal

from toolstream.config import EngineConfig
from toolstream.engine.dispatcher import DeliveryFailed, EventDispatcher, IdleTimeout, LoopItem, StreamClosed, ToolOutcome
from toolstream.engine.events import StreamComplete, ToolCallRequest
from toolstream.engine.replay import HistoryRecorder, replay_event_log
from toolstream.engine.retry import RetryController, RetryPolicy
from toolstream.engine.tracker import ToolCallRecord, ToolCallTracker
from toolstream.engine.transcript import Message, Transcript
from toolstream.errors import DeliveryError, SessionStateError, TransientTransportError, TransportError
from toolstream.log_utils import log_context, log_event, preview
from toolstream.store import NullSessionStore, SessionStore
from toolstream.tools.registry import ToolRegistry
from toolstream.transport.base import Ack, OutboundMessage, Transport

logger = logging.getLogger(__name__)

SessionStatus = Literal["idle", "starting", "streaming", "waitingForUser", "completed", "closed"]
ACTIVE_STATES: tuple[SessionStatus, ...] = ("starting", "streaming", "waitingForUser")


class Session:
    def __init__(
        self,
        transport: Transport,
        registry: ToolRegistry,
        *,
        store: SessionStore | None = None,
        config: EngineConfig | None = None,
        retry: RetryController | None = None,
        session_id: str | None = None,
        title: str = "",
        mode: str | None = None,
        on_update: Callable[["Session"], None] | None = None,
        auto_title: bool = True,
    ) -> None:
        self.config = config or EngineConfig()
        self.transport = transport
        self.registry = registry
        self.store: SessionStore = store or NullSessionStore()
        self.retry = retry or RetryController(RetryPolicy.from_config(self.config))
        self.id = session_id or ""
        self.title = title
        self.mode = mode or self.config.mode
        self.state: SessionStatus = "idle"
        self.dirty = False
        self.transcript = Transcript(on_change=self._mark_dirty)
        self.tracker = ToolCallTracker(self.transcript)
        self.recorder = HistoryRecorder(self.store, self.id)
        self._dispatcher = EventDispatcher(self)
        self._on_update = on_update
        self._auto_title = auto_title
        self._turn_done = asyncio.Event()
        self._turn_done.set()
        self._waiting = False
        self._queue: asyncio.Queue[LoopItem] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def waiting(self) -> bool:
        """True while a turn is running and the user should not send."""

        return self._waiting

    @waiting.setter
    def waiting(self, value: bool) -> None:
        self._waiting = value
        if value:
            self._turn_done.clear()
        else:
            self._turn_done.set()

    @property
    def pending_calls(self) -> dict[str, ToolCallRecord]:
        return self.tracker.pending

    @property
    def connected(self) -> bool:
        return self._loop_task is not None

    def snapshot(self) -> tuple[Message, ...]:
        return self.transcript.snapshot()

    async def wait_turn(self, timeout: float | None = None) -> None:
        """Block until the current turn ends (or ``timeout`` elapses)."""

        await asyncio.wait_for(self._turn_done.wait(), timeout)

    async def start(self) -> str:
        """Register the session with the backend and subscribe to its stream."""

        if self.state == "closed":
            raise SessionStateError("Session is closed")
        await self._connect()
        log_event(logger, "session.started", session_id=self.id, mode=self.mode)
        return self.id

    async def attach(self, session_id: str) -> int:
        """Resume ``session_id``: replay its event log, then go live.

        Returns the number of replayed log entries.
        """

        if self.state == "closed":
            raise SessionStateError("Session is closed")
        await self._teardown_stream()
        self.id = session_id
        self.recorder = HistoryRecorder(self.store, session_id)
        meta = self.store.load_meta(session_id)
        self.title = str(meta.get("title") or self.title)
        self.mode = str(meta.get("mode") or self.mode)
        with log_context(session_id=session_id):
            applied = self.replay(await self._load_event_log(session_id))
            await self._connect()
            log_event(logger, "session.attached", replayed=applied, messages=len(self.transcript))
        return applied

    def replay(self, entries: Iterable[dict[str, Any]]) -> int:
        """Rebuild transcript and tracker state from ``entries``."""

        self.transcript.clear()
        self.tracker = ToolCallTracker(self.transcript)
        applied = replay_event_log(entries, self.transcript, self.tracker)
        self.dirty = False
        self._notify()
        return applied

    async def send(self, text: str) -> Ack:
        """Send a user message, restarting the session first if it completed.

        Delivery failures do not raise: they end the turn with an error block
        in the transcript and release `waiting`.
        """

        if self.state == "closed":
            raise SessionStateError("Session is closed")
        if not text.strip():
            raise SessionStateError("Cannot send an empty message")
        if self.waiting:
            raise SessionStateError("A turn is already in progress")

        with log_context(session_id=self.id or None):
            if self.state in ("idle", "completed") or not self.connected:
                try:
                    await self._connect()
                except DeliveryError as exc:
                    self._dispatcher.fail(str(exc), status=exc.status)
                    self._notify()
                    return Ack(ok=False, data=str(exc))

            first_message = not any(message.role == "user" for message in self.transcript)
            self.transcript.append_block("user", text)
            self.recorder.record_text("user", text)
            self.recorder.flush()
            self.state = "streaming"
            self.waiting = True
            self._notify()
            if first_message and self._auto_title and not self.title:
                self._spawn_title(text)

            session_id = self.id
            message = OutboundMessage(content=text, source="user")
            log_event(logger, "session.send", text=preview(text))
            try:
                ack = await self.retry.run(lambda: self.transport.send(session_id, message), action="send_message")
            except DeliveryError as exc:
                self._dispatcher.fail(str(exc), status=exc.status)
                self._notify()
                return Ack(ok=False, data=str(exc))
            return ack

    async def stop(self) -> None:
        """Cancel the running turn; best-effort on the backend, final locally.

        Idempotent. Handlers still running are left to finish and their
        results are dropped.
        """

        if self.state not in ACTIVE_STATES and not self.waiting:
            return
        session_id = self.id
        self._dispatcher.interrupt_pending()
        self.transcript.finalize_last()
        self.state = "completed"
        self.waiting = False
        self.recorder.flush()
        await self._teardown_stream()
        if session_id:
            try:
                await self.transport.cancel(session_id)
            except TransportError as exc:
                log_event(logger, "session.cancel.failed", level=logging.WARNING, session_id=session_id, error=str(exc))
        self.persist()
        self._notify()
        log_event(logger, "session.stopped", session_id=session_id)

    async def close(self) -> None:
        if self.state == "closed":
            return
        await self.stop()
        await self._teardown_stream()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.id:
            try:
                await self.transport.close_session(self.id)
            except TransportError as exc:
                log_event(logger, "session.close.failed", level=logging.WARNING, session_id=self.id, error=str(exc))
        self.recorder.flush()
        self.persist()
        self.state = "closed"
        self._notify()
        log_event(logger, "session.closed", session_id=self.id)

    def persist(self) -> None:
        """Save the transcript if it changed since the last save."""

        if not self.id or not self.dirty:
            return
        try:
            self.store.save_transcript(self.id, self.transcript.to_dicts())
        except OSError as exc:
            log_event(logger, "session.persist.failed", level=logging.WARNING, session_id=self.id, error=str(exc))
            return
        self._save_meta()
        self.dirty = False

    def spawn_tool(self, request: ToolCallRequest) -> None:
        queue = self._queue
        session_id = self.id

        async def _run() -> None:
            with log_context(session_id=session_id, tool_call_id=request.call_id):
                result = await self.registry.dispatch(request.tool_name, request.raw_arguments)
            if queue is not None:
                await queue.put(ToolOutcome(request.call_id, request.tool_name, request.raw_arguments, result))

        self._track(asyncio.create_task(_run()))

    def spawn_delivery(self, message: OutboundMessage) -> None:
        queue = self._queue
        session_id = self.id

        async def _deliver() -> None:
            try:
                await self.retry.run(lambda: self.transport.send(session_id, message), action="send_tool_result")
            except DeliveryError as exc:
                if queue is not None:
                    await queue.put(DeliveryFailed(exc))

        self._track(asyncio.create_task(_deliver()))

    async def _connect(self) -> None:
        await self._teardown_stream()
        self.state = "starting"
        tools = self.registry.describe()
        requested_id = self.id or None
        try:
            session_id = await self.retry.run(
                lambda: self.transport.start_session(requested_id, mode=self.mode, tools=tools),
                action="start_session",
            )
        except DeliveryError:
            self.state = "idle"
            raise
        if session_id != self.id:
            self.recorder.flush()
            self.id = session_id
            self.recorder = HistoryRecorder(self.store, session_id)
        self._save_meta()
        queue: asyncio.Queue[LoopItem] = asyncio.Queue()
        self._queue = queue
        self._pump_task = asyncio.create_task(self._pump(queue, session_id))
        self._loop_task = asyncio.create_task(self._run_loop(queue))
        self.state = "streaming"

    async def _teardown_stream(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in (self._pump_task, self._loop_task) if task is not None and task is not current]
        self._pump_task = None
        self._loop_task = None
        self._queue = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _pump(self, queue: asyncio.Queue[LoopItem], session_id: str) -> None:
        failures = 0
        while True:
            try:
                async for event in self.transport.open_stream(session_id):
                    failures = 0
                    await queue.put(event)
                    if isinstance(event, StreamComplete):
                        return
                await queue.put(StreamClosed())
                return
            except asyncio.CancelledError:
                raise
            except TransientTransportError as exc:
                failures += 1
                if failures > self.retry.policy.max_retries:
                    await queue.put(StreamClosed(exc))
                    return
                log_event(
                    logger,
                    "stream.reconnect",
                    level=logging.WARNING,
                    session_id=session_id,
                    attempt=failures,
                    status=exc.status,
                )
                await self.retry.backoff()
            except Exception as exc:
                log_event(logger, "stream.failed", level=logging.WARNING, session_id=session_id, error=repr(exc))
                await queue.put(StreamClosed(exc))
                return

    async def _run_loop(self, queue: asyncio.Queue[LoopItem]) -> None:
        me = asyncio.current_task()
        idle_timeout = self.config.idle_timeout_s
        while self._loop_task is me:
            try:
                if idle_timeout:
                    item: LoopItem = await asyncio.wait_for(queue.get(), idle_timeout)
                else:
                    item = await queue.get()
            except asyncio.TimeoutError:
                if not self.waiting:
                    continue
                item = IdleTimeout(idle_timeout or 0.0)
            with log_context(session_id=self.id):
                try:
                    await self._dispatcher.handle(item)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log_event(logger, "dispatch.failed", level=logging.ERROR, exc_info=True, item=type(item).__name__)
            self._notify()

    async def _load_event_log(self, session_id: str) -> list[dict[str, Any]]:
        entries = self.store.load_event_log(session_id)
        if entries:
            return entries
        try:
            entries = await self.transport.get_history(session_id)
        except TransportError as exc:
            log_event(logger, "session.history.unavailable", level=logging.WARNING, error=str(exc))
            return []
        for entry in entries:
            self.recorder.record_entry(entry)
        return entries

    def _spawn_title(self, text: str) -> None:
        async def _generate() -> None:
            try:
                title = await self.transport.generate_title(text)
            except TransportError as exc:
                log_event(logger, "session.title.failed", level=logging.DEBUG, error=str(exc))
                return
            if title and not self.title:
                self.title = title.strip()
                self._save_meta()
                self._notify()

        self._track(asyncio.create_task(_generate()))

    def _save_meta(self) -> None:
        if not self.id:
            return
        try:
            self.store.save_meta(self.id, {"title": self.title, "mode": self.mode})
        except OSError as exc:
            log_event(logger, "session.meta.failed", level=logging.WARNING, error=str(exc))

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _mark_dirty(self) -> None:
        self.dirty = True

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self)


__all__ = ["ACTIVE_STATES", "Session", "SessionStatus"]
