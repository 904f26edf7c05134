from __future__ import annotations

import asyncio
import json

import pytest

from toolstream.config import EngineConfig
from toolstream.engine.blocks import parse_error_blocks, parse_state_blocks
from toolstream.engine.events import (
    ContextCompressionEnd,
    ContextCompressionStart,
    SessionError,
    StreamComplete,
    TextChunk,
    ToolCallCompletion,
    ToolCallRequest,
    Unknown,
    UserInputRequired,
)
from toolstream.engine.session import Session
from toolstream.engine.transcript import Message
from toolstream.errors import SessionStateError
from toolstream.tools.registry import ToolRegistry
from toolstream.tools.results import ToolResult
from tests.utils import FakeTransport, MemoryStore, fatal, make_session, settle, transient


def _blocks(session: Session) -> list[tuple[str, str, str]]:
    return [
        (block["id"], block["state"], block["text"])
        for message in session.snapshot()
        for block in parse_state_blocks(message.content)
    ]


def _blocking_registry(release: asyncio.Event, calls: list[dict] | None = None) -> ToolRegistry:
    registry = ToolRegistry(timeout_s=None)

    async def read_file(args: dict) -> ToolResult:
        if calls is not None:
            calls.append(args)
        await release.wait()
        return ToolResult(content="contents")

    registry.register("read_file", read_file)
    return registry


@pytest.mark.asyncio
async def test_streamed_text_coalesces_into_one_finished_message():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()

    transport.push(TextChunk("assistant", "Hel"), TextChunk("assistant", "lo"), StreamComplete())
    await settle()

    assert session.snapshot() == (Message(role="assistant", content="Hello", delivery_state="done"),)
    assert session.state == "completed"
    await session.close()


@pytest.mark.asyncio
async def test_unresolved_call_is_interrupted_at_stream_end():
    release = asyncio.Event()
    transport = FakeTransport()
    session = make_session(transport, _blocking_registry(release))
    await session.start()

    transport.push(ToolCallRequest("1", "read_file", '{"path": "a.txt"}'))
    await settle()
    assert session.pending_calls["1"].state == "doing"

    transport.push(StreamComplete())
    await settle()

    assert session.tracker.get("1").state == "error"
    assert _blocks(session) == [
        ("1", "doing", "Reading a.txt"),
        ("1", "error", "Reading a.txt (interrupted)"),
    ]

    release.set()
    await settle()
    assert transport.sent == []
    await session.close()


@pytest.mark.asyncio
async def test_tool_result_is_sent_back_as_tool_message():
    transport = FakeTransport()
    registry = ToolRegistry()

    async def read_file(args: dict) -> ToolResult:
        return ToolResult(content=f"contents of {args['path']}")

    registry.register("read_file", read_file)
    session = make_session(transport, registry)
    await session.start()
    await session.send("show me a.txt")

    transport.push(ToolCallRequest("c1", "read_file", '{"path": "a.txt"}'))
    await settle()

    assert session.tracker.get("c1").state == "done"
    [user_message, tool_message] = transport.sent
    assert user_message.source == "user"
    assert tool_message.source == "tool"
    body = json.loads(tool_message.content)
    assert body == {
        "type": "tool",
        "tool_id": "c1",
        "content": "contents of a.txt",
        "resultText": "Read a.txt",
        "is_error": False,
    }

    # The backend's own execution event for a call we already completed is ignored.
    transport.push(ToolCallCompletion("c1", "read_file"), TextChunk("assistant", "Here it is."), StreamComplete())
    await settle()
    assert [state for _, state, _ in _blocks(session)] == ["doing", "done"]
    assert session.snapshot()[-1].content.endswith("Here it is.")
    assert not session.waiting
    await session.close()


@pytest.mark.asyncio
async def test_failed_tool_reports_error_without_ending_session():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()

    transport.push(ToolCallRequest("x", "no_such_tool", "{}"))
    await settle()

    assert session.tracker.get("x").state == "error"
    assert session.state == "streaming"
    body = json.loads(transport.sent[-1].content)
    assert body["is_error"] is True
    assert body["resultText"] == "no_such_tool failed"
    await session.close()


@pytest.mark.asyncio
async def test_backend_completion_resolves_calls_out_of_order():
    release = asyncio.Event()
    transport = FakeTransport()
    session = make_session(transport, _blocking_registry(release))
    await session.start()
    await session.send("read both")

    transport.push(
        ToolCallRequest("1", "read_file", '{"path": "a"}'),
        ToolCallRequest("2", "read_file", '{"path": "b"}'),
        ToolCallCompletion("2", "read_file", is_error=True),
        ToolCallCompletion("1", "read_file"),
    )
    await settle()

    assert [(call_id, state) for call_id, state, _ in _blocks(session)] == [
        ("1", "doing"),
        ("2", "doing"),
        ("2", "error"),
        ("1", "done"),
    ]
    assert session.pending_calls == {}

    release.set()
    await settle()

    assert [message.source for message in transport.sent] == ["user", "tool", "tool"]
    results = {body["tool_id"]: body for body in (json.loads(m.content) for m in transport.sent[1:])}
    assert results["1"]["content"] == "contents"
    assert results["1"]["resultText"] == "Read a"
    assert results["2"]["resultText"] == "Read b"
    assert len(_blocks(session)) == 4
    assert session.state == "streaming"
    assert session.waiting
    await session.close()


@pytest.mark.asyncio
async def test_approval_completion_adds_paragraph_break_only():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()

    transport.push(
        TextChunk("assistant", "May I?"),
        ToolCallCompletion("9", "ask_approval"),
        TextChunk("assistant", "Thanks."),
        StreamComplete(),
    )
    await settle()

    assert _blocks(session) == []
    assert session.snapshot()[-1].content == "May I?\n\nThanks."
    await session.close()


@pytest.mark.asyncio
async def test_duplicate_call_id_is_ignored():
    release = asyncio.Event()
    calls: list[dict] = []
    transport = FakeTransport()
    session = make_session(transport, _blocking_registry(release, calls))
    await session.start()

    transport.push(
        ToolCallRequest("1", "read_file", '{"path": "a"}'),
        ToolCallRequest("1", "read_file", '{"path": "b"}'),
    )
    await settle()

    assert calls == [{"path": "a"}]
    assert _blocks(session) == [("1", "doing", "Reading a")]
    release.set()
    await settle()
    assert _blocks(session)[-1] == ("1", "done", "Reading a")
    await session.close()


@pytest.mark.asyncio
async def test_unknown_events_are_ignored():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()

    transport.push(Unknown("SomethingNew", {"x": 1}), TextChunk("assistant", "still here"))
    await settle()

    assert session.snapshot()[-1].content == "still here"
    await session.close()


@pytest.mark.asyncio
async def test_context_compression_blocks_do_not_change_state():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.send("hi")

    transport.push(ContextCompressionStart("9", "Compressing"), ContextCompressionEnd("9", "Compressed"))
    await settle()

    assert _blocks(session) == [("compress-9", "doing", "Compressing"), ("compress-9", "done", "Compressed")]
    assert session.state == "streaming"
    assert session.waiting
    await session.close()


@pytest.mark.asyncio
async def test_session_error_renders_block_and_completes():
    release = asyncio.Event()
    transport = FakeTransport()
    session = make_session(transport, _blocking_registry(release))
    await session.start()
    await session.send("go")

    transport.push(ToolCallRequest("1", "read_file", "{}"), SessionError("quota exceeded"))
    await settle()

    assert session.state == "completed"
    assert not session.waiting
    last = session.snapshot()[-1]
    assert last.role == "error"
    assert parse_error_blocks(last.content) == [{"message": "quota exceeded"}]
    assert session.tracker.get("1").state == "error"
    await session.close()


@pytest.mark.asyncio
async def test_user_input_required_waits_until_new_input():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.send("flash the board")

    transport.push(TextChunk("assistant", "Which board?"), UserInputRequired())
    await settle()
    assert session.state == "waitingForUser"
    assert not session.waiting
    assert session.snapshot()[-1].delivery_state == "done"

    await session.send("uno")
    assert session.state == "streaming"
    transport.push(TextChunk("assistant", "Flashing"))
    await settle()
    assert session.state == "streaming"
    assert [m.role for m in session.snapshot()] == ["user", "assistant", "user", "assistant"]
    await session.close()


@pytest.mark.asyncio
async def test_text_chunk_resumes_streaming_from_waiting_for_user():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()

    transport.push(UserInputRequired())
    await settle()
    assert session.state == "waitingForUser"
    transport.push(TextChunk("assistant", "actually, never mind"))
    await settle()
    assert session.state == "streaming"
    await session.close()


@pytest.mark.asyncio
async def test_send_retries_transient_failures_then_delivers_once():
    transport = FakeTransport()
    transport.send_failures = [transient(), transient()]
    sleeps: list[float] = []
    session = make_session(transport, sleeps=sleeps)
    await session.start()

    ack = await session.send("hello")

    assert ack.ok
    assert [m.content for m in transport.sent] == ["hello"]
    assert sleeps == [1.0, 1.0]
    assert session.waiting

    transport.push(StreamComplete())
    await settle()
    assert not session.waiting
    await session.close()


@pytest.mark.asyncio
async def test_send_exhaustion_renders_error_and_releases_waiting():
    transport = FakeTransport()
    transport.send_failures = [transient(503) for _ in range(4)]
    sleeps: list[float] = []
    session = make_session(transport, sleeps=sleeps)
    await session.start()

    ack = await session.send("hello")

    assert not ack.ok
    assert transport.sent == []
    assert sleeps == [1.0, 1.0, 1.0]
    assert not session.waiting
    assert session.state == "completed"
    [error] = parse_error_blocks(session.snapshot()[-1].content)
    assert error["status"] == 503
    await session.close()


@pytest.mark.asyncio
async def test_non_transient_send_failure_is_not_retried():
    transport = FakeTransport()
    transport.send_failures = [fatal(400)]
    sleeps: list[float] = []
    session = make_session(transport, sleeps=sleeps)
    await session.start()

    ack = await session.send("hello")

    assert not ack.ok
    assert sleeps == []
    assert session.snapshot()[-1].role == "error"
    await session.close()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_best_effort():
    release = asyncio.Event()
    transport = FakeTransport()
    transport.cancel_error = fatal(500)
    session = make_session(transport, _blocking_registry(release))
    await session.start()
    await session.send("go")
    transport.push(TextChunk("assistant", "Work"), ToolCallRequest("1", "read_file", "{}"))
    await settle()

    await session.stop()
    await session.stop()

    assert session.state == "completed"
    assert not session.waiting
    assert transport.cancelled == ["s-1"]
    assert session.tracker.get("1").state == "error"
    assert all(message.delivery_state == "done" for message in session.snapshot())

    release.set()
    await settle()
    assert [m.source for m in transport.sent] == ["user"]
    await session.close()


@pytest.mark.asyncio
async def test_send_after_completion_restarts_session():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    transport.push(StreamComplete())
    await settle()
    assert session.state == "completed"

    await session.send("one more thing")
    await settle()

    assert [start["session_id"] for start in transport.started] == [None, "s-1"]
    assert transport.stream_opens == 2
    assert session.state == "streaming"
    await session.close()


@pytest.mark.asyncio
async def test_stream_end_without_completion_event_completes():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.send("hi")

    transport.push(TextChunk("assistant", "bye"))
    transport.end_stream()
    await settle()

    assert session.state == "completed"
    assert not session.waiting
    await session.close()


@pytest.mark.asyncio
async def test_transient_stream_failure_reconnects():
    transport = FakeTransport()
    sleeps: list[float] = []
    session = make_session(transport, sleeps=sleeps)
    await session.start()

    transport.break_stream(transient())
    transport.push(TextChunk("assistant", "back"))
    await settle()

    assert transport.stream_opens == 2
    assert sleeps == [1.0]
    assert session.snapshot()[-1].content == "back"
    await session.close()


@pytest.mark.asyncio
async def test_fatal_stream_failure_surfaces_error():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.send("hi")

    transport.break_stream(fatal(404))
    await settle()

    assert session.state == "completed"
    assert not session.waiting
    [error] = parse_error_blocks(session.snapshot()[-1].content)
    assert error["status"] == 404
    await session.close()


@pytest.mark.asyncio
async def test_idle_timeout_stops_waiting_session():
    transport = FakeTransport()
    session = make_session(transport, config=EngineConfig(idle_timeout_s=0.05))
    await session.start()
    await session.send("anyone there?")

    await session.wait_turn(timeout=2)

    assert session.state == "completed"
    assert transport.cancelled == ["s-1"]
    assert "No response from the server" in parse_error_blocks(session.snapshot()[-1].content)[0]["message"]
    await session.close()


@pytest.mark.asyncio
async def test_completion_persists_transcript_and_event_log():
    transport = FakeTransport()
    store = MemoryStore()
    session = make_session(transport, store=store)
    await session.start()
    await session.send("hi")

    transport.push(TextChunk("assistant", "Hel"), TextChunk("assistant", "lo"), StreamComplete())
    await settle()

    assert store.transcripts["s-1"] == [
        {"role": "user", "content": "hi", "state": "done"},
        {"role": "assistant", "content": "Hello", "state": "done"},
    ]
    assert store.events["s-1"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "Hello"},
    ]
    assert not session.dirty
    await session.close()


@pytest.mark.asyncio
async def test_closed_session_rejects_sends():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.close()

    assert session.state == "closed"
    assert transport.closed == ["s-1"]
    with pytest.raises(SessionStateError):
        await session.send("hello?")


@pytest.mark.asyncio
async def test_send_while_turn_running_is_rejected():
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    await session.send("first")
    with pytest.raises(SessionStateError):
        await session.send("second")
    await session.close()


@pytest.mark.asyncio
async def test_title_is_generated_from_first_message():
    transport = FakeTransport()
    transport.title = "Blink an LED"
    store = MemoryStore()
    session = Session(transport, ToolRegistry(), store=store)
    await session.start()
    await session.send("make the LED blink")
    await settle()

    assert session.title == "Blink an LED"
    assert store.meta["s-1"]["title"] == "Blink an LED"
    await session.close()
