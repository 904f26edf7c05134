from __future__ import annotations

from toolstream.engine.transcript import Message, Transcript


def test_same_role_chunks_coalesce_into_one_message() -> None:
    transcript = Transcript()
    for chunk in ["Hel", "lo", ", ", "world"]:
        transcript.append("assistant", chunk)

    messages = transcript.snapshot()
    assert len(messages) == 1
    assert messages[0].content == "Hello, world"
    assert messages[0].delivery_state == "in_progress"


def test_new_role_starts_message_and_finalizes_previous() -> None:
    transcript = Transcript()
    transcript.append("assistant", "thinking")
    transcript.append("tool", "result")
    transcript.append("assistant", "done")

    roles = [(m.role, m.content, m.delivery_state) for m in transcript]
    assert roles == [
        ("assistant", "thinking", "done"),
        ("tool", "result", "done"),
        ("assistant", "done", "in_progress"),
    ]


def test_finalize_last_and_snapshot_is_a_copy() -> None:
    transcript = Transcript()
    transcript.append("assistant", "hi")
    transcript.finalize_last()

    snapshot = transcript.snapshot()
    snapshot[0].content = "changed"
    assert transcript.last is not None
    assert transcript.last.content == "hi"
    assert transcript.last.delivery_state == "done"


def test_every_mutation_notifies_owner() -> None:
    calls: list[int] = []
    transcript = Transcript(on_change=lambda: calls.append(1))
    transcript.append("user", "a")
    transcript.append("user", "b")
    transcript.finalize_last()
    transcript.finalize_last()  # already done: no change
    assert len(calls) == 3


def test_append_block_marks_done() -> None:
    transcript = Transcript()
    transcript.append_block("error", "boom")
    assert transcript.last == Message(role="error", content="boom", delivery_state="done")


def test_dict_round_trip_and_unknown_role() -> None:
    transcript = Transcript()
    transcript.load([{"role": "assistant", "content": "x", "state": "done"}, {"role": "robot", "content": "y"}])
    assert [m.role for m in transcript] == ["assistant", "system"]
    assert transcript.to_dicts()[0] == {"role": "assistant", "content": "x", "state": "done"}
