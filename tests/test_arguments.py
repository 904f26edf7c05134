"""Tool argument normalization."""

from __future__ import annotations

import json

from toolstream.tools.arguments import normalize_tool_arguments, repair_path_backslashes


def test_valid_json_is_parsed_unchanged() -> None:
    payload = {"path": "src/main.cpp", "lines": [1, 2], "force": True}
    parsed = normalize_tool_arguments(json.dumps(payload))
    assert parsed.ok
    assert parsed.strategy == "strict"
    assert parsed.value == payload


def test_single_backslashes_in_path_fields_are_repaired() -> None:
    raw = '{"path": "C:\\Users\\me\\project", "content": "x"}'
    parsed = normalize_tool_arguments(raw)
    assert parsed.ok
    assert parsed.strategy == "path_repair"
    assert parsed.value == {"path": "C:\\Users\\me\\project", "content": "x"}


def test_already_doubled_backslashes_are_left_alone() -> None:
    raw = '{"cwd": "D:\\\\work\\\\repo"}'
    assert repair_path_backslashes(raw) == raw
    assert normalize_tool_arguments(raw).value == {"cwd": "D:\\work\\repo"}


def test_non_path_fields_are_not_rewritten() -> None:
    raw = '{"pattern": "a\\d+"}'
    assert repair_path_backslashes(raw) == raw


def test_python_literal_fallback() -> None:
    parsed = normalize_tool_arguments("{'path': 'a.txt', 'recursive': true, 'limit': None}")
    assert parsed.ok
    assert parsed.strategy == "literal"
    assert parsed.value == {"path": "a.txt", "recursive": True, "limit": None}


def test_unparsable_input_is_an_error_value() -> None:
    parsed = normalize_tool_arguments('{"path": ')
    assert not parsed.ok
    assert parsed.value is None
    assert parsed.error is not None
    assert parsed.error.startswith("Failed to parse tool arguments")


def test_empty_and_structured_inputs() -> None:
    assert normalize_tool_arguments(None).value == {}
    assert normalize_tool_arguments("   ").value == {}
    structured = normalize_tool_arguments({"path": "x"})
    assert structured.strategy == "structured"
    assert structured.value == {"path": "x"}
