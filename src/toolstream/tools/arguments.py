"""Normalization of raw tool-call arguments.

Backends usually send arguments as JSON text, but models regularly emit Windows
paths with single backslashes (``"path": "C:\\Users\\me"`` written with one
backslash each), which strict JSON rejects. Parsing tries, in order:

1. strict JSON;
2. strict JSON after doubling lone backslashes inside path-like fields;
3. a permissive Python-literal parse (JSON ``true/false/null`` accepted).

Failure is returned as a value so a bad call never tears down the session.
"""

from __future__ import annotations

import ast
import io
import json
import re
import tokenize
from dataclasses import dataclass
from typing import Any, Callable

PATH_FIELDS = ("path", "cwd", "directory", "folder", "filepath", "dirpath")

_PATH_FIELD_RE = re.compile(r'"(' + "|".join(PATH_FIELDS) + r')"\s*:\s*"([^"]*\\[^"]*)"')
_LONE_BACKSLASH_RE = re.compile(r"(?<!\\)\\(?!\\)")
_JSON_NAMES = {"true": "True", "false": "False", "null": "None"}


@dataclass(frozen=True)
class ParsedArguments:
    value: Any = None
    strategy: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def repair_path_backslashes(raw: str) -> str:
    """Double every single backslash inside known path-field string values."""

    def _fix(match: re.Match[str]) -> str:
        fixed = _LONE_BACKSLASH_RE.sub(lambda _: "\\\\", match.group(2))
        whole, offset = match.group(0), match.start()
        start, end = match.span(2)
        return whole[: start - offset] + fixed + whole[end - offset :]

    return _PATH_FIELD_RE.sub(_fix, raw)


def _strict(raw: str) -> Any:
    return json.loads(raw)


def _path_repair(raw: str) -> Any:
    repaired = repair_path_backslashes(raw)
    if repaired == raw:
        raise ValueError("no path fields to repair")
    return json.loads(repaired)


def _literal(raw: str) -> Any:
    tokens = []
    for tok in tokenize.generate_tokens(io.StringIO(raw.strip()).readline):
        if tok.type == tokenize.NAME and tok.string in _JSON_NAMES:
            # Replacements have the same length, so token positions stay valid.
            tok = tok._replace(string=_JSON_NAMES[tok.string])
        tokens.append(tok)
    return ast.literal_eval(tokenize.untokenize(tokens).strip())


STRATEGIES: tuple[tuple[str, Callable[[str], Any]], ...] = (
    ("strict", _strict),
    ("path_repair", _path_repair),
    ("literal", _literal),
)


def normalize_tool_arguments(raw: Any) -> ParsedArguments:
    """Turn raw tool arguments into a structured value, never raising."""

    if raw is None:
        return ParsedArguments(value={}, strategy="empty")
    if not isinstance(raw, (str, bytes)):
        return ParsedArguments(value=raw, strategy="structured")
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text.strip():
        return ParsedArguments(value={}, strategy="empty")

    first_error: str | None = None
    for name, strategy in STRATEGIES:
        try:
            return ParsedArguments(value=strategy(text), strategy=name)
        except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError, tokenize.TokenError) as exc:
            if first_error is None:
                first_error = str(exc)
    return ParsedArguments(error=f"Failed to parse tool arguments: {first_error}")


__all__ = ["PATH_FIELDS", "ParsedArguments", "STRATEGIES", "normalize_tool_arguments", "repair_path_backslashes"]
