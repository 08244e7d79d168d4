"""Tokenizer for the agent notation."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agentrt.errors import ParseError

SUPPORTED_VERSIONS = frozenset({1})

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_TOKEN_SPEC = (
    ("COMMENT", r"#[^\n]*"),
    ("NEWLINE", r"\n"),
    ("SKIP", r"[ \t\r]+"),
    ("STRING", r'"(?:[^"\\\n]|\\.)*"'),
    ("DURATION", r"-?\d+(?:\.\d+)?(?:ms|s|m|h)\b"),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"==|!=|<=|>=|=>|->|[<>=:,.;()\[\]{}?]"),
    ("MISMATCH", r"."),
)
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    value: object
    line: int
    column: int

    def is_op(self, value: str) -> bool:
        return self.kind == "OP" and self.value == value

    def is_name(self, value: str | None = None) -> bool:
        return self.kind == "NAME" and (value is None or self.value == value)


def _unescape(raw: str, line: int, column: int) -> str:
    out: list[str] = []
    idx = 0
    while idx < len(raw):
        char = raw[idx]
        if char == "\\":
            idx += 1
            escaped = raw[idx]
            if escaped not in _ESCAPES:
                raise ParseError(f"unknown escape \\{escaped}", line=line, column=column)
            out.append(_ESCAPES[escaped])
        else:
            out.append(char)
        idx += 1
    return "".join(out)


def _parse_duration(raw: str) -> float:
    for unit in ("ms", "s", "m", "h"):
        if raw.endswith(unit):
            return float(raw[: -len(unit)]) * _DURATION_UNITS[unit]
    raise ValueError(raw)


def _parse_number(raw: str) -> int | float:
    return float(raw) if "." in raw else int(raw)


def tokenize(source: str) -> list[Token]:
    """Split source text into tokens, ending with an EOF token.

    Newlines and comments are dropped; the grammar is keyword-delimited.
    """
    tokens: list[Token] = []
    line = 1
    line_start = 0
    for match in _TOKEN_RE.finditer(source):
        kind = match.lastgroup or "MISMATCH"
        raw = match.group()
        column = match.start() - line_start + 1
        if kind == "NEWLINE":
            line += 1
            line_start = match.end()
            continue
        if kind in {"SKIP", "COMMENT"}:
            continue
        if kind == "MISMATCH":
            raise ParseError(f"unexpected character {raw!r}", line=line, column=column)
        value: object = raw
        if kind == "STRING":
            value = _unescape(raw[1:-1], line, column)
        elif kind == "DURATION":
            value = _parse_duration(raw)
        elif kind == "NUMBER":
            value = _parse_number(raw)
        tokens.append(Token(kind, value, line, column))
    tokens.append(Token("EOF", None, line, 1))
    return tokens


def read_version(tokens: list[Token]) -> tuple[int, int]:
    """Consume the leading version marker; return (version, index of next token)."""
    if len(tokens) < 2 or not tokens[0].is_name("version"):
        first = tokens[0]
        raise ParseError("source must start with a version marker", line=first.line, column=first.column)
    marker = tokens[1]
    if marker.kind != "NUMBER" or not isinstance(marker.value, int):
        raise ParseError("version marker must be an integer", line=marker.line, column=marker.column)
    if marker.value not in SUPPORTED_VERSIONS:
        raise ParseError(
            f"unsupported notation version {marker.value}",
            line=marker.line,
            column=marker.column,
        )
    return marker.value, 2
