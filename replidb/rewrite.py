"""Rewriting of non-deterministic SQL so that it replicates identically."""

from __future__ import annotations

import random
import re

_LEXER = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<lcomment>--[^\n]*)
  | (?P<bcomment>/\*.*?\*/)
  | (?P<string>'(?:[^']|'')*')
  | (?P<ident>"(?:[^"]|"")*"|`(?:[^`]|``)*`|\[[^\]]*\])
  | (?P<word>[A-Za-z_][A-Za-z0-9_$]*)
  | (?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_INSIGNIFICANT = {"space", "lcomment", "bcomment"}
_OPENERS = {"'", '"', "`", "["}


def _random_value() -> int:
    return random.getrandbits(64) - (1 << 63)


def _rewrite_sql(sql: str) -> str | None:
    """Return ``sql`` with RANDOM() calls replaced, or None if unchanged."""
    lexemes = [
        (m.lastgroup, m.group(), m.start(), m.end())
        for m in _LEXER.finditer(sql)
        if m.lastgroup not in _INSIGNIFICANT
    ]
    order_by = False
    spans: list[tuple[int, int]] = []
    for i, (kind, text, start, _end) in enumerate(lexemes):
        if kind == "other":
            if text in _OPENERS:
                return None  # unterminated literal: leave it for SQLite to report
            if text == ";":
                order_by = False
            continue
        if kind != "word":
            continue
        upper = text.upper()
        following = [t[1] for t in lexemes[i + 1:i + 3]]
        if upper == "ORDER" and following[:1] and following[0].upper() == "BY":
            order_by = True
        elif (
            upper == "RANDOM"
            and not order_by
            and following == ["(", ")"]
            and not (i > 0 and lexemes[i - 1][1] == ".")
        ):
            spans.append((start, lexemes[i + 2][3]))

    if not spans:
        return None
    parts = []
    last = 0
    for start, end in spans:
        parts.append(sql[last:start])
        parts.append(str(_random_value()))
        last = end
    parts.append(sql[last:])
    return "".join(parts)


def rewrite(statements, rewrite_random: bool) -> None:
    """Replace RANDOM() with a literal in each statement, if requested.

    ORDER BY RANDOM() is kept, and statements that cannot be tokenized are
    left untouched so that the database reports its own error.
    """
    if not rewrite_random:
        return
    for statement in statements:
        rewritten = _rewrite_sql(statement.sql)
        if rewritten is not None:
            statement.sql = rewritten