"""Mapping between message parameters and SQLite values."""

from __future__ import annotations

import datetime as _dt
import random
import re
from typing import Any

from replidb.messages import Parameter

_TEXT_TYPES = ("text", "json", "")
_TEXT_PREFIXES = (
    "varchar",
    "varying character",
    "nchar",
    "native character",
    "nvarchar",
    "clob",
)
_TIMESTAMP_TYPES = ("date", "datetime", "timestamp")
_SUPPORTED = (bool, int, float, bytes, bytearray, str)
_RANDOM_CHARS = "abcdedfghijklmnopqrstABCDEFGHIJKLMNOP"

_TIMESTAMP = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})"
    r"(?:[ T](\d{2}):(\d{2})"
    r"(?::(\d{2})(?:\.(\d+))?(?:([+-])(\d{2}):(\d{2}))?)?)?"
)


def is_text_type(type_name: str) -> bool:
    """Return whether a lower-cased declared type has text affinity."""
    return type_name in _TEXT_TYPES or type_name.startswith(_TEXT_PREFIXES)


def parameters_to_values(parameters) -> list | dict:
    """Convert message parameters into values SQLite can bind.

    Unnamed parameters give a list for positional binding, named ones a
    dict keyed by name. Mixing both kinds is rejected.
    """
    positional: list[Any] = []
    named: dict[str, Any] = {}
    for param in parameters or ():
        value = param.value
        if value is not None and not isinstance(value, _SUPPORTED):
            raise TypeError(f"unsupported type: {type(value).__name__}")
        if isinstance(value, bytearray):
            value = bytes(value)
        if param.name:
            named[param.name] = value
        else:
            positional.append(value)
    if named and positional:
        raise ValueError("cannot mix named and positional parameters")
    return named if named else positional


def _format_rfc3339(
    year: int,
    month: int,
    day: int,
    hour: int,
    minute: int,
    second: int,
    fraction: str,
    offset: str,
) -> str:
    frac = fraction[:9].rstrip("0")
    frac = f".{frac}" if frac else ""
    return (
        f"{year:04d}-{month:02d}-{day:02d}T"
        f"{hour:02d}:{minute:02d}:{second:02d}{frac}{offset}"
    )


def _parse_timestamp(text: str) -> str | None:
    """Return ``text`` as an RFC 3339 timestamp, or None if it is not one."""
    match = _TIMESTAMP.fullmatch(text.removesuffix("Z"))
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, sign, off_h, off_m = match.groups()
    numbers = [int(g) if g else 0 for g in (year, month, day, hour, minute, second)]
    try:
        _dt.datetime(*numbers)
    except ValueError:
        return None
    offset = "Z"
    if sign:
        hours, minutes = int(off_h), int(off_m)
        if hours > 23 or minutes > 59:
            return None
        if hours or minutes:
            offset = f"{sign}{off_h}:{off_m}"
    return _format_rfc3339(*numbers, fraction or "", offset)


def _format_datetime(value: _dt.date) -> str:
    if not isinstance(value, _dt.datetime):
        value = _dt.datetime(value.year, value.month, value.day)
    offset = "Z"
    delta = value.utcoffset()
    if delta:
        total = int(delta.total_seconds()) // 60
        sign = "+" if total >= 0 else "-"
        hours, minutes = divmod(abs(total), 60)
        offset = f"{sign}{hours:02d}:{minutes:02d}"
    return _format_rfc3339(
        value.year,
        value.month,
        value.day,
        value.hour,
        value.minute,
        value.second,
        f"{value.microsecond:06d}",
        offset,
    )


def _normalize(value: Any, type_name: str) -> Parameter | None:
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return Parameter(value=value)
    if isinstance(value, str):
        if type_name in _TIMESTAMP_TYPES:
            stamp = _parse_timestamp(value)
            if stamp is not None:
                return Parameter(value=stamp)
        return Parameter(value=value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if is_text_type(type_name):
            return Parameter(value=raw.decode("utf-8", errors="replace"))
        return Parameter(value=raw)
    if isinstance(value, _dt.date):
        return Parameter(value=_format_datetime(value))
    raise TypeError(f"unhandled column type: {type(value).__name__} {value!r}")


def normalize_row_values(row, types) -> list[Parameter | None]:
    """Convert one result row into parameters; NULL columns become None.

    Blob data in text-affinity columns is returned as text, and text in
    date, datetime and timestamp columns as an RFC 3339 timestamp.
    """
    row = list(row)
    types = list(types)
    if len(row) != len(types):
        raise ValueError(
            f"row has {len(row)} values but {len(types)} column types"
        )
    return [_normalize(value, type_name) for value, type_name in zip(row, types)]


def random_string() -> str:
    """Return a random 20-character name for an in-memory database."""
    return "".join(random.choice(_RANDOM_CHARS) for _ in range(20))