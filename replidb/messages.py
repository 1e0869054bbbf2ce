"""Protocol messages exchanged between nodes, with a compact binary wire codec."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Any, ClassVar

_VARINT = 0
_FIXED64 = 1
_LEN = 2
_FIXED32 = 5
_MASK64 = (1 << 64) - 1


class DecodeError(ValueError):
    """Raised when bytes cannot be decoded into a message."""


class CommandType(enum.IntEnum):
    """Kind of sub command carried by a Command."""

    UNKNOWN = 0
    QUERY = 1
    EXECUTE = 2
    NOOP = 3
    LOAD = 4


def _varint(value: int) -> bytes:
    value &= _MASK64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(number: int, wire_type: int) -> bytes:
    return _varint((number << 3) | wire_type)


def _zigzag(value: int) -> int:
    return ((value << 1) ^ (value >> 63)) & _MASK64


def _unzigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def _signed(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
        shift += 7
        if shift >= 70:
            raise DecodeError("varint too long")


def _iter_fields(data: bytes):
    pos = 0
    size = len(data)
    while pos < size:
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if number == 0:
            raise DecodeError("invalid field number 0")
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
        elif wire_type in (_FIXED64, _FIXED32):
            width = 8 if wire_type == _FIXED64 else 4
            if pos + width > size:
                raise DecodeError("truncated fixed-width field")
            value = data[pos:pos + width]
            pos += width
        elif wire_type == _LEN:
            length, pos = _read_varint(data, pos)
            if pos + length > size:
                raise DecodeError("truncated length-delimited field")
            value = data[pos:pos + length]
            pos += length
        else:
            raise DecodeError(f"unsupported wire type {wire_type}")
        yield number, wire_type, value


def _encode_value(number: int, kind: Any, value: Any) -> bytes:
    if kind == "int64":
        return _key(number, _VARINT) + _varint(int(value))
    if kind == "bool":
        return _key(number, _VARINT) + _varint(1 if value else 0)
    if kind == "sint64":
        return _key(number, _VARINT) + _varint(_zigzag(int(value)))
    if kind == "double":
        return _key(number, _FIXED64) + struct.pack("<d", float(value))
    if kind in ("string", "bytes"):
        raw = value.encode("utf-8") if kind == "string" else bytes(value)
        return _key(number, _LEN) + _varint(len(raw)) + raw
    if isinstance(kind, type) and issubclass(kind, enum.IntEnum):
        return _key(number, _VARINT) + _varint(int(value))
    raw = value._encode() if value is not None else b""
    return _key(number, _LEN) + _varint(len(raw)) + raw


def _expect(wire_type: int, expected: int) -> None:
    if wire_type != expected:
        raise DecodeError(f"wire type {wire_type} does not match expected {expected}")


def _decode_value(kind: Any, wire_type: int, raw: Any) -> Any:
    if kind == "int64":
        _expect(wire_type, _VARINT)
        return _signed(raw)
    if kind == "bool":
        _expect(wire_type, _VARINT)
        return bool(raw)
    if kind == "sint64":
        _expect(wire_type, _VARINT)
        return _unzigzag(raw)
    if kind == "double":
        _expect(wire_type, _FIXED64)
        return struct.unpack("<d", raw)[0]
    if kind == "string":
        _expect(wire_type, _LEN)
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid UTF-8 in string field: {exc}") from exc
    if kind == "bytes":
        _expect(wire_type, _LEN)
        return bytes(raw)
    if isinstance(kind, type) and issubclass(kind, enum.IntEnum):
        _expect(wire_type, _VARINT)
        value = _signed(raw)
        try:
            return kind(value)
        except ValueError:
            return value
    _expect(wire_type, _LEN)
    return kind._decode(raw)


class _Message:
    _FIELDS: ClassVar[tuple] = ()

    def _encode(self) -> bytes:
        out = bytearray()
        for number, attr, kind, repeated in self._FIELDS:
            value = getattr(self, attr)
            if repeated:
                for item in value:
                    out += _encode_value(number, kind, item)
            elif value is not None and (isinstance(value, _Message) or value):
                out += _encode_value(number, kind, value)
        return bytes(out)

    @classmethod
    def _decode(cls, data: bytes):
        specs = {number: (attr, kind, rep) for number, attr, kind, rep in cls._FIELDS}
        kwargs: dict[str, Any] = {}
        for number, wire_type, raw in _iter_fields(bytes(data)):
            spec = specs.get(number)
            if spec is None:
                continue
            attr, kind, repeated = spec
            value = _decode_value(kind, wire_type, raw)
            if repeated:
                kwargs.setdefault(attr, []).append(value)
            else:
                kwargs[attr] = value
        return cls(**kwargs)


@dataclass
class Parameter(_Message):
    """A typed value: int, float, bool, bytes, str or None, optionally named."""

    value: Any = None
    name: str = ""

    def _encode(self) -> bytes:
        out = bytearray()
        value = self.value
        if value is None:
            pass
        elif isinstance(value, bool):
            out += _encode_value(3, "bool", value)
        elif isinstance(value, int):
            out += _encode_value(1, "sint64", value)
        elif isinstance(value, float):
            out += _encode_value(2, "double", value)
        elif isinstance(value, (bytes, bytearray)):
            out += _encode_value(4, "bytes", value)
        elif isinstance(value, str):
            out += _encode_value(5, "string", value)
        else:
            raise TypeError(f"unsupported type: {type(value).__name__}")
        if self.name:
            out += _encode_value(6, "string", self.name)
        return bytes(out)

    @classmethod
    def _decode(cls, data: bytes) -> "Parameter":
        kinds = {1: "sint64", 2: "double", 3: "bool", 4: "bytes", 5: "string"}
        result = cls()
        for number, wire_type, raw in _iter_fields(bytes(data)):
            if number in kinds:
                result.value = _decode_value(kinds[number], wire_type, raw)
            elif number == 6:
                result.name = _decode_value("string", wire_type, raw)
        return result


@dataclass
class Statement(_Message):
    sql: str = ""
    parameters: list = field(default_factory=list)

    _FIELDS = ((1, "sql", "string", False), (2, "parameters", Parameter, True))


@dataclass
class Request(_Message):
    transaction: bool = False
    statements: list = field(default_factory=list)

    _FIELDS = ((1, "transaction", "bool", False), (2, "statements", Statement, True))


@dataclass
class QueryRequest(_Message):
    request: Request | None = None
    timings: bool = False
    level: int = 0
    freshness: int = 0

    _FIELDS = (
        (1, "request", Request, False),
        (2, "timings", "bool", False),
        (3, "level", "int64", False),
        (4, "freshness", "int64", False),
    )


@dataclass
class ExecuteRequest(_Message):
    request: Request | None = None
    timings: bool = False

    _FIELDS = ((1, "request", Request, False), (2, "timings", "bool", False))


@dataclass
class LoadRequest(_Message):
    data: bytes = b""

    _FIELDS = ((1, "data", "bytes", False),)


@dataclass
class Noop(_Message):
    id: str = ""

    _FIELDS = ((1, "id", "string", False),)


@dataclass
class Command(_Message):
    type: CommandType = CommandType.UNKNOWN
    sub_command: bytes = b""
    compressed: bool = False

    _FIELDS = (
        (1, "type", CommandType, False),
        (2, "sub_command", "bytes", False),
        (3, "compressed", "bool", False),
    )


@dataclass
class ExecuteResult(_Message):
    last_insert_id: int = 0
    rows_affected: int = 0
    error: str = ""
    time: float = 0.0

    _FIELDS = (
        (1, "last_insert_id", "int64", False),
        (2, "rows_affected", "int64", False),
        (3, "error", "string", False),
        (4, "time", "double", False),
    )


@dataclass
class Values(_Message):
    parameters: list = field(default_factory=list)

    _FIELDS = ((1, "parameters", Parameter, True),)


@dataclass
class QueryRows(_Message):
    columns: list = field(default_factory=list)
    types: list = field(default_factory=list)
    values: list = field(default_factory=list)
    error: str = ""
    time: float = 0.0

    _FIELDS = (
        (1, "columns", "string", True),
        (2, "types", "string", True),
        (3, "values", Values, True),
        (4, "error", "string", False),
        (5, "time", "double", False),
    )


def encode_message(message) -> bytes:
    """Encode a message to its binary wire form."""
    return message._encode()


def decode_message(data, cls):
    """Decode bytes into an instance of message class ``cls``."""
    return cls._decode(data)