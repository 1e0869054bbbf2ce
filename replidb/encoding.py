"""JSON encoding of execution results and query rows."""

from __future__ import annotations

import base64
import json
import math
from dataclasses import dataclass, field, fields
from typing import Any

from replidb.messages import ExecuteResult, Parameter, QueryRows, Values


class TypesColumnsLengthError(ValueError):
    """A rows object has different numbers of types and columns."""

    def __init__(self) -> None:
        super().__init__("types and columns are different lengths")


class _JSONStruct:
    def to_dict(self) -> dict[str, Any]:
        """Fields in declaration order, empty ones omitted."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value:
                out[f.name] = value
        return out


@dataclass
class Result(_JSONStruct):
    last_insert_id: int = 0
    rows_affected: int = 0
    error: str = ""
    time: float = 0.0


@dataclass
class Rows(_JSONStruct):
    columns: list = field(default_factory=list)
    types: list = field(default_factory=list)
    values: list = field(default_factory=list)
    error: str = ""
    time: float = 0.0


@dataclass
class AssociativeRows(_JSONStruct):
    types: dict = field(default_factory=dict)
    rows: list = field(default_factory=list)
    error: str = ""
    time: float = 0.0


def result_from_execute_result(result: ExecuteResult) -> Result:
    return Result(
        last_insert_id=result.last_insert_id,
        rows_affected=result.rows_affected,
        error=result.error,
        time=result.time,
    )


def values_from_query_values(values) -> list:
    """Convert a list of Values into plain lists of Python values."""
    out = []
    for vals in values:
        if vals is None:
            out.append(None)
            continue
        row = []
        for index, param in enumerate(vals.parameters):
            value = param.value if isinstance(param, Parameter) else None
            if value is not None and not isinstance(
                value, (bool, int, float, bytes, bytearray, str)
            ):
                raise TypeError(
                    f"unsupported parameter type at index {index}: {type(value).__name__}"
                )
            row.append(value)
        out.append(row)
    return out


def rows_from_query_rows(rows: QueryRows) -> Rows:
    if len(rows.columns) != len(rows.types):
        raise TypesColumnsLengthError()
    return Rows(
        columns=list(rows.columns),
        types=list(rows.types),
        values=values_from_query_values(rows.values),
        error=rows.error,
        time=rows.time,
    )


def associative_rows_from_query_rows(rows: QueryRows) -> AssociativeRows:
    if len(rows.columns) != len(rows.types):
        raise TypesColumnsLengthError()
    values = values_from_query_values(rows.values)
    mapped = []
    for row in values:
        row = row or []
        mapped.append(
            {c: (row[i] if i < len(row) else None) for i, c in enumerate(rows.columns)}
        )
    return AssociativeRows(
        types=dict(zip(rows.columns, rows.types)),
        rows=mapped,
        error=rows.error,
        time=rows.time,
    )


def _prepare(obj: Any) -> Any:
    if isinstance(obj, _JSONStruct):
        return {k: _prepare(v) for k, v in obj.to_dict().items()}
    if isinstance(obj, dict):
        return {str(k): _prepare(obj[k]) for k in sorted(obj, key=str)}
    if isinstance(obj, (list, tuple)):
        return [_prepare(v) for v in obj]
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"unsupported value: {obj}")
        if obj.is_integer() and abs(obj) < 1e21:
            return int(obj)
    return obj


@dataclass
class Encoder:
    """JSON-encodes results and rows, optionally in associative form."""

    associative: bool = False

    def _convert(self, obj: Any) -> Any:
        to_rows = associative_rows_from_query_rows if self.associative else rows_from_query_rows
        if isinstance(obj, ExecuteResult):
            return result_from_execute_result(obj)
        if isinstance(obj, QueryRows):
            return to_rows(obj)
        if isinstance(obj, list) and obj:
            if all(isinstance(v, ExecuteResult) for v in obj):
                return [result_from_execute_result(v) for v in obj]
            if all(isinstance(v, QueryRows) for v in obj):
                return [to_rows(v) for v in obj]
            if all(isinstance(v, Values) or v is None for v in obj):
                return values_from_query_values(obj)
        return obj

    def json_marshal(self, obj: Any) -> str:
        return json.dumps(
            _prepare(self._convert(obj)), separators=(",", ":"), ensure_ascii=False
        )

    def json_marshal_indent(self, obj: Any, prefix: str, indent: str) -> str:
        text = json.dumps(
            _prepare(self._convert(obj)),
            indent=indent,
            separators=(",", ": "),
            ensure_ascii=False,
        )
        return text.replace("\n", "\n" + prefix) if prefix else text