"""Query descriptions that run against one shard connection."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol

from .models import Row, ShardError

_IDENTIFIER = r"[A-Za-z_][A-Za-z0-9_]*"
_FUNCTION_NAME = re.compile(rf"^{_IDENTIFIER}(\.{_IDENTIFIER})?$")
_PARAM_NAME = re.compile(rf"^{_IDENTIFIER}$")
_SQL_TYPE = re.compile(r"^[A-Za-z_][A-Za-z0-9_ ]*(\(\d+(,\s*\d+)?\))?(\[\])?$")

DEFAULT_TAG_COLUMN = "tipo"


class QueryExecutionFailed(ShardError):
    """Raised when a shard accepted the connection but the query failed."""


class ShardTimeout(QueryExecutionFailed):
    """Raised when a shard did not answer within the execution timeout."""


class QuerySpec(Protocol):
    """Work that can run on a borrowed connection."""

    async def run(self, conn: Any) -> list[Row]: ...


@dataclass(frozen=True, slots=True)
class Param:
    """A bind value with an explicit SQL type, rendered as ``$n::type``."""

    value: object
    sql_type: str | None = None

    def __post_init__(self) -> None:
        if self.sql_type is not None and not _SQL_TYPE.match(self.sql_type):
            raise ValueError(f"Invalid SQL type '{self.sql_type}'")


@dataclass(frozen=True, slots=True)
class TextQuery:
    """Parameterized SQL using ``$1``-style placeholders."""

    sql: str
    args: tuple[object, ...] = ()

    def __post_init__(self) -> None:
        if not self.sql.strip():
            raise ValueError("Provide SQL to execute.")

    async def run(self, conn: Any) -> list[Row]:
        records = await conn.fetch(self.sql, *self.args)
        return _records_to_rows(records)


@dataclass(frozen=True, slots=True)
class ProcedureCall:
    """Call of a set-returning function with positional and named arguments."""

    name: str
    args: tuple[object, ...] = ()
    kwargs: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not _FUNCTION_NAME.match(self.name):
            raise ValueError(f"Invalid function name '{self.name}'")
        for key in self.kwargs:
            if not _PARAM_NAME.match(key):
                raise ValueError(f"Invalid parameter name '{key}'")

    def render(self) -> tuple[str, tuple[object, ...]]:
        """Return the SQL text and bind values for this call."""

        placeholders: list[str] = []
        values: list[object] = []
        for arg in self.args:
            placeholders.append(_placeholder(arg, len(values) + 1))
            values.append(_bind_value(arg))
        for key, arg in self.kwargs.items():
            placeholders.append(f"{key} => {_placeholder(arg, len(values) + 1)}")
            values.append(_bind_value(arg))
        return f"SELECT * FROM {self.name}({', '.join(placeholders)})", tuple(values)

    async def run(self, conn: Any) -> list[Row]:
        sql, values = self.render()
        records = await conn.fetch(sql, *values)
        return _records_to_rows(records)


@dataclass(frozen=True, slots=True)
class QueryBatch:
    """Several queries on one connection, returned as one tagged row set.

    Each part's rows get ``tag_column`` set to the part's kind so the
    combined output can be demultiplexed like a tagged function result.
    """

    parts: tuple[tuple[str, QuerySpec], ...]
    tag_column: str = DEFAULT_TAG_COLUMN

    def __post_init__(self) -> None:
        if not self.parts:
            raise ValueError("A query batch needs at least one part.")

    async def run(self, conn: Any) -> list[Row]:
        rows: list[Row] = []
        for kind, spec in self.parts:
            for row in await spec.run(conn):
                rows.append({**row, self.tag_column: kind})
        return rows


def _placeholder(arg: object, index: int) -> str:
    if isinstance(arg, Param) and arg.sql_type:
        return f"${index}::{arg.sql_type}"
    return f"${index}"


def _bind_value(arg: object) -> object:
    if isinstance(arg, Param):
        return arg.value
    return arg


def _records_to_rows(records: Iterable[Any]) -> list[Row]:
    rows: list[Row] = []
    for record in records:
        if hasattr(record, "keys"):
            rows.append({str(key): record[key] for key in record.keys()})
        else:
            rows.append({str(idx): value for idx, value in enumerate(record)})
    return rows


def batch(*parts: tuple[str, QuerySpec], tag_column: str = DEFAULT_TAG_COLUMN) -> QueryBatch:
    """Shorthand for building a :class:`QueryBatch`."""

    return QueryBatch(parts=tuple(parts), tag_column=tag_column)


__all__ = [
    "DEFAULT_TAG_COLUMN",
    "Param",
    "ProcedureCall",
    "QueryBatch",
    "QueryExecutionFailed",
    "QuerySpec",
    "ShardTimeout",
    "TextQuery",
    "batch",
]
