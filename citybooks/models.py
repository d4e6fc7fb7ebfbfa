"""Shared dataclasses used across registry, pool and fan-out modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Sequence

Row = Mapping[str, Any]

SHARD_TAG = "shard_code"


class ShardError(RuntimeError):
    """Base class for failures tied to one shard."""

    def __init__(self, message: str, *, shard_code: str | None = None) -> None:
        super().__init__(message)
        self.shard_code = shard_code


@dataclass(frozen=True, slots=True)
class TlsOptions:
    """Transport security flags for a shard connection."""

    encrypt: bool = True
    trust_server_certificate: bool = True

    def ssl_mode(self) -> str:
        """Translate the flags into an asyncpg ``ssl`` mode."""

        if not self.encrypt:
            return "disable"
        if self.trust_server_certificate:
            return "require"
        return "verify-full"


@dataclass(frozen=True, slots=True)
class ShardDescriptor:
    """Runtime representation of one configured city database."""

    code: str
    name: str
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    database: str | None = None
    dsn: str | None = field(default=None, repr=False)
    tls: TlsOptions = field(default_factory=TlsOptions)


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Summary of a shard failure kept alongside its (empty) result."""

    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        return cls(kind=type(exc).__name__, message=str(exc))


@dataclass(frozen=True, slots=True)
class ShardResult:
    """Rows produced by one shard, or the error that replaced them."""

    shard_code: str
    rows: tuple[Row, ...] = ()
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class MergedResult:
    """Concatenation of shard results in registry order."""

    rows: tuple[Row, ...]
    shard_results: tuple[ShardResult, ...]

    @classmethod
    def from_results(cls, results: Sequence[ShardResult]) -> MergedResult:
        rows: list[Row] = []
        for result in results:
            rows.extend(result.rows)
        return cls(rows=tuple(rows), shard_results=tuple(results))

    @property
    def failed_shards(self) -> tuple[str, ...]:
        """Codes of the shards that contributed an error instead of rows."""

        return tuple(result.shard_code for result in self.shard_results if not result.ok)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True, slots=True)
class DetailSearchResult:
    """Outcome of a first-match search across shards."""

    shard_code: str | None = None
    rows: tuple[Row, ...] = ()
    entity: Any = None

    @property
    def found(self) -> bool:
        return self.shard_code is not None

    @classmethod
    def not_found(cls) -> DetailSearchResult:
        return cls()


def tag_rows(rows: Sequence[Row], shard_code: str, key: str = SHARD_TAG) -> tuple[Row, ...]:
    """Copy rows into new dicts carrying their shard of origin."""

    return tuple({**row, key: shard_code} for row in rows)


__all__ = [
    "DetailSearchResult",
    "ErrorInfo",
    "MergedResult",
    "Row",
    "SHARD_TAG",
    "ShardDescriptor",
    "ShardError",
    "ShardResult",
    "TlsOptions",
    "tag_rows",
]
