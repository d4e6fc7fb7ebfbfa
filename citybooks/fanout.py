"""Fan-out of one query across a scope of shards."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Sequence

import asyncpg

from .connections import PoolManager, ShardUnreachable
from .models import (
    SHARD_TAG,
    DetailSearchResult,
    ErrorInfo,
    MergedResult,
    Row,
    ShardError,
    ShardResult,
    tag_rows,
)
from .query import QueryExecutionFailed, QuerySpec, ShardTimeout
from .registry import ShardRegistry, is_all_scope
from .shaping import MalformedResult

LOG = logging.getLogger(__name__)

QueryBuilder = Callable[[str], QuerySpec]
RowsPredicate = Callable[[Sequence[Row]], bool]
RowsShaper = Callable[[Sequence[Row]], Any]

# DataError subclasses InterfaceError but reports a bad bind value, not a dead link.
_CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)


def _non_empty(rows: Sequence[Row]) -> bool:
    return bool(rows)


class FanOutExecutor:
    """Runs caller-built queries over one shard or all of them.

    With the all-shards scope a failing shard is logged and contributes no
    rows; with a single-shard scope its failure is raised to the caller.
    """

    def __init__(
        self,
        registry: ShardRegistry,
        pools: PoolManager,
        *,
        timeout: float | None = 15.0,
        tag_key: str = SHARD_TAG,
    ) -> None:
        self._registry = registry
        self._pools = pools
        self._timeout = timeout
        self._tag_key = tag_key

    @property
    def registry(self) -> ShardRegistry:
        return self._registry

    async def run_all(self, scope: str | None, build: QueryBuilder) -> MergedResult:
        """Run ``build(code)`` on every shard in scope and merge the rows.

        Rows are concatenated in registry order regardless of which shard
        finished first.
        """

        codes = self._registry.resolve(scope)
        if not is_all_scope(scope):
            rows = await self.run_one(codes[0], build)
            return MergedResult.from_results([ShardResult(codes[0], rows)])
        results = await asyncio.gather(*(self._collect(code, build) for code in codes))
        return MergedResult.from_results(results)

    async def find_first(
        self,
        scope: str | None,
        build: QueryBuilder,
        predicate: RowsPredicate = _non_empty,
        *,
        shape: RowsShaper | None = None,
    ) -> DetailSearchResult:
        """Probe shards one at a time and stop at the first match.

        A shard matches when ``predicate(rows)`` is true and, if given,
        ``shape(rows)`` succeeds; the shaped value becomes the result's
        entity. Shards after the match are never queried.
        """

        codes = self._registry.resolve(scope)
        single = not is_all_scope(scope)
        for code in codes:
            if single:
                rows = await self.run_one(code, build)
            else:
                try:
                    rows = await self.run_one(code, build)
                except ShardError as exc:
                    LOG.warning("Skipping shard %s during lookup: %s", code, exc)
                    continue
            try:
                if not predicate(rows):
                    continue
                entity = shape(rows) if shape is not None else None
            except MalformedResult as exc:
                LOG.info("Shard %s returned a malformed result: %s", code, exc)
                continue
            return DetailSearchResult(shard_code=code, rows=rows, entity=entity)
        return DetailSearchResult.not_found()

    async def run_one(self, code: str, build: QueryBuilder) -> tuple[Row, ...]:
        """Run a query on one shard, raising any failure."""

        descriptor = self._registry.describe(code)
        try:
            rows = await asyncio.wait_for(self._execute(descriptor.code, build), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise ShardTimeout(
                f"Shard '{descriptor.code}' did not answer within {self._timeout}s",
                shard_code=descriptor.code,
            ) from None
        return tag_rows(rows, descriptor.code, self._tag_key)

    async def _collect(self, code: str, build: QueryBuilder) -> ShardResult:
        try:
            rows = await self.run_one(code, build)
        except ShardError as exc:
            LOG.warning("Shard %s failed, returning no rows: %s", code, exc)
            return ShardResult(code, (), ErrorInfo.from_exception(exc))
        return ShardResult(code, rows)

    async def _execute(self, code: str, build: QueryBuilder) -> list[Row]:
        handle = await self._pools.acquire(code)
        try:
            spec = build(code)
            async with handle.connection() as conn:
                return await spec.run(conn)
        except asyncpg.exceptions.DataError as exc:
            raise QueryExecutionFailed(f"Invalid argument for shard '{code}': {exc}", shard_code=code) from exc
        except _CONNECTION_ERRORS as exc:
            await self._pools.evict(code, handle)
            raise ShardUnreachable(f"Lost connection to shard '{code}': {exc}", shard_code=code) from exc
        except ShardError:
            raise
        except Exception as exc:
            raise QueryExecutionFailed(f"Query failed on shard '{code}': {exc}", shard_code=code) from exc
        finally:
            self._pools.release(handle)


__all__ = [
    "FanOutExecutor",
    "QueryBuilder",
    "RowsPredicate",
    "RowsShaper",
]
