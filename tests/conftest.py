"""Fake asyncpg pools shared by the pool, fan-out and dashboard tests."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

import pytest

from citybooks.models import ShardDescriptor
from citybooks.registry import ShardRegistry

Responder = Callable[[str, tuple[Any, ...]], Any]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeShard:
    """Behaviour of one fake city database."""

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        *,
        fail_connect: bool = False,
        error: BaseException | None = None,
        delay: float = 0.0,
        responder: Responder | None = None,
    ) -> None:
        self.rows = rows or []
        self.fail_connect = fail_connect
        self.error = error
        self.delay = delay
        self.responder = responder
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.connects = 0
        self.pools: list[FakePool] = []

    async def fetch(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        self.calls.append((sql, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            result = self.responder(sql, args)
            if inspect.isawaitable(result):
                result = await result
            return result
        return list(self.rows)


class FakeConnection:
    def __init__(self, shard: FakeShard) -> None:
        self._shard = shard

    async def fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        return await self._shard.fetch(sql, args)


class _Acquire:
    def __init__(self, pool: FakePool) -> None:
        self._pool = pool

    async def __aenter__(self) -> FakeConnection:
        self._pool.borrowed += 1
        return FakeConnection(self._pool.shard)

    async def __aexit__(self, *exc_info: object) -> None:
        self._pool.borrowed -= 1


class FakePool:
    def __init__(self, shard: FakeShard, kwargs: dict[str, Any]) -> None:
        self.shard = shard
        self.kwargs = kwargs
        self.closed = False
        self.borrowed = 0

    def is_closing(self) -> bool:
        return self.closed

    def acquire(self) -> _Acquire:
        return _Acquire(self)

    async def close(self) -> None:
        self.closed = True

    def terminate(self) -> None:
        self.closed = True


class FakeCluster:
    """Stands in for ``asyncpg.create_pool``; shards are keyed by database name."""

    def __init__(self) -> None:
        self.shards: dict[str, FakeShard] = {}

    def add(self, code: str, rows: list[dict[str, Any]] | None = None, **kwargs: Any) -> FakeShard:
        shard = FakeShard(rows, **kwargs)
        self.shards[code] = shard
        return shard

    async def create_pool(self, **kwargs: Any) -> FakePool:
        shard = self.shards[kwargs["database"]]
        shard.connects += 1
        # Yield once so concurrent acquires really interleave.
        await asyncio.sleep(0)
        if shard.fail_connect:
            raise OSError("connection refused")
        pool = FakePool(shard, kwargs)
        shard.pools.append(pool)
        return pool

    def registry(self) -> ShardRegistry:
        return make_registry(*self.shards)


def make_registry(*codes: str) -> ShardRegistry:
    return ShardRegistry(
        ShardDescriptor(code=code, name=f"City {code}", host="db", user="app", password="secret", database=code)
        for code in codes
    )


@pytest.fixture
def cluster(monkeypatch: pytest.MonkeyPatch) -> FakeCluster:
    fake = FakeCluster()
    monkeypatch.setattr("citybooks.connections.asyncpg.create_pool", fake.create_pool)
    return fake
