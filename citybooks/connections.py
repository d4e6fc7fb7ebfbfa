"""Long-lived asyncpg pools, one per shard."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from .models import ShardDescriptor, ShardError
from .registry import ShardRegistry

LOG = logging.getLogger(__name__)


class ShardUnreachable(ShardError):
    """Raised when a shard's pool cannot be opened or its connection dropped."""


class ConnectionHandle:
    """An open pool bound to exactly one shard.

    Handles are owned by :class:`PoolManager`. Callers borrow a connection
    through :meth:`connection` for the duration of one query and must not
    keep the handle around between requests.
    """

    def __init__(self, shard_code: str, pool: Any) -> None:
        self._shard_code = shard_code
        self._pool = pool

    @property
    def shard_code(self) -> str:
        return self._shard_code

    @property
    def pool(self) -> Any:
        return self._pool

    @property
    def connected(self) -> bool:
        """Whether the underlying pool still accepts work."""

        return not self._pool.is_closing()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Borrow one connection from the pool."""

        async with self._pool.acquire() as conn:
            yield conn

    async def close(self) -> None:
        try:
            await self._pool.close()
        except Exception as exc:
            LOG.warning("Graceful close failed for shard %s, terminating: %s", self._shard_code, exc)
            self._pool.terminate()

    def __repr__(self) -> str:
        state = "open" if self.connected else "closed"
        return f"<ConnectionHandle {self._shard_code} {state}>"


class PoolManager:
    """Maps shard codes to live pools with get-or-create semantics.

    Pools are long-lived: :meth:`release` never closes anything, a handle
    stays registered until :meth:`evict` or :meth:`close`. A handle whose
    pool reports itself closing is discovered on the next :meth:`acquire`
    and replaced.
    """

    def __init__(
        self,
        registry: ShardRegistry,
        *,
        connect_timeout: float = 5.0,
        min_size: int = 1,
        max_size: int = 5,
    ) -> None:
        self._registry = registry
        self._connect_timeout = connect_timeout
        self._min_size = min_size
        self._max_size = max_size
        self._handles: dict[str, ConnectionHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def active_codes(self) -> tuple[str, ...]:
        """Codes with a registered pool."""

        return tuple(self._handles)

    async def acquire(self, code: str) -> ConnectionHandle:
        """Return the shard's pool, opening it on first use."""

        descriptor = self._registry.describe(code)
        async with self._lock_for(descriptor.code):
            handle = self._handles.get(descriptor.code)
            if handle is not None:
                if handle.connected:
                    return handle
                LOG.info("Pool for shard %s is closed; reconnecting", descriptor.code)
                self._handles.pop(descriptor.code, None)
                await handle.close()
            try:
                pool = await asyncpg.create_pool(**self._pool_kwargs(descriptor))
            except Exception as exc:
                self._handles.pop(descriptor.code, None)
                LOG.error(
                    "Failed to connect to database %s for shard %s: %s",
                    descriptor.database,
                    descriptor.code,
                    exc,
                )
                raise ShardUnreachable(
                    f"Failed to connect to shard '{descriptor.code}': {exc}",
                    shard_code=descriptor.code,
                ) from exc
            handle = ConnectionHandle(descriptor.code, pool)
            self._handles[descriptor.code] = handle
            LOG.info("Connected to database %s for shard %s", descriptor.database, descriptor.code)
            return handle

    def release(self, handle: ConnectionHandle) -> None:
        """Return a handle after use; pools stay open for the next request."""

    async def evict(self, code: str, handle: ConnectionHandle | None = None) -> None:
        """Close and forget the pool for one shard.

        With ``handle`` only that pool is discarded: if the shard has since
        been given a newer pool, the registered one is left alone.
        """

        descriptor = self._registry.describe(code)
        async with self._lock_for(descriptor.code):
            current = self._handles.get(descriptor.code)
            if handle is None or current is handle:
                self._handles.pop(descriptor.code, None)
                handle = current
        if handle is not None and handle.connected:
            LOG.info("Evicting pool for shard %s", descriptor.code)
            await handle.close()

    async def close(self) -> None:
        """Close every pool; later acquires open fresh ones."""

        for code, lock in list(self._locks.items()):
            async with lock:
                handle = self._handles.pop(code, None)
            if handle is not None:
                await handle.close()

    async def __aenter__(self) -> PoolManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _lock_for(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = self._locks[code] = asyncio.Lock()
        return lock

    def _pool_kwargs(self, descriptor: ShardDescriptor) -> dict[str, object]:
        kwargs: dict[str, object] = {}
        if descriptor.dsn:
            kwargs["dsn"] = descriptor.dsn
        else:
            kwargs["host"] = descriptor.host or "localhost"
            if descriptor.port is not None:
                kwargs["port"] = descriptor.port
            if descriptor.user:
                kwargs["user"] = descriptor.user
            if descriptor.password:
                kwargs["password"] = descriptor.password
            if descriptor.database:
                kwargs["database"] = descriptor.database
        kwargs["ssl"] = descriptor.tls.ssl_mode()
        kwargs["min_size"] = self._min_size
        kwargs["max_size"] = self._max_size
        kwargs.setdefault("timeout", self._connect_timeout)
        return kwargs


__all__ = [
    "ConnectionHandle",
    "PoolManager",
    "ShardUnreachable",
]
