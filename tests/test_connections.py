"""Tests for the per-shard pool manager."""

from __future__ import annotations

import asyncio

import pytest

from citybooks.connections import PoolManager, ShardUnreachable
from citybooks.registry import UnknownShard


@pytest.mark.anyio
async def test_acquire_reuses_the_same_pool(cluster) -> None:
    shard = cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    first = await manager.acquire("QUI")
    second = await manager.acquire("qui")

    assert first is second
    assert first.pool is second.pool
    assert shard.connects == 1


@pytest.mark.anyio
async def test_acquire_passes_connection_settings(cluster) -> None:
    shard = cluster.add("GYE")
    manager = PoolManager(cluster.registry(), connect_timeout=2.0, min_size=1, max_size=3)

    await manager.acquire("GYE")

    kwargs = shard.pools[0].kwargs
    assert kwargs["host"] == "db"
    assert kwargs["user"] == "app"
    assert kwargs["password"] == "secret"
    assert kwargs["database"] == "GYE"
    assert kwargs["ssl"] == "require"
    assert kwargs["timeout"] == 2.0
    assert kwargs["max_size"] == 3


@pytest.mark.anyio
async def test_release_keeps_pool_open_for_reuse(cluster) -> None:
    cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    handle = await manager.acquire("QUI")
    manager.release(handle)
    again = await manager.acquire("QUI")

    assert again is handle
    assert again.connected is True
    async with again.connection() as conn:
        assert await conn.fetch("SELECT 1") == []


@pytest.mark.anyio
async def test_closed_pool_is_replaced_on_next_acquire(cluster) -> None:
    shard = cluster.add("CUE")
    manager = PoolManager(cluster.registry())

    stale = await manager.acquire("CUE")
    shard.pools[0].closed = True
    fresh = await manager.acquire("CUE")

    assert fresh is not stale
    assert fresh.connected is True
    assert shard.connects == 2


@pytest.mark.anyio
async def test_close_invalidates_handles_and_later_acquire_reconnects(cluster) -> None:
    shard = cluster.add("MAN")
    manager = PoolManager(cluster.registry())

    before = await manager.acquire("MAN")
    await manager.close()

    assert before.connected is False
    assert manager.active_codes == ()
    after = await manager.acquire("MAN")
    assert after is not before
    assert after.connected is True
    assert shard.connects == 2


@pytest.mark.anyio
async def test_failed_connect_leaves_no_entry_and_retries_cleanly(cluster) -> None:
    shard = cluster.add("QUI", fail_connect=True)
    manager = PoolManager(cluster.registry())

    with pytest.raises(ShardUnreachable) as excinfo:
        await manager.acquire("QUI")

    assert excinfo.value.shard_code == "QUI"
    assert isinstance(excinfo.value.__cause__, OSError)
    assert manager.active_codes == ()

    shard.fail_connect = False
    handle = await manager.acquire("QUI")
    assert handle.connected is True
    assert shard.connects == 2


@pytest.mark.anyio
async def test_concurrent_acquire_opens_one_pool(cluster) -> None:
    shard = cluster.add("GYE")
    manager = PoolManager(cluster.registry())

    handles = await asyncio.gather(*(manager.acquire("GYE") for _ in range(5)))

    assert shard.connects == 1
    assert all(handle is handles[0] for handle in handles)


@pytest.mark.anyio
async def test_unknown_shard_never_connects(cluster) -> None:
    shard = cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    with pytest.raises(UnknownShard):
        await manager.acquire("LIM")

    assert shard.connects == 0


@pytest.mark.anyio
async def test_evict_closes_pool(cluster) -> None:
    shard = cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    handle = await manager.acquire("QUI")
    await manager.evict("QUI")

    assert handle.connected is False
    assert shard.pools[0].closed is True
    assert manager.active_codes == ()


@pytest.mark.anyio
async def test_manager_as_context_manager_closes_pools(cluster) -> None:
    shard = cluster.add("QUI")

    async with PoolManager(cluster.registry()) as manager:
        await manager.acquire("QUI")

    assert shard.pools[0].closed is True


@pytest.mark.anyio
async def test_evict_with_stale_handle_keeps_current_pool(cluster) -> None:
    shard = cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    old = await manager.acquire("QUI")
    await manager.evict("QUI", old)
    current = await manager.acquire("QUI")
    await manager.evict("QUI", old)

    assert current is not old
    assert current.connected is True
    assert manager.active_codes == ("QUI",)
    assert [pool.closed for pool in shard.pools] == [True, False]


@pytest.mark.anyio
async def test_close_waits_for_pool_being_opened(cluster) -> None:
    shard = cluster.add("QUI")
    manager = PoolManager(cluster.registry())

    pending = asyncio.create_task(manager.acquire("QUI"))
    await asyncio.sleep(0)
    await manager.close()
    handle = await pending

    assert handle.connected is False
    assert shard.pools[0].closed is True
    assert manager.active_codes == ()
