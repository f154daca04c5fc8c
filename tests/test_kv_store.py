"""Tests for kv_store.py."""
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from kv_store import MemoryKeyValueStore, RedisKeyValueStore


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryKeyValueStore:
    @pytest.mark.asyncio
    async def test_put_get_delete(self):
        store = MemoryKeyValueStore()
        assert await store.put("k", "v")
        assert await store.get("k") == "v"
        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self):
        await MemoryKeyValueStore().delete("missing")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "v", ttl=10)
        clock.now = 9.9
        assert await store.get("k") == "v"
        clock.now = 10
        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "v")
        clock.now = 10 ** 9
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_if_absent(self):
        store = MemoryKeyValueStore()
        assert await store.put("k", "first", if_absent=True)
        assert not await store.put("k", "second", if_absent=True)
        assert await store.get("k") == "first"

    @pytest.mark.asyncio
    async def test_writes_sweep_unread_expired_keys(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)
        for i in range(1000):
            await store.put(f"oauth:state:{i}", "v", ttl=600)
        await store.put("oauth:client:abc123", "client")
        assert len(store._data) == 1001

        clock.now = 10_000
        await store.put("oauth:state:fresh", "v", ttl=600)

        assert sorted(store._data) == ["oauth:client:abc123", "oauth:state:fresh"]
        assert store._expiry == [(10_600, "oauth:state:fresh")]

    @pytest.mark.asyncio
    async def test_sweep_keeps_overwritten_key(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "old", ttl=5)
        await store.put("k", "new", ttl=50)
        clock.now = 10
        await store.put("other", "v")
        assert await store.get("k") == "new"

    @pytest.mark.asyncio
    async def test_if_absent_after_expiry(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.put("k", "old", ttl=5, if_absent=True)
        clock.now = 6
        assert await store.put("k", "new", ttl=5, if_absent=True)
        assert await store.get("k") == "new"


class TestRedisKeyValueStore:
    @pytest.mark.asyncio
    async def test_put_maps_to_set_ex_nx(self):
        redis = AsyncMock()
        redis.set.return_value = True
        store = RedisKeyValueStore(redis)

        assert await store.put("k", "v", ttl=600, if_absent=True)

        redis.set.assert_awaited_once_with("k", "v", ex=600, nx=True)

    @pytest.mark.asyncio
    async def test_put_nx_conflict_is_false(self):
        redis = AsyncMock()
        redis.set.return_value = None
        assert not await RedisKeyValueStore(redis).put("k", "v", if_absent=True)

    @pytest.mark.asyncio
    async def test_get_and_delete(self):
        redis = AsyncMock()
        redis.get.return_value = "v"
        store = RedisKeyValueStore(redis)
        assert await store.get("k") == "v"
        await store.delete("k")
        redis.delete.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_close(self):
        redis = AsyncMock()
        await RedisKeyValueStore(redis).close()
        redis.aclose.assert_awaited_once()
