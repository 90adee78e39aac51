"""Tests for the in-memory store backend and the bounded alert log."""

import pytest

from tripwire.ringlog import BoundedLog
from tripwire.store import MemoryStore, RedisStore, StoreError, create_store


# =============================================================================
# MemoryStore
# =============================================================================

class TestMemoryStore:

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        await store.set("k", "v")
        assert await store.get("k") == "v"
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_expiry(self, clock):
        kv = MemoryStore()
        await kv.set("k", "v", ex=10)
        assert await kv.ttl("k") == 10
        clock.now += 11
        assert await kv.get("k") is None
        assert await kv.exists("k") is False
        assert await kv.ttl("k") == -2

    @pytest.mark.asyncio
    async def test_incrby_keeps_expiry(self, clock):
        kv = MemoryStore()
        assert await kv.incrby("n", 3) == 3
        await kv.expire("n", 5)
        assert await kv.incrby("n", 2) == 5
        clock.now += 6
        assert await kv.incrby("n", 1) == 1

    @pytest.mark.asyncio
    async def test_incrby_on_text_raises_store_error(self, store):
        await store.set("k", "not-a-number")
        with pytest.raises(StoreError):
            await store.incrby("k", 1)

    @pytest.mark.asyncio
    async def test_list_push_trim_range(self, store):
        for i in range(5):
            await store.lpush("l", str(i))
        assert await store.lrange("l", 0, -1) == ["4", "3", "2", "1", "0"]
        await store.ltrim("l", 0, 2)
        assert await store.lrange("l", 0, -1) == ["4", "3", "2"]
        assert await store.lrange("l", 0, 0) == ["4"]

    @pytest.mark.asyncio
    async def test_json_helpers(self, store):
        await store.set_json("j", {"a": 1})
        assert await store.get_json("j") == {"a": 1}
        await store.set("bad", "{not json")
        with pytest.raises(StoreError):
            await store.get_json("bad")

    @pytest.mark.asyncio
    async def test_get_on_list_raises(self, store):
        await store.lpush("l", "x")
        with pytest.raises(StoreError):
            await store.get("l")


def test_create_store_picks_backend():
    assert isinstance(create_store(""), MemoryStore)
    assert isinstance(create_store("redis://localhost:6379/0"), RedisStore)


# =============================================================================
# BoundedLog
# =============================================================================

class TestBoundedLog:

    @pytest.mark.asyncio
    async def test_capacity_is_never_exceeded(self, store):
        log = BoundedLog(store, "alerts", capacity=5)
        for i in range(12):
            await log.append({"n": i})
            assert await log.size() <= 5
        assert await log.size() == 5

    @pytest.mark.asyncio
    async def test_newest_first_and_oldest_trimmed(self, store):
        log = BoundedLog(store, "alerts", capacity=3)
        for i in range(5):
            await log.append({"n": i})
        assert [e["n"] for e in await log.entries()] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_entries_limit(self, store):
        log = BoundedLog(store, "alerts", capacity=10)
        for i in range(4):
            await log.append({"n": i})
        assert len(await log.entries(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_raw_entries_survive(self, store):
        await store.lpush("alerts", "not-json")
        log = BoundedLog(store, "alerts", capacity=10)
        assert await log.entries() == ["not-json"]

    def test_capacity_must_be_positive(self, store):
        with pytest.raises(ValueError):
            BoundedLog(store, "alerts", capacity=0)
