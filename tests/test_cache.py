"""Tests for cache keys and the cache stores."""

from datetime import timedelta

import pytest

from conftest import RecordingMetrics
from server.services.cache import (
    CACHE_TTL,
    CacheEntry,
    DatabaseCacheStore,
    MemoryCacheStore,
    generate_cache_key,
)
from server.services.metrics import EventType

NOW = 1_700_000_000_000
TTL_MS = int(CACHE_TTL.total_seconds() * 1000)


def make_entry(key: str, timestamp: int = NOW, data: str = "<items/>") -> CacheEntry:
    return CacheEntry(
        key=key,
        data=data,
        timestamp=timestamp,
        endpoint="search",
        params={"query": "catan"},
    )


class BrokenStore(MemoryCacheStore):
    async def _read(self, key):
        raise OSError("disk on fire")

    async def _write(self, key, entry):
        raise OSError("disk on fire")


class TestCacheKey:
    def test_param_order_does_not_matter(self):
        a = generate_cache_key("search", {"query": "catan", "type": "boardgame"})
        b = generate_cache_key("search", {"type": "boardgame", "query": "catan"})
        assert a == b

    def test_nested_params_are_sorted(self):
        a = generate_cache_key("thing", {"filter": {"b": 1, "a": 2}, "id": "13"})
        b = generate_cache_key("thing", {"id": "13", "filter": {"a": 2, "b": 1}})
        assert a == b

    def test_endpoint_and_values_distinguish_keys(self):
        assert generate_cache_key("search", {"id": "1"}) != generate_cache_key(
            "thing", {"id": "1"}
        )
        assert generate_cache_key("search", {"query": "a"}) != generate_cache_key(
            "search", {"query": "b"}
        )

    def test_key_format(self):
        key = generate_cache_key("search", {"type": "boardgame", "query": "catan"})
        assert key == 'search:{"query":"catan","type":"boardgame"}'


class TestCacheEntry:
    def test_validity_is_strictly_younger_than_ttl(self):
        assert make_entry("k", NOW - TTL_MS + 1).is_valid(now=NOW)
        assert not make_entry("k", NOW - TTL_MS).is_valid(now=NOW)
        assert not make_entry("k", NOW - TTL_MS - 1).is_valid(now=NOW)


class TestMemoryCacheStore:
    @pytest.mark.asyncio
    async def test_ttl_boundary(self):
        store = MemoryCacheStore(clock=lambda: NOW)
        await store.set("fresh", make_entry("fresh", NOW - TTL_MS + 1))
        await store.set("stale", make_entry("stale", NOW - TTL_MS - 1))

        assert await store.get("fresh") is not None
        assert await store.get("stale") is None

    @pytest.mark.asyncio
    async def test_repeated_hits_return_same_data(self):
        store = MemoryCacheStore(clock=lambda: NOW)
        await store.set("k", make_entry("k", data="<items total='1'/>"))

        first = await store.get("k")
        second = await store.get("k")
        assert first.data == second.data == "<items total='1'/>"

    @pytest.mark.asyncio
    async def test_fifo_eviction_when_full(self):
        store = MemoryCacheStore(max_size=2, clock=lambda: NOW)
        await store.set("a", make_entry("a"))
        await store.set("b", make_entry("b"))
        await store.get("a")  # reads do not refresh position
        await store.set("c", make_entry("c"))

        assert "a" not in store
        assert "b" in store and "c" in store
        assert len(store) == 2
        assert store.evictions == 1

    @pytest.mark.asyncio
    async def test_overwrite_does_not_evict(self):
        store = MemoryCacheStore(max_size=2, clock=lambda: NOW)
        await store.set("a", make_entry("a", data="old"))
        await store.set("b", make_entry("b"))
        await store.set("a", make_entry("a", data="new"))

        assert store.evictions == 0
        assert (await store.get("a")).data == "new"

    @pytest.mark.asyncio
    async def test_delete_and_clear(self):
        store = MemoryCacheStore(clock=lambda: NOW)
        await store.set("a", make_entry("a"))
        await store.set("b", make_entry("b"))

        assert await store.delete("a") is True
        assert await store.delete("a") is False
        await store.clear()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_failures_are_soft(self):
        metrics = RecordingMetrics()
        store = BrokenStore(metrics=metrics)

        assert await store.get("k") is None
        assert await store.set("k", make_entry("k")) is False
        assert metrics.types() == [EventType.CACHE_ERROR, EventType.CACHE_ERROR]
        assert metrics.events[0][1]["operation"] == "get"
        assert metrics.events[1][1]["operation"] == "set"

    @pytest.mark.asyncio
    async def test_set_emits_cache_set(self):
        metrics = RecordingMetrics()
        store = MemoryCacheStore(metrics=metrics)
        assert await store.set("k", make_entry("k")) is True
        assert metrics.types() == [EventType.CACHE_SET]


class TestDatabaseCacheStore:
    @pytest.mark.asyncio
    async def test_round_trip_and_upsert(self, session_factory):
        store = DatabaseCacheStore(session_factory, clock=lambda: NOW)
        await store.set("k", make_entry("k", data="first"))
        await store.set("k", make_entry("k", data="second"))

        entry = await store.get("k")
        assert entry.data == "second"
        assert entry.endpoint == "search"
        assert entry.params == {"query": "catan"}

    @pytest.mark.asyncio
    async def test_ttl_boundary(self, session_factory):
        store = DatabaseCacheStore(session_factory, clock=lambda: NOW)
        await store.set("fresh", make_entry("fresh", NOW - TTL_MS + 1))
        await store.set("stale", make_entry("stale", NOW - TTL_MS - 1))

        assert await store.get("fresh") is not None
        assert await store.get("stale") is None

    @pytest.mark.asyncio
    async def test_custom_ttl(self, session_factory):
        store = DatabaseCacheStore(
            session_factory, ttl=timedelta(minutes=1), clock=lambda: NOW
        )
        await store.set("k", make_entry("k", NOW - 61_000))
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_delete(self, session_factory):
        store = DatabaseCacheStore(session_factory, clock=lambda: NOW)
        await store.set("k", make_entry("k"))

        assert await store.delete("k") is True
        assert await store.get("k") is None
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_unavailable_database_is_a_miss(self):
        def broken_factory():
            raise RuntimeError("Database not initialized")

        metrics = RecordingMetrics()
        store = DatabaseCacheStore(broken_factory, metrics=metrics)

        assert await store.get("k") is None
        assert await store.set("k", make_entry("k")) is False
        assert metrics.types() == [EventType.CACHE_ERROR, EventType.CACHE_ERROR]
