"""Tests for the cache-aware request dispatcher."""

import asyncio

import pytest

from conftest import RecordingMetrics, fast_config
from server.datastore.repositories import now_ms
from server.services.cache import (
    CacheEntry,
    DatabaseCacheStore,
    MemoryCacheStore,
    generate_cache_key,
)
from server.services.dispatcher import CacheDispatcher
from server.services.errors import RateLimitError, RequestTimeoutError
from server.services.metrics import EventType
from server.services.rate_limiter import RateLimiter

PARAMS = {"query": "catan", "type": "boardgame"}


class CountingFetch:
    def __init__(self, payload="<items total='1'/>", delay: float = 0.0, error=None):
        self.payload = payload
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload


class ExplodingStore(MemoryCacheStore):
    async def get(self, key):
        raise RuntimeError("store offline")


class LaggingStore(MemoryCacheStore):
    """First lookup misses even though an entry is already stored."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lookups = 0

    async def get(self, key):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return await super().get(key)


@pytest.fixture
def dispatcher(limiter, metrics):
    return CacheDispatcher(MemoryCacheStore(metrics=metrics), limiter, metrics)


class TestHandleCachedRequest:
    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, dispatcher, metrics):
        fetch = CountingFetch()

        first = await dispatcher.handle_cached_request("search", PARAMS, fetch)
        second = await dispatcher.handle_cached_request(
            "search", {"type": "boardgame", "query": "catan"}, fetch
        )

        assert fetch.calls == 1
        assert first == second == "<items total='1'/>"
        assert metrics.counters.cache_misses == 1
        assert metrics.counters.cache_hits == 1
        assert metrics.types() == [
            EventType.CACHE_MISS,
            EventType.CACHE_SET,
            EventType.API_SUCCESS,
            EventType.CACHE_PERFORMANCE,
            EventType.CACHE_HIT,
            EventType.CACHE_PERFORMANCE,
        ]

    @pytest.mark.asyncio
    async def test_performance_events_name_the_source(self, dispatcher, metrics):
        fetch = CountingFetch()
        await dispatcher.handle_cached_request("search", PARAMS, fetch)
        await dispatcher.handle_cached_request("search", PARAMS, fetch)

        sources = [
            data["source"]
            for event_type, data in metrics.events
            if event_type == EventType.CACHE_PERFORMANCE
        ]
        assert sources == ["upstream", "cache"]

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, dispatcher, metrics):
        fetch = CountingFetch(delay=0.05)

        results = await asyncio.gather(
            *(dispatcher.handle_cached_request("search", PARAMS, fetch) for _ in range(3))
        )

        assert fetch.calls == 1
        assert len(set(results)) == 1
        assert metrics.counters.cache_misses == 3
        stats = dispatcher.deduplicator.get_stats()
        assert (stats.started, stats.joined) == (1, 2)
        assert dispatcher.deduplicator.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_entry_stored_after_lookup_is_not_fetched_again(self, limiter, metrics):
        store = LaggingStore()
        key = generate_cache_key("search", PARAMS)
        await store.set(
            key,
            CacheEntry(
                key=key,
                data="<items total='2'/>",
                timestamp=now_ms(),
                endpoint="search",
                params=PARAMS,
            ),
        )
        dispatcher = CacheDispatcher(store, limiter, metrics)
        fetch = CountingFetch()

        data = await dispatcher.handle_cached_request("search", PARAMS, fetch)

        assert data == "<items total='2'/>"
        assert fetch.calls == 0
        assert store.lookups == 2
        assert EventType.API_SUCCESS not in metrics.types()

    @pytest.mark.asyncio
    async def test_rate_limit_error_propagates(self, dispatcher, metrics, limiter):
        fetch = CountingFetch(error=RateLimitError("bgg"))

        with pytest.raises(RateLimitError):
            await dispatcher.handle_cached_request("search", PARAMS, fetch)

        assert fetch.calls == limiter.config.max_retries + 1
        assert metrics.counters.rate_limit_errors == 1
        assert EventType.CACHE_SET not in metrics.types()
        assert metrics.events[-1][1]["success"] is False

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, dispatcher):
        failing = CountingFetch(error=RateLimitError("bgg"))
        with pytest.raises(RateLimitError):
            await dispatcher.handle_cached_request("search", PARAMS, failing)

        ok = CountingFetch()
        assert await dispatcher.handle_cached_request("search", PARAMS, ok) == ok.payload
        assert ok.calls == 1

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out_but_keeps_running(self, metrics):
        limiter = RateLimiter(fast_config(max_retries=0))
        dispatcher = CacheDispatcher(
            MemoryCacheStore(), limiter, metrics, fetch_timeout=0.05
        )
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.2)
            finished.set()
            return "<items/>"

        with pytest.raises(RequestTimeoutError, match="BGG API timeout"):
            await dispatcher.handle_cached_request("search", PARAMS, slow)

        await asyncio.wait_for(finished.wait(), timeout=1)
        await limiter.close()

    @pytest.mark.asyncio
    async def test_store_errors_degrade_to_miss(self, limiter, metrics):
        dispatcher = CacheDispatcher(ExplodingStore(), limiter, metrics)
        fetch = CountingFetch()

        assert await dispatcher.handle_cached_request("search", PARAMS, fetch) == fetch.payload
        assert metrics.types()[0] == EventType.CACHE_ERROR
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_summary_every_n_requests(self, limiter):
        metrics = RecordingMetrics(summary_every=3)
        dispatcher = CacheDispatcher(MemoryCacheStore(), limiter, metrics)
        fetch = CountingFetch()

        for _ in range(7):
            await dispatcher.handle_cached_request("search", PARAMS, fetch)

        assert metrics.summaries == 2
        assert metrics.counters.total_requests == 7
        assert metrics.counters.to_dict()["hitRatio"] == "85.71%"

    @pytest.mark.asyncio
    async def test_durable_store_survives_new_dispatcher(self, session_factory, limiter):
        fetch = CountingFetch()
        first = CacheDispatcher(
            DatabaseCacheStore(session_factory), limiter, RecordingMetrics()
        )
        await first.handle_cached_request("thing", {"id": "13"}, fetch)

        second = CacheDispatcher(
            DatabaseCacheStore(session_factory), limiter, RecordingMetrics()
        )
        assert await second.handle_cached_request("thing", {"id": "13"}, fetch) == fetch.payload
        assert fetch.calls == 1
