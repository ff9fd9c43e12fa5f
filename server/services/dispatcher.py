"""
CacheDispatcher - the single entry point for cached upstream requests.

Combines:
- CacheStore for durable responses with a 24h TTL
- RequestDeduplicator so concurrent misses share one fetch
- RateLimiter to serialize and retry upstream calls
- MetricsCollector for hit/miss/error/performance events
"""

import asyncio
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from server.datastore.repositories import now_ms
from server.services.cache import CacheEntry, CacheStore, generate_cache_key
from server.services.deduplicator import RequestDeduplicator
from server.services.errors import RateLimitError, RequestTimeoutError
from server.services.metrics import EventType, MetricsCollector
from server.services.rate_limiter import RateLimiter

FetchFn = Callable[[], Awaitable[Any]]


class CacheDispatcher:
    """
    Cache-aware request dispatcher.

    Usage:
        dispatcher = CacheDispatcher(store, limiter, metrics)

        xml = await dispatcher.handle_cached_request(
            "search",
            {"query": "catan", "type": "boardgame"},
            lambda: client.fetch_xml("search", params),
        )
    """

    def __init__(
        self,
        store: CacheStore,
        rate_limiter: RateLimiter,
        metrics: MetricsCollector,
        fetch_timeout: float = 10.0,
        deduplicator: RequestDeduplicator | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.fetch_timeout = fetch_timeout
        self.deduplicator = deduplicator or RequestDeduplicator()
        self._clock = clock

    async def handle_cached_request(
        self,
        endpoint: str,
        params: dict[str, Any],
        fetch_fn: FetchFn,
    ) -> Any:
        """
        Serve a request from the cache, or fetch, store and return it.

        Args:
            endpoint: Upstream endpoint name (part of the cache key)
            params: Request parameters (order-independent in the key)
            fetch_fn: Async function performing the upstream call

        Returns:
            The cached or freshly fetched payload

        Raises:
            RateLimitError: Upstream kept throttling after all retries
            RequestTimeoutError: Every attempt exceeded the fetch timeout
            ServiceError: Any other final upstream failure
        """
        cache_key = generate_cache_key(endpoint, params)
        started = time.perf_counter()

        if self.metrics.record_request():
            self.metrics.log_summary()

        entry = await self._lookup(cache_key, endpoint, params)
        if entry is not None:
            await self.metrics.log_event(
                EventType.CACHE_HIT, endpoint=endpoint, params=params
            )
            await self._log_performance(started, success=True, source="cache")
            return entry.data

        await self.metrics.log_event(
            EventType.CACHE_MISS, endpoint=endpoint, params=params
        )

        try:
            data = await self.deduplicator.dedupe(
                cache_key,
                lambda: self._fetch_and_store(cache_key, endpoint, params, fetch_fn),
            )
        except Exception as e:
            await self.metrics.log_event(
                EventType.API_ERROR,
                endpoint=endpoint,
                params=params,
                error=str(e),
                errorType=type(e).__name__,
                rate_limited=isinstance(e, RateLimitError),
            )
            await self._log_performance(started, success=False, error=str(e))
            raise

        await self._log_performance(started, success=True, source="upstream")
        return data

    async def _lookup(
        self, cache_key: str, endpoint: str, params: dict[str, Any]
    ) -> CacheEntry | None:
        try:
            return await self.store.get(cache_key)
        except Exception as e:
            # Stores fail soft already; anything reaching here is still a miss
            await self.metrics.log_event(
                EventType.CACHE_ERROR,
                operation="get",
                endpoint=endpoint,
                params=params,
                error=str(e),
            )
            return None

    async def _fetch_and_store(
        self,
        cache_key: str,
        endpoint: str,
        params: dict[str, Any],
        fetch_fn: FetchFn,
    ) -> Any:
        # A fetch for this key may have settled since the caller's lookup
        entry = await self._lookup(cache_key, endpoint, params)
        if entry is not None:
            return entry.data

        data = await self.rate_limiter.enqueue(lambda: self._race_timeout(fetch_fn))

        await self.store.set(
            cache_key,
            CacheEntry(
                key=cache_key,
                data=data,
                timestamp=self._clock(),
                endpoint=endpoint,
                params=params,
            ),
        )
        await self.metrics.log_event(EventType.API_SUCCESS, endpoint=endpoint)
        return data

    async def _race_timeout(self, fetch_fn: FetchFn) -> Any:
        """One attempt of fetch_fn against the hard timeout.

        The call is shielded: on timeout we stop waiting, but the upstream
        call keeps running in the background.
        """
        task = asyncio.ensure_future(fetch_fn())
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.fetch_timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_consume_result)
            raise RequestTimeoutError(
                self.rate_limiter.config.name,
                self.fetch_timeout,
                message="BGG API timeout",
            ) from None

    async def _log_performance(self, started: float, success: bool, **data: Any) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        await self.metrics.log_event(
            EventType.CACHE_PERFORMANCE,
            operation="handleCachedRequest",
            duration=duration_ms,
            success=success,
            **data,
        )


def _consume_result(task: asyncio.Future) -> None:
    """Retrieve the outcome of an abandoned fetch so it is not reported as lost."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned upstream call finished with error: {error}")
