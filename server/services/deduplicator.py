"""
RequestDeduplicator - Coalesces concurrent cache misses for the same key.

When several callers miss on the same cache key at once, only the first
starts an upstream fetch; the rest join it and share its result or its
error. Nothing is remembered once the fetch settles: the cache store is
what serves later callers.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    started: int = 0  # Fetches actually started
    joined: int = 0  # Callers that rode along on an in-flight fetch
    in_flight: dict[str, int] = field(default_factory=dict)  # key -> waiting callers

    @property
    def dedup_rate(self) -> float:
        total = self.started + self.joined
        return self.joined / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "inFlight": len(self.in_flight),
            "dedupRate": f"{self.dedup_rate:.2%}",
        }


class RequestDeduplicator:
    """
    One in-flight fetch per cache key.

    Usage:
        dedup = RequestDeduplicator()
        data = await dedup.dedupe(cache_key, lambda: fetch_and_store(...))
    """

    def __init__(self, debug: bool = False):
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            task = self._tasks.get(key)
            if task is None:
                task = asyncio.create_task(self._run(key, request_fn))
                self._tasks[key] = task
                self._stats.started += 1
                self._stats.in_flight[key] = 1
                self._log(f"START {key[:50]}")
            else:
                self._stats.joined += 1
                self._stats.in_flight[key] += 1
                self._log(f"JOIN {key[:50]} ({self._stats.in_flight[key]} waiting)")

        # A cancelled waiter must not cancel the fetch the others share
        return await asyncio.shield(task)

    async def _run(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            async with self._lock:
                self._tasks.pop(key, None)
                waiters = self._stats.in_flight.pop(key, 0)
                self._log(f"SETTLED {key[:50]} for {waiters} caller(s)")

    def get_in_flight_count(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> DeduplicatorStats:
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
