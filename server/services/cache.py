"""
Cache stores for upstream API responses.

Features:
- Deterministic cache keys: endpoint + canonical (sorted) params
- 24h TTL with lazy expiry, checked at read time
- Fail-soft reads and best-effort writes: store outages degrade to misses
- DatabaseCacheStore (durable, SQLAlchemy) and MemoryCacheStore (bounded)
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from loguru import logger

from server.datastore.repositories import CacheEntryRepository, now_ms
from server.services.metrics import EventType, MetricsCollector

CACHE_TTL = timedelta(hours=24)


def canonical_serialize(params: dict[str, Any] | None) -> str:
    """Serialize params so that key insertion order never matters."""
    return json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)


def generate_cache_key(endpoint: str, params: dict[str, Any] | None = None) -> str:
    """Generate a cache key from endpoint and params."""
    return f"{endpoint}:{canonical_serialize(params)}"


@dataclass
class CacheEntry:
    """A cached upstream response; ``timestamp`` is ms since epoch."""

    key: str
    data: Any
    timestamp: int
    endpoint: str
    params: dict[str, Any] = field(default_factory=dict)

    def age_ms(self, now: int | None = None) -> int:
        return (now if now is not None else now_ms()) - self.timestamp

    def is_valid(self, ttl: timedelta = CACHE_TTL, now: int | None = None) -> bool:
        """Check if entry is younger than its TTL."""
        return self.age_ms(now) < int(ttl.total_seconds() * 1000)


class CacheStore(ABC):
    """
    Key/value persistence for CacheEntry records.

    Subclasses implement ``_read``/``_write``; the public methods turn every
    failure into a ``cache_error`` event instead of raising.
    """

    def __init__(
        self,
        ttl: timedelta = CACHE_TTL,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], int] = now_ms,
        debug: bool = False,
    ):
        self.ttl = ttl
        self._clock = clock
        self._metrics = metrics
        self._debug = debug

    async def get(self, key: str) -> CacheEntry | None:
        """
        Get a valid entry from the store.

        Returns None when absent, expired or unreadable.
        """
        try:
            entry = await self._read(key)
        except Exception as e:
            await self._log_error("get", key, e)
            return None

        if entry is None:
            self._log(f"MISS: {key[:50]}...")
            return None

        if not entry.is_valid(self.ttl, now=self._clock()):
            self._log(f"EXPIRED: {key[:50]}...")
            return None

        self._log(f"HIT: {key[:50]}...")
        return entry

    async def set(self, key: str, entry: CacheEntry) -> bool:
        """Write an entry. Returns False (after logging) if the write failed."""
        try:
            await self._write(key, entry)
        except Exception as e:
            await self._log_error("set", key, e)
            return False

        self._log(f"SET: {key[:50]}...")
        if self._metrics:
            await self._metrics.log_event(
                EventType.CACHE_SET,
                cacheKey=key,
                endpoint=entry.endpoint,
                timestamp=entry.timestamp,
            )
        return True

    async def delete(self, key: str) -> bool:
        """Remove an entry. Returns False if it was absent or the delete failed."""
        try:
            removed = await self._delete(key)
        except Exception as e:
            await self._log_error("delete", key, e)
            return False

        if removed:
            self._log(f"DELETE: {key[:50]}...")
        return removed

    @abstractmethod
    async def _read(self, key: str) -> CacheEntry | None: ...

    @abstractmethod
    async def _write(self, key: str, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def _delete(self, key: str) -> bool: ...

    async def _log_error(self, operation: str, key: str, error: Exception) -> None:
        if self._metrics:
            await self._metrics.log_event(
                EventType.CACHE_ERROR,
                operation=operation,
                cacheKey=key,
                error=str(error),
            )
        else:
            logger.warning(f"Cache {operation} failed for {key[:50]}: {error}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[{type(self).__name__}] {message}")


class DatabaseCacheStore(CacheStore):
    """
    Durable store backed by the ``api_cache`` table.

    Usage:
        store = DatabaseCacheStore(get_session_factory(), metrics=metrics)
        entry = await store.get(key)
    """

    def __init__(self, session_factory, **kwargs: Any):
        super().__init__(**kwargs)
        self._session_factory = session_factory

    async def _read(self, key: str) -> CacheEntry | None:
        async with self._session_factory() as session:
            row = await CacheEntryRepository(session).get(key)
            if row is None:
                return None
            return CacheEntry(
                key=row.key,
                data=row.data,
                timestamp=row.timestamp,
                endpoint=row.endpoint,
                params=row.params or {},
            )

    async def _write(self, key: str, entry: CacheEntry) -> None:
        async with self._session_factory() as session:
            await CacheEntryRepository(session).upsert(
                key=key,
                data=entry.data,
                timestamp=entry.timestamp,
                endpoint=entry.endpoint,
                params=entry.params,
            )
            await session.commit()

    async def _delete(self, key: str) -> bool:
        async with self._session_factory() as session:
            removed = await CacheEntryRepository(session).delete(key)
            await session.commit()
            return removed


class MemoryCacheStore(CacheStore):
    """
    Bounded in-process store.

    When full, inserting a new key evicts the oldest *inserted* key
    (FIFO, not LRU). Overwriting an existing key keeps its position.
    """

    def __init__(self, max_size: int = 100, **kwargs: Any):
        super().__init__(**kwargs)
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self.evictions = 0

    async def _read(self, key: str) -> CacheEntry | None:
        async with self._lock:
            return self._memory.get(key)

    async def _write(self, key: str, entry: CacheEntry) -> None:
        async with self._lock:
            if key not in self._memory and len(self._memory) >= self._max_size:
                oldest_key, _ = self._memory.popitem(last=False)
                self.evictions += 1
                self._log(f"EVICT: {oldest_key[:50]}...")
            self._memory[key] = entry

    async def _delete(self, key: str) -> bool:
        async with self._lock:
            return self._memory.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._log(f"CLEAR: {count} entries removed")

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return key in self._memory
