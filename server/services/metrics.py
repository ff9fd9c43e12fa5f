"""
MetricsCollector - process-wide cache counters and the cache event log.

Every event is written as a structured loguru line and appended to the
``cache_events`` table when a session factory is attached. Derived metrics
(hit rate, memory usage, last refresh) are computed on demand from the event
log and the stored records, never maintained incrementally.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from server.datastore.repositories import (
    CacheEntryRepository,
    CacheEventRepository,
    GameDetailRepository,
)
from server.services.errors import CacheError


class EventType(str, Enum):
    """Cache/API event types."""

    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CACHE_SET = "cache_set"
    CACHE_ERROR = "cache_error"
    API_ERROR = "api_error"
    API_RETRY = "api_retry"
    API_SUCCESS = "api_success"
    CACHE_PERFORMANCE = "cache_performance"
    CACHE_REFRESH = "cache_refresh"


_WARNING_EVENTS = {EventType.CACHE_ERROR, EventType.API_ERROR, EventType.API_RETRY}


@dataclass
class CacheCounters:
    """Process-lifetime counters. There is no reset besides a restart."""

    cache_hits: int = 0
    cache_misses: int = 0
    rate_limit_errors: int = 0
    total_requests: int = 0

    @property
    def hit_ratio(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.cache_hits / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "rateLimitErrors": self.rate_limit_errors,
            "hitRatio": f"{self.hit_ratio:.2%}",
            "totalRequests": self.total_requests,
        }


class CacheMetrics(BaseModel):
    """Derived metrics returned to administrators."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_cached_games: int = 0
    total_cache_entries: int = 0
    cache_hit_rate: float = 0.0
    memory_usage: int = 0  # KB
    last_refresh_date: str = "Never"


class MetricsCollector:
    """
    Owns the cache counters and writes the cache event log.

    Usage:
        metrics = MetricsCollector(session_factory=get_session_factory())

        await metrics.log_event(EventType.CACHE_HIT, endpoint="search")
        if metrics.record_request():
            metrics.log_summary()
    """

    def __init__(
        self,
        session_factory=None,
        hit_rate_window: int = 100,
        summary_every: int = 100,
        sample_size: int = 100,
    ):
        self._session_factory = session_factory
        self._hit_rate_window = hit_rate_window
        self._summary_every = summary_every
        self._sample_size = sample_size
        self._counters = CacheCounters()

    @property
    def counters(self) -> CacheCounters:
        return self._counters

    async def log_event(self, event_type: EventType, **data: Any) -> None:
        """Count, log and persist a single event. Never raises."""
        event_type = EventType(event_type)
        self._count(event_type, data)

        payload = {
            "type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        }
        line = json.dumps(payload, default=str)
        bound = logger.bind(event=event_type.value)
        if event_type in _WARNING_EVENTS:
            bound.warning(line)
        else:
            bound.info(line)

        if self._session_factory is None:
            return

        try:
            async with self._session_factory() as session:
                repo = CacheEventRepository(session)
                await repo.append(event_type.value, json.loads(line))
                await session.commit()
        except Exception as e:
            logger.warning(f"Failed to persist {event_type.value} event: {e}")

    def _count(self, event_type: EventType, data: dict[str, Any]) -> None:
        if event_type == EventType.CACHE_HIT:
            self._counters.cache_hits += 1
        elif event_type == EventType.CACHE_MISS:
            self._counters.cache_misses += 1
        elif event_type == EventType.API_ERROR and data.get("rate_limited"):
            self._counters.rate_limit_errors += 1

    def record_request(self) -> bool:
        """Count one dispatched request; True when a summary is due."""
        self._counters.total_requests += 1
        return self._counters.total_requests % self._summary_every == 0

    def log_summary(self) -> None:
        payload = {
            "type": "metrics_summary",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **self._counters.to_dict(),
        }
        logger.bind(event="metrics_summary").info(json.dumps(payload))

    async def get_cache_metrics(self) -> CacheMetrics:
        """
        Compute derived metrics from the event log and stored records.

        Raises:
            CacheError: If no database is attached or the scan fails
        """
        if self._session_factory is None:
            raise CacheError("Cache metrics require a database")

        try:
            async with self._session_factory() as session:
                details = GameDetailRepository(session)
                entries = CacheEntryRepository(session)
                events = CacheEventRepository(session)

                total_games = await details.count()
                total_entries = await entries.count()

                recent = await events.recent(
                    [EventType.CACHE_HIT.value, EventType.CACHE_MISS.value],
                    limit=self._hit_rate_window,
                )
                hits = sum(1 for e in recent if e.type == EventType.CACHE_HIT.value)
                hit_rate = (hits / len(recent)) * 100 if recent else 0.0

                total_size = 0
                for detail in await details.sample(self._sample_size):
                    total_size += _serialized_size(detail.game_data)
                for entry in await entries.sample(self._sample_size):
                    total_size += _serialized_size(entry.data)

                last_refresh = await events.latest(EventType.CACHE_REFRESH.value)
        except Exception as e:
            raise CacheError(f"Failed to compute cache metrics: {e}") from e

        return CacheMetrics(
            total_cached_games=total_games,
            total_cache_entries=total_entries,
            cache_hit_rate=round(hit_rate, 2),
            memory_usage=round(total_size / 1024),
            last_refresh_date=(
                last_refresh.timestamp.isoformat() if last_refresh else "Never"
            ),
        )


def _serialized_size(value: Any) -> int:
    return len(json.dumps(value, default=str).encode("utf-8"))
