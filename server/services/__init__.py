"""
Service layer infrastructure - the cached upstream gateway.

Provides:
- CacheStore: Durable (database) or bounded in-memory response cache with TTL
- RateLimiter: Serialized upstream calls with spacing and retry/backoff
- RequestDeduplicator: Coalesces concurrent misses for the same key
- MetricsCollector: Counters, structured event log, derived metrics
- CacheDispatcher: Cache-aware entry point combining all of the above
- BGGClient: Upstream HTTP client
"""

from server.services.errors import (
    ServiceError,
    CacheError,
    InvalidResponseError,
    PermissionDeniedError,
    RateLimitError,
    RequestTimeoutError,
    ServiceUnavailableError,
    UpstreamError,
)
from server.services.metrics import (
    CacheCounters,
    CacheMetrics,
    EventType,
    MetricsCollector,
)
from server.services.cache import (
    CACHE_TTL,
    CacheEntry,
    CacheStore,
    DatabaseCacheStore,
    MemoryCacheStore,
    generate_cache_key,
)
from server.services.rate_limiter import (
    RateLimiter,
    RateLimiterConfig,
    RequestState,
)
from server.services.deduplicator import RequestDeduplicator
from server.services.dispatcher import CacheDispatcher
from server.services.client import BGGClient

__all__ = [
    # Errors
    "ServiceError",
    "CacheError",
    "InvalidResponseError",
    "PermissionDeniedError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServiceUnavailableError",
    "UpstreamError",
    # Metrics
    "CacheCounters",
    "CacheMetrics",
    "EventType",
    "MetricsCollector",
    # Cache
    "CACHE_TTL",
    "CacheEntry",
    "CacheStore",
    "DatabaseCacheStore",
    "MemoryCacheStore",
    "generate_cache_key",
    # Rate limiting
    "RateLimiter",
    "RateLimiterConfig",
    "RequestState",
    # Deduplicator
    "RequestDeduplicator",
    # Dispatcher
    "CacheDispatcher",
    # Client
    "BGGClient",
]
