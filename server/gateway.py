"""
Component wiring for the catalog gateway.

One Gateway holds everything a process needs: the upstream client, both
rate limiter profiles, the metrics collector, the durable cache store,
the dispatcher, the catalog source and the bulk refresh job.
"""

from dataclasses import dataclass
from datetime import timedelta

from loguru import logger

from server.datasource.bgg.refresh import BulkRefreshJob
from server.datasource.bgg.source import BGGSource
from server.services.cache import DatabaseCacheStore
from server.services.client import BGGClient
from server.services.deduplicator import RequestDeduplicator
from server.services.dispatcher import CacheDispatcher
from server.services.metrics import MetricsCollector
from server.services.rate_limiter import RateLimiter, RateLimiterConfig
from server.settings import Settings, global_settings


@dataclass
class Gateway:
    settings: Settings
    client: BGGClient
    metrics: MetricsCollector
    store: DatabaseCacheStore
    interactive_limiter: RateLimiter
    bulk_limiter: RateLimiter
    dispatcher: CacheDispatcher
    source: BGGSource
    refresh_job: BulkRefreshJob

    async def close(self) -> None:
        await self.interactive_limiter.close()
        await self.bulk_limiter.close()
        await self.client.close()
        logger.info("Gateway closed")


def build_gateway(
    session_factory,
    settings: Settings = global_settings,
    client: BGGClient | None = None,
) -> Gateway:
    """Wire every component from settings around one session factory."""
    client = client or BGGClient(
        base_url=settings.bgg_base_url, timeout=settings.bgg_request_timeout
    )
    metrics = MetricsCollector(
        session_factory=session_factory,
        hit_rate_window=settings.cache_hit_rate_window,
        summary_every=settings.cache_summary_every,
    )
    store = DatabaseCacheStore(
        session_factory,
        ttl=timedelta(hours=settings.cache_ttl_hours),
        metrics=metrics,
        debug=settings.debug,
    )
    interactive_limiter = RateLimiter(
        RateLimiterConfig.interactive(settings), metrics=metrics, debug=settings.debug
    )
    bulk_limiter = RateLimiter(
        RateLimiterConfig.bulk(settings), metrics=metrics, debug=settings.debug
    )
    dispatcher = CacheDispatcher(
        store,
        interactive_limiter,
        metrics,
        fetch_timeout=settings.cache_fetch_timeout,
        deduplicator=RequestDeduplicator(debug=settings.debug),
    )
    source = BGGSource(
        dispatcher,
        client,
        session_factory=session_factory,
        details_ttl=timedelta(days=settings.game_details_ttl_days),
    )
    refresh_job = BulkRefreshJob(
        client,
        bulk_limiter,
        session_factory,
        metrics=metrics,
        max_items=settings.refresh_max_items,
        item_delay=settings.refresh_item_delay,
        preserve_usage=settings.refresh_preserve_usage,
    )

    return Gateway(
        settings=settings,
        client=client,
        metrics=metrics,
        store=store,
        interactive_limiter=interactive_limiter,
        bulk_limiter=bulk_limiter,
        dispatcher=dispatcher,
        source=source,
        refresh_job=refresh_job,
    )
