"""
Bulk cache refresh - repopulates per-category game snapshots.

For each category the job lists games via BGG search, fetches details for
the first ``max_items`` of them one at a time through the bulk rate
limiter, stores every game as a detail record and finally writes the
monthly ranking snapshot. Games read often enough since they were stored
are kept from their stored detail instead of being fetched again. One bad
game or category never aborts the run.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, Field

from server.datasource.bgg.parser import (
    CATEGORIES,
    GameRecord,
    parse_game,
    parse_search_ids,
)
from server.datastore.repositories import GameDetailRepository, GameRankingRepository
from server.services.client import BGGClient
from server.services.errors import PermissionDeniedError
from server.services.metrics import EventType, MetricsCollector
from server.services.rate_limiter import RateLimiter


class Caller(BaseModel):
    """Identity of whoever triggers a privileged operation."""

    user_id: str | None = None
    is_admin: bool = False

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


SYSTEM_CALLER = Caller(user_id="system", is_admin=True)


class CategoryResult(BaseModel):
    category: str
    games: int = 0
    failed_items: int = 0
    preserved: int = 0
    error: str | None = None


class RefreshReport(BaseModel):
    month: str
    categories: list[CategoryResult] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def total_games(self) -> int:
        return sum(c.games for c in self.categories)

    @property
    def failed_categories(self) -> list[str]:
        return [c.category for c in self.categories if c.error]


def current_month(now: datetime | None = None) -> str:
    """YYYY-MM of the given (default: current UTC) time."""
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m")


class BulkRefreshJob:
    """
    Privileged monthly refresh of category snapshots.

    Usage:
        job = BulkRefreshJob(client, bulk_limiter, session_factory, metrics)
        report = await job.run(Caller(user_id="u1", is_admin=True))
    """

    def __init__(
        self,
        client: BGGClient,
        rate_limiter: RateLimiter,
        session_factory,
        metrics: MetricsCollector | None = None,
        categories: tuple[str, ...] = CATEGORIES,
        max_items: int = 50,
        item_delay: float = 1.0,
        preserve_usage: int = 10,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self._session_factory = session_factory
        self._metrics = metrics
        self.categories = categories
        self.max_items = max_items
        self.item_delay = item_delay
        self.preserve_usage = preserve_usage
        self._clock = clock
        self._sleep = sleep
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def check_permission(caller: Caller) -> None:
        """
        Raises:
            PermissionDeniedError: Caller is anonymous or not an admin
        """
        if not caller.authenticated:
            raise PermissionDeniedError(
                "Must be authenticated to initialize cache", authenticated=False
            )
        if not caller.is_admin:
            raise PermissionDeniedError(
                "Must be an admin to initialize cache", authenticated=True
            )

    async def run(self, caller: Caller) -> RefreshReport:
        """Refresh every category for the current month."""
        self.check_permission(caller)

        started = self._clock()
        report = RefreshReport(month=current_month(started), started_at=started)
        logger.info(
            f"Cache refresh started by {caller.user_id} for {report.month} "
            f"({len(self.categories)} categories)"
        )

        self._running = True
        try:
            preserved_ids = await self._high_usage_ids()
            for category in self.categories:
                result = await self._refresh_category(
                    category, report.month, preserved_ids
                )
                report.categories.append(result)
        finally:
            self._running = False

        report.finished_at = self._clock()
        logger.info(
            f"Cache refresh finished: {report.total_games} games, "
            f"failed categories: {report.failed_categories or 'none'}"
        )

        if self._metrics:
            await self._metrics.log_event(
                EventType.CACHE_REFRESH,
                month=report.month,
                triggeredBy=caller.user_id,
                categories={c.category: c.games for c in report.categories},
                failedCategories=report.failed_categories,
                totalGames=report.total_games,
            )
        return report

    async def _refresh_category(
        self, category: str, month: str, preserved_ids: set[str]
    ) -> CategoryResult:
        result = CategoryResult(category=category)
        logger.info(f"Processing category: {category}")

        try:
            listing = await self.rate_limiter.enqueue(
                lambda: self.client.search(category, type="boardgame", exact=0)
            )
            game_ids = parse_search_ids(listing)[: self.max_items]

            games: list[GameRecord] = []
            for game_id in game_ids:
                if game_id in preserved_ids:
                    stored = await self._stored_game(game_id)
                    if stored is not None:
                        games.append(stored)
                        result.preserved += 1
                        continue

                try:
                    games.append(await self._refresh_game(game_id))
                except Exception as e:
                    result.failed_items += 1
                    logger.warning(f"Failed to fetch game {game_id}: {e}")

                await self._sleep(self.item_delay)

            await self._save_snapshot(category, month, games, result.preserved)
            result.games = len(games)
        except Exception as e:
            result.error = str(e)
            logger.error(f"Failed to refresh category {category}: {e}")

        return result

    async def _refresh_game(self, game_id: str) -> GameRecord:
        xml = await self.rate_limiter.enqueue(lambda: self.client.thing(game_id, stats=1))
        game = parse_game(xml, game_id)

        async with self._session_factory() as session:
            await GameDetailRepository(session).save(
                game.id, game.model_dump(mode="json")
            )
            await session.commit()
        return game

    async def _high_usage_ids(self) -> set[str]:
        try:
            async with self._session_factory() as session:
                ids = await GameDetailRepository(session).high_usage_ids(
                    self.preserve_usage
                )
        except Exception as e:
            logger.warning(f"Could not load high usage games, refreshing all: {e}")
            return set()
        logger.info(f"Found {len(ids)} high usage games to preserve")
        return ids

    async def _stored_game(self, game_id: str) -> GameRecord | None:
        """Stored detail of a preserved game, or None to fetch it again."""
        try:
            async with self._session_factory() as session:
                detail = await GameDetailRepository(session).get(game_id)
            return GameRecord.model_validate(detail.game_data) if detail else None
        except Exception as e:
            logger.warning(f"Stored detail for game {game_id} unusable: {e}")
            return None

    async def _save_snapshot(
        self, category: str, month: str, games: list[GameRecord], preserved: int
    ) -> None:
        async with self._session_factory() as session:
            await GameRankingRepository(session).upsert(
                category=category,
                month=month,
                games=[g.model_dump(mode="json") for g in games],
                metadata={
                    "total_games": len(games),
                    "preserved_games": preserved,
                    "refresh_date": self._clock().isoformat(),
                },
            )
            await session.commit()

    async def is_populated(self, month: str | None = None) -> bool:
        """True when every category already has a snapshot for the month."""
        month = month or current_month(self._clock())
        async with self._session_factory() as session:
            present = await GameRankingRepository(session).categories_for_month(month)
        return set(self.categories) <= present
