"""
Repository layer - encapsulates data access.
"""

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from server.datastore.models import (
    ApiCacheDB,
    CacheEventDB,
    GameDetailDB,
    GameRankingDB,
)


def now_ms() -> int:
    """Current time in milliseconds since epoch."""
    return int(datetime.now().timestamp() * 1000)


class CacheEntryRepository:
    """API response cache repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> ApiCacheDB | None:
        """Fetch a cache row by key, regardless of age."""
        result = await self.session.execute(
            select(ApiCacheDB).where(ApiCacheDB.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        key: str,
        data: Any,
        timestamp: int,
        endpoint: str,
        params: dict[str, Any],
    ) -> None:
        """Create the row, or replace every field of an existing one."""
        cached = await self.get(key)

        if cached:
            cached.data = data
            cached.timestamp = timestamp
            cached.endpoint = endpoint
            cached.params = params
        else:
            self.session.add(
                ApiCacheDB(
                    key=key,
                    data=data,
                    timestamp=timestamp,
                    endpoint=endpoint,
                    params=params,
                )
            )
        await self.session.flush()

    async def delete(self, key: str) -> bool:
        cached = await self.get(key)
        if cached is None:
            return False
        await self.session.delete(cached)
        await self.session.flush()
        return True

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(ApiCacheDB))
        return result.scalar_one()

    async def sample(self, limit: int = 100) -> list[ApiCacheDB]:
        """Most recently written rows."""
        result = await self.session.execute(
            select(ApiCacheDB).order_by(ApiCacheDB.timestamp.desc()).limit(limit)
        )
        return list(result.scalars().all())


class CacheEventRepository:
    """Append-only cache event log repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        event_type: str,
        data: dict[str, Any],
        timestamp: datetime | None = None,
    ) -> None:
        self.session.add(
            CacheEventDB(
                type=event_type,
                data=data,
                timestamp=timestamp or datetime.now(timezone.utc),
            )
        )
        await self.session.flush()

    async def recent(self, types: list[str], limit: int = 100) -> list[CacheEventDB]:
        """Most recent events of the given types, newest first."""
        result = await self.session.execute(
            select(CacheEventDB)
            .where(CacheEventDB.type.in_(types))
            .order_by(CacheEventDB.timestamp.desc(), CacheEventDB.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def latest(self, event_type: str) -> CacheEventDB | None:
        events = await self.recent([event_type], limit=1)
        return events[0] if events else None


class GameDetailRepository:
    """Per-game detail record repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, game_id: str) -> GameDetailDB | None:
        result = await self.session.execute(
            select(GameDetailDB).where(GameDetailDB.game_id == game_id)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        game_id: str,
        game_data: dict[str, Any],
        usage_count: int = 0,
        source: str = "bgg-api",
    ) -> None:
        """Store a detail record; an existing record keeps its usage count."""
        detail = await self.get(game_id)
        now = now_ms()

        if detail:
            detail.game_data = game_data
            detail.last_updated = now
            detail.source = source
        else:
            self.session.add(
                GameDetailDB(
                    game_id=game_id,
                    game_data=game_data,
                    last_updated=now,
                    last_accessed=now,
                    usage_count=usage_count,
                    source=source,
                )
            )
        await self.session.flush()

    async def touch(self, game_id: str) -> None:
        """Record one more read of a detail record."""
        detail = await self.get(game_id)
        if detail:
            detail.usage_count = (detail.usage_count or 0) + 1
            detail.last_accessed = now_ms()
            await self.session.flush()

    async def high_usage_ids(self, threshold: int = 10) -> set[str]:
        """Ids of games read at least ``threshold`` times."""
        result = await self.session.execute(
            select(GameDetailDB.game_id).where(GameDetailDB.usage_count >= threshold)
        )
        return set(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(GameDetailDB)
        )
        return result.scalar_one()

    async def sample(self, limit: int = 100) -> list[GameDetailDB]:
        result = await self.session.execute(
            select(GameDetailDB).order_by(GameDetailDB.last_updated.desc()).limit(limit)
        )
        return list(result.scalars().all())


class GameRankingRepository:
    """Monthly category snapshot repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, category: str, month: str) -> GameRankingDB | None:
        result = await self.session.execute(
            select(GameRankingDB).where(
                GameRankingDB.category == category,
                GameRankingDB.month == month,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        category: str,
        month: str,
        games: list[dict[str, Any]],
        metadata: dict[str, Any],
        source: str = "bgg-api",
    ) -> None:
        """Write the snapshot for (category, month), replacing any earlier run."""
        snapshot = await self.get(category, month)

        if snapshot:
            snapshot.games = games
            snapshot.last_updated = now_ms()
            snapshot.source = source
            snapshot.meta = metadata
            logger.debug(f"Replaced snapshot {category}/{month}")
        else:
            self.session.add(
                GameRankingDB(
                    category=category,
                    month=month,
                    games=games,
                    last_updated=now_ms(),
                    source=source,
                    meta=metadata,
                )
            )
            logger.debug(f"Created snapshot {category}/{month}")
        await self.session.flush()

    async def categories_for_month(self, month: str) -> set[str]:
        result = await self.session.execute(
            select(GameRankingDB.category).where(GameRankingDB.month == month)
        )
        return set(result.scalars().all())
