"""
Database models.

Uses SQLAlchemy 2.0+ declarative mapping.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""

    pass


class ApiCacheDB(Base):
    """Cached upstream API responses, one row per cache key."""

    __tablename__ = "api_cache"

    key: Mapped[str] = mapped_column(String(1000), primary_key=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    params: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<ApiCache(key={self.key[:50]}, timestamp={self.timestamp})>"


class CacheEventDB(Base):
    """Append-only log of cache/API events."""

    __tablename__ = "cache_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (Index("idx_event_type_timestamp", "type", "timestamp"),)

    def __repr__(self) -> str:
        return f"<CacheEvent(type={self.type}, timestamp={self.timestamp})>"


class GameDetailDB(Base):
    """Per-game detail records, keyed by BGG id."""

    __tablename__ = "game_details"

    game_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    game_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_accessed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    source: Mapped[str] = mapped_column(String(50), default="bgg-api", nullable=False)

    def __repr__(self) -> str:
        return f"<GameDetail(game_id={self.game_id}, usage={self.usage_count})>"


class GameRankingDB(Base):
    """Monthly snapshot of a category's games."""

    __tablename__ = "game_rankings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    games: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), default="bgg-api", nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint("category", "month", name="uq_ranking_category_month"),
    )

    def __repr__(self) -> str:
        return f"<GameRanking(category={self.category}, month={self.month})>"
