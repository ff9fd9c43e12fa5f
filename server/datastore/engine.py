"""
Database engine configuration and lifecycle.

Uses the SQLAlchemy async engine (SQLite via aiosqlite by default).
"""

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from server.datastore.models import Base
from server.settings import global_settings

# Global engine instance
engine = None
AsyncSessionLocal = None


async def init_db(database_url: str | None = None) -> None:
    """Initialize the engine, the session factory and the schema."""
    global engine, AsyncSessionLocal

    url = database_url or global_settings.database_url
    # SQLite: let the refresh job and request-path writes wait on each other
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    engine = create_async_engine(
        url,
        echo=global_settings.database_echo,
        connect_args=connect_args,
    )

    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.debug(f"Database ready: {url}")


async def close_db() -> None:
    """Dispose of the engine."""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory():
    """Session factory for components that open their own sessions."""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
