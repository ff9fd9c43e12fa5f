"""
BoardGameGeek catalog source.

Every upstream read goes through the CacheDispatcher, so callers get the
24h response cache, request coalescing and the interactive rate limiter.
Game details additionally live in the ``game_details`` table for 30 days.
"""

from datetime import timedelta
from typing import Any, Callable

from loguru import logger

from server.datasource.bgg.parser import GameRecord, parse_game
from server.datastore.repositories import GameDetailRepository, now_ms
from server.services.client import BGGClient
from server.services.dispatcher import CacheDispatcher

DETAILS_TTL = timedelta(days=30)


class BGGSource:
    """
    Cached access to the BGG search and thing endpoints.

    Usage:
        source = BGGSource(dispatcher, client, session_factory)
        xml = await source.search("catan")
        game = await source.get_game_details("13")
    """

    SERVICE_ID = "bgg"

    def __init__(
        self,
        dispatcher: CacheDispatcher,
        client: BGGClient,
        session_factory=None,
        details_ttl: timedelta = DETAILS_TTL,
        clock: Callable[[], int] = now_ms,
    ):
        self.dispatcher = dispatcher
        self.client = client
        self._session_factory = session_factory
        self._details_ttl_ms = int(details_ttl.total_seconds() * 1000)
        self._clock = clock

    async def search(
        self, query: str, type: str = "boardgame", exact: Any = None
    ) -> str:
        """Raw search XML for a query."""
        params = {"query": query, "type": type, "exact": exact}
        return await self._cached("search", params)

    async def thing(self, id: str, stats: int = 1, versions: int = 0) -> str:
        """Raw thing XML for one or more comma-separated ids."""
        params = {"id": id, "stats": stats, "versions": versions}
        return await self._cached("thing", params)

    async def _cached(self, endpoint: str, params: dict[str, Any]) -> str:
        params = {k: v for k, v in params.items() if v is not None}
        return await self.dispatcher.handle_cached_request(
            endpoint,
            params,
            lambda: self.client.fetch_xml(endpoint, params),
        )

    async def get_game_details(self, game_id: str) -> GameRecord:
        """
        Details of a single game.

        A stored detail record younger than the details TTL is returned
        directly and its usage is counted; otherwise the game is fetched,
        parsed and stored again.
        """
        stored = await self._read_details(game_id)
        if stored is not None:
            return stored

        xml = await self.thing(game_id)
        game = parse_game(xml, game_id)
        await self._save_details(game)
        return game

    async def _read_details(self, game_id: str) -> GameRecord | None:
        if self._session_factory is None:
            return None

        try:
            async with self._session_factory() as session:
                repo = GameDetailRepository(session)
                detail = await repo.get(game_id)
                if detail is None:
                    return None
                if self._clock() - detail.last_updated >= self._details_ttl_ms:
                    logger.debug(f"Game details {game_id} are stale, refetching")
                    return None
                await repo.touch(game_id)
                await session.commit()
                return GameRecord.model_validate(detail.game_data)
        except Exception as e:
            logger.warning(f"Failed to read game details {game_id}: {e}")
            return None

    async def _save_details(self, game: GameRecord) -> None:
        if self._session_factory is None:
            return

        try:
            async with self._session_factory() as session:
                await GameDetailRepository(session).save(
                    game.id, game.model_dump(mode="json")
                )
                await session.commit()
        except Exception as e:
            logger.warning(f"Failed to save game details {game.id}: {e}")
