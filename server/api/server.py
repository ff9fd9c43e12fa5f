"""FastAPI server exposing the cached catalog and the admin cache routes."""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from server.api.auth import AdminAuth
from server.api.throttle import InboundThrottle
from server.datasource.bgg.refresh import Caller, current_month
from server.datastore.engine import close_db, get_session_factory, init_db
from server.exceptions import (
    TooManyRequestsError,
    ValidationError,
    error_body,
    http_exception_handler,
    validation_exception_handler,
)
from server.gateway import Gateway, build_gateway
from server.services.client import BGGClient
from server.services.errors import RateLimitError
from server.settings import Settings, global_settings

CACHE_CONTROL = "public, max-age=86400"


class GatewayServer:
    """HTTP server in front of the cached BGG gateway."""

    def __init__(
        self,
        gateway: Gateway | None = None,
        settings: Settings = global_settings,
        client: BGGClient | None = None,
    ):
        self.gateway = gateway
        self.settings = settings
        self._client = client
        self._owns_gateway = gateway is None
        self._refresh_task: asyncio.Task | None = None
        self._initialize_lock = asyncio.Lock()

        self.throttle = InboundThrottle(
            max_requests=settings.inbound_max_requests,
            window_seconds=settings.inbound_window_seconds,
        )
        self.require_admin = AdminAuth(settings.admin_token_set)

        self.app = FastAPI(title="BGBorrow Catalog Gateway", lifespan=self.lifespan)
        self.app.state.server = self
        self.app.add_exception_handler(StarletteHTTPException, http_exception_handler)
        self.app.add_exception_handler(RequestValidationError, validation_exception_handler)

        # Register routes
        self.app.get("/search")(self.search)
        self.app.get("/thing")(self.thing)
        self.app.get("/games/{game_id}")(self.game_details)
        self.app.post("/admin/cache/initialize")(self.initialize_cache)
        self.app.get("/admin/cache/metrics")(self.cache_metrics)
        self.app.get("/health")(self.health_check)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        if self._owns_gateway:
            await init_db(self.settings.database_url)
            self.gateway = build_gateway(
                get_session_factory(), self.settings, client=self._client
            )
        logger.info("Gateway server started")

        yield

        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        if self._owns_gateway and self.gateway:
            await self.gateway.close()
            await close_db()
        logger.info("Gateway server stopped")

    def _check_throttle(self, request: Request) -> None:
        client_id = request.client.host if request.client else "unknown"
        allowed, retry_after = self.throttle.check(client_id)
        if not allowed:
            logger.warning(f"Inbound throttle hit for {client_id}")
            raise TooManyRequestsError(retry_after=retry_after)

    def _error_response(self, error: Exception, message: str) -> JSONResponse:
        details = str(error) if self.settings.debug else None
        if isinstance(error, RateLimitError):
            headers = (
                {"Retry-After": str(int(error.retry_after))} if error.retry_after else None
            )
            return JSONResponse(
                status_code=429,
                content=error_body("BoardGameGeek rate limit exceeded", details),
                headers=headers,
            )
        logger.error(f"{message}: {type(error).__name__}: {error}")
        return JSONResponse(status_code=500, content=error_body(message, details))

    async def search(
        self,
        request: Request,
        query: Optional[str] = None,
        type: str = "boardgame",
        exact: Optional[str] = None,
    ):
        """Proxy BGG search; raw XML on success."""
        if not query:
            raise ValidationError("Query parameter is required")
        self._check_throttle(request)

        try:
            xml = await self.gateway.source.search(query, type=type, exact=exact)
        except Exception as e:
            return self._error_response(e, "Failed to fetch data from BoardGameGeek")

        return Response(
            content=xml,
            media_type="application/xml",
            headers={"Cache-Control": CACHE_CONTROL},
        )

    async def thing(self, request: Request, id: Optional[str] = None):
        """Proxy BGG thing (with stats); raw XML on success."""
        if not id:
            raise ValidationError("Game ID is required")
        self._check_throttle(request)

        try:
            xml = await self.gateway.source.thing(id)
        except Exception as e:
            return self._error_response(
                e, "Failed to fetch game details from BoardGameGeek"
            )

        return Response(
            content=xml,
            media_type="application/xml",
            headers={"Cache-Control": CACHE_CONTROL},
        )

    async def game_details(self, request: Request, game_id: str):
        """Parsed details of one game, served from the detail store when fresh."""
        self._check_throttle(request)

        try:
            game = await self.gateway.source.get_game_details(game_id)
        except Exception as e:
            return self._error_response(
                e, "Failed to fetch game details from BoardGameGeek"
            )

        return JSONResponse(
            content=game.model_dump(mode="json"),
            headers={"Cache-Control": CACHE_CONTROL},
        )

    async def initialize_cache(self, request: Request, force: bool = False):
        """Start the bulk refresh in the background unless it already ran this month."""
        caller = self.require_admin(request.headers.get("authorization"))
        job = self.gateway.refresh_job
        month = current_month()

        # Held until the task exists so concurrent calls see it
        async with self._initialize_lock:
            if (self._refresh_task and not self._refresh_task.done()) or job.running:
                return {
                    "success": True,
                    "message": "Cache initialization already in progress",
                    "skipped": True,
                }

            try:
                populated = await job.is_populated(month)
            except Exception as e:
                return self._error_response(e, "Failed to initialize cache")

            if populated and not force:
                return {
                    "success": True,
                    "message": f"Cache already initialized for {month}",
                    "skipped": True,
                }

            self._refresh_task = asyncio.create_task(self._run_refresh(caller))
        return {
            "success": True,
            "message": "Cache initialization started",
            "skipped": False,
        }

    async def _run_refresh(self, caller: Caller) -> None:
        try:
            await self.gateway.refresh_job.run(caller)
        except Exception as e:
            logger.error(f"Background cache initialization failed: {e}")

    async def cache_metrics(self, request: Request):
        """Derived cache metrics for administrators."""
        self.require_admin(request.headers.get("authorization"))
        try:
            metrics = await self.gateway.metrics.get_cache_metrics()
        except Exception as e:
            return self._error_response(e, "Failed to fetch cache metrics")
        return metrics.model_dump(by_alias=True)

    async def health_check(self):
        """Health check endpoint."""
        status = {"status": "ok", "service": "bgborrow-gateway"}
        if self.gateway:
            status["counters"] = self.gateway.metrics.counters.to_dict()
            status["limiters"] = [
                self.gateway.interactive_limiter.get_status(),
                self.gateway.bulk_limiter.get_status(),
            ]
            status["deduplicator"] = (
                self.gateway.dispatcher.deduplicator.get_stats().to_dict()
            )
        return status


def create_app(
    gateway: Gateway | None = None,
    settings: Settings = global_settings,
    client: BGGClient | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        gateway: Pre-built components; when omitted the app initializes the
            database and wires its own on startup
        settings: Settings to build from
        client: Upstream client to use when the app wires its own gateway

    Returns:
        FastAPI app
    """
    server = GatewayServer(gateway=gateway, settings=settings, client=client)
    return server.app
