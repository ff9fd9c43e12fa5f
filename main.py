"""
BGBorrow catalog gateway entry point.
Serves the cached BGG API and runs the monthly cache refresh.
"""

import asyncio

import uvicorn
from loguru import logger

from server.api import create_app
from server.datasource.bgg import RefreshScheduler
from server.datastore.engine import close_db, get_session_factory, init_db
from server.gateway import build_gateway
from server.settings import global_settings


async def main() -> None:
    logger.info("Starting BGBorrow gateway...")

    gateway = None
    scheduler = None
    try:
        logger.info("Initializing database...")
        await init_db()
        logger.info("Database initialized successfully")

        gateway = build_gateway(get_session_factory(), global_settings)

        logger.info("Starting refresh scheduler...")
        scheduler = RefreshScheduler(gateway.refresh_job)
        scheduler.start()

        config = uvicorn.Config(
            create_app(gateway, global_settings),
            host=global_settings.host,
            port=global_settings.port,
            log_level="debug" if global_settings.debug else "info",
        )
        logger.info(f"Serving on {global_settings.host}:{global_settings.port}")
        await uvicorn.Server(config).serve()

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        if scheduler and scheduler.is_running():
            scheduler.stop()

        if gateway:
            await gateway.close()

        logger.info("Closing database connections...")
        await close_db()

        logger.info("BGBorrow gateway stopped")


if __name__ == "__main__":
    asyncio.run(main())
