"""
Monthly cache refresh scheduler.

Runs the BulkRefreshJob with the system caller on a cron schedule
(default: midnight on the first of every month).
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from server.datasource.bgg.refresh import SYSTEM_CALLER, BulkRefreshJob, RefreshReport
from server.settings import global_settings
from server.utils import safe_func_wrapper


class RefreshScheduler:
    """Cron-driven runner for the bulk refresh job."""

    JOB_ID = "bgg_cache_refresh"

    def __init__(self, job: BulkRefreshJob, cron: str | None = None):
        self.job = job
        self.cron = cron or global_settings.refresh_cron
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._is_running = False

    @safe_func_wrapper
    async def refresh_job(self) -> RefreshReport | None:
        """Scheduled refresh run."""
        if self.job.running:
            logger.warning("Cache refresh already in progress, skipping scheduled run")
            return None
        return await self.job.run(SYSTEM_CALLER)

    def start(self) -> None:
        if self._is_running:
            logger.warning("Refresh scheduler is already running")
            return

        self.scheduler.add_job(
            self.refresh_job,
            trigger=CronTrigger.from_crontab(self.cron, timezone="UTC"),
            id=self.JOB_ID,
            name="BGG Cache Refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._is_running = True

        logger.info(f"Refresh scheduler started: cron '{self.cron}'")

    def stop(self) -> None:
        if not self._is_running:
            logger.warning("Refresh scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Refresh scheduler stopped")

    def is_running(self) -> bool:
        return self._is_running

    def next_run_time(self):
        job = self.scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None
