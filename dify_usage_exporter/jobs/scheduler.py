"""
Job Scheduler
=============
APScheduler-based cron trigger for export runs.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = structlog.get_logger()

EXPORT_JOB_ID = "usage_export"


class JobScheduler:
    """
    Runs the export job on a cron schedule (UTC).

    A tick that fires while the previous run is still going is skipped.
    """

    def __init__(self, cron_schedule: str, job: Callable[[], Awaitable[object]]):
        self.cron_schedule = cron_schedule
        self.job = job
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False

    @property
    def is_running(self) -> bool:
        """True while an export run is in progress."""
        return self._running

    async def run_export(self) -> None:
        """Execute one export run unless one is already in progress."""
        if self._running:
            logger.warning("Previous export still running, skipping tick")
            return

        self._running = True
        try:
            logger.info("Running scheduled export")
            await self.job()
            logger.info("Scheduled export completed")
        except Exception as e:
            logger.error("Scheduled export failed", error=str(e), exc_info=True)
        finally:
            self._running = False

    def setup(self) -> None:
        """
        Register the export job.

        Raises:
            ValueError: the cron expression is invalid
        """
        trigger = CronTrigger.from_crontab(self.cron_schedule, timezone="UTC")
        self.scheduler.add_job(
            self.run_export,
            trigger,
            id=EXPORT_JOB_ID,
            name="Dify Usage Export",
            replace_existing=True,
            max_instances=2,
            coalesce=True,
        )
        logger.info("Scheduler configured", cron=self.cron_schedule)

    def start(self) -> None:
        """Start the scheduler."""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop firing new ticks; a run in progress keeps going."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    async def wait_for_idle(self, poll_interval: float = 0.1) -> None:
        """Return once no export run is in progress."""
        while self._running:
            await asyncio.sleep(poll_interval)
