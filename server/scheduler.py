"""Monthly refresh scheduling with APScheduler."""

import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.crawl_config import CrawlConfig, get_crawl_config
from services.crawl_runner import CrawlRunner

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = 'monthly_dataset_refresh'


class RefreshScheduler:
    """Runs ``CrawlRunner.refresh_stale_datasets`` on a monthly cron."""

    def __init__(self, runner: CrawlRunner, config: Optional[CrawlConfig] = None):
        self.runner = runner
        self.config = config or get_crawl_config()
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self.running:
            return

        schedule = self.config.get_refresh_schedule()
        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1}
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_job(
            self.runner.refresh_stale_datasets,
            'cron',
            day=schedule['day'],
            hour=schedule['hour'],
            minute=0,
            id=REFRESH_JOB_ID,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Monthly refresh scheduled (day {schedule['day']}, {schedule['hour']:02d}:00)")

    def shutdown(self) -> None:
        if self.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Refresh scheduler stopped")
        self.scheduler = None

    def _job_executed(self, event):
        logger.info(f"Scheduled job {event.job_id} finished (retval={event.retval})")

    def _job_error(self, event):
        logger.error(f"Scheduled job {event.job_id} failed: {event.exception}")
