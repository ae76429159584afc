from typing import Any, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.modules.billing.domain.jobs.processor import JobProcessor
from app.shared.core.config import get_settings
from app.shared.db.session import async_session_maker

logger = structlog.get_logger()


class BillingJobScheduler:
    """Polls the durable job table on an interval and runs due jobs."""

    def __init__(self, interval_seconds: int | None = None):
        self.scheduler = AsyncIOScheduler()
        self.interval_seconds = interval_seconds or get_settings().JOB_POLL_INTERVAL_SECONDS
        self._last_run: Dict[str, Any] | None = None

    async def process_due_jobs(self) -> None:
        async with async_session_maker() as db:
            try:
                self._last_run = await JobProcessor(db).process_pending_jobs()
            except Exception as e:  # noqa: BLE001 - the poll must survive one bad tick
                logger.error("job_scheduler_tick_failed", error=str(e))

    def start(self) -> None:
        self.scheduler.add_job(
            self.process_due_jobs,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="billing_job_poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("job_scheduler_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=True)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "last_run": self._last_run,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }
