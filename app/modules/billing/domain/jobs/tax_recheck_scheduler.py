"""Durable scheduling of deferred tax rechecks on the background job queue."""

from datetime import datetime, timedelta, timezone
from typing import Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import JobType
from app.modules.billing.domain.jobs.processor import enqueue_job

logger = structlog.get_logger()


def recheck_deduplication_key(invoice_id: str, delay_seconds: int) -> str:
    return f"tax_recheck:{invoice_id}:{delay_seconds}"


class JobTaxRecheckScheduler:
    """
    One job per (invoice, delay). Re-delivered webhooks hit the deduplication
    key instead of multiplying rechecks. Each job runs once; a miss is final.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def schedule(
        self, invoice_id: str, subscription_id: str, delays: Sequence[int]
    ) -> int:
        now = datetime.now(timezone.utc)
        created = 0
        for delay in delays:
            job = await enqueue_job(
                self.db,
                JobType.TAX_RECHECK,
                payload={
                    "invoice_id": invoice_id,
                    "subscription_id": subscription_id,
                    "delay_seconds": delay,
                },
                scheduled_for=now + timedelta(seconds=delay),
                max_attempts=1,
                deduplication_key=recheck_deduplication_key(invoice_id, delay),
            )
            if getattr(job, "_enqueue_created", False):
                created += 1
        if created == 0:
            logger.info("tax_recheck_already_scheduled", invoice_id=invoice_id)
        return created
