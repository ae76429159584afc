"""
Job Processor Service

Processes deferred billing work (tax rechecks) from the database queue.

Key Features:
- Survives app restarts (jobs in database)
- Automatic retries with exponential backoff
- Deduplicated scheduling via `deduplication_key`

Usage:
    processor = JobProcessor(db)
    await processor.process_pending_jobs()
"""

import asyncio
import json
import time
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob, JobStatus
from app.shared.core.ops_metrics import BACKGROUND_JOB_DURATION, BACKGROUND_JOBS_ENQUEUED

__all__ = ["JobProcessor", "JobStatus", "enqueue_job"]

from app.modules.billing.domain.jobs.handlers import get_handler_factory

logger = structlog.get_logger()

# Job processing configuration
MAX_JOBS_PER_BATCH = 10
BACKOFF_BASE_SECONDS = 60
JOB_TIMEOUT_SECONDS = 120
MAX_JOB_RESULT_BYTES = 64 * 1024


class JobProcessor:
    """
    Processes background jobs from the database queue.

    Designed to be called by:
    1. The in-process APScheduler poll
    2. API endpoint for on-demand processing
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _prepare_result_for_storage(self, job: BackgroundJob, result: Any) -> Any:
        """Guard background_jobs.result against unbounded payload growth."""
        if result is None:
            return None

        serialized = json.dumps(result, default=str, separators=(",", ":"))
        result_bytes = len(serialized.encode("utf-8"))
        if result_bytes <= MAX_JOB_RESULT_BYTES:
            return json.loads(serialized)

        logger.warning(
            "job_result_truncated",
            job_id=str(job.id),
            job_type=str(job.job_type),
            result_bytes=result_bytes,
        )
        return {"_truncated": True, "_actual_bytes": result_bytes}

    async def process_pending_jobs(
        self,
        limit: Optional[int] = None,
        *,
        job_type: str | None = None,
    ) -> Dict[str, Any]:
        limit = limit or MAX_JOBS_PER_BATCH
        logger.info("processing_pending_jobs", limit=limit)
        results: Dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": [],
        }

        try:
            pending_jobs = await self._fetch_and_lock_batch(limit, job_type=job_type)
        except sa.exc.SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("job_processor_batch_db_error", error=str(e))
            results["errors"].append({"batch_error": str(e)})
            return results

        logger.info("job_processor_batch_start", pending_count=len(pending_jobs))

        for job in pending_jobs:
            job_id = str(job.id)
            try:
                await self._process_single_job(job)
                if job.status == JobStatus.COMPLETED.value:
                    results["succeeded"] += 1
                else:
                    results["failed"] += 1
                    if job.error_message:
                        results["errors"].append(
                            {
                                "job_id": job_id,
                                "error": job.error_message,
                                "type": "execution",
                            }
                        )
            except (KeyError, ValueError) as e:
                # Handler configuration/payload errors
                logger.warning("job_handler_config_error", job_id=job_id, error=str(e))
                await self._mark_dead_letter(job, str(e))
                results["failed"] += 1
                results["errors"].append(
                    {"job_id": job_id, "error": str(e), "type": "config"}
                )
            results["processed"] += 1

        logger.info("job_processor_batch_complete", **results)
        return results

    async def _fetch_and_lock_batch(
        self, limit: int, *, job_type: str | None = None
    ) -> list[BackgroundJob]:
        """
        Fetch due jobs and mark them RUNNING in one commit.
        On PostgreSQL, rows are claimed with SELECT FOR UPDATE SKIP LOCKED.
        """
        now = datetime.now(timezone.utc)
        filters = [
            BackgroundJob.status == JobStatus.PENDING.value,
            BackgroundJob.scheduled_for <= now,
            BackgroundJob.attempts < BackgroundJob.max_attempts,
        ]
        if job_type is not None:
            filters.append(BackgroundJob.job_type == job_type)

        stmt = (
            select(BackgroundJob)
            .where(*filters)
            .order_by(BackgroundJob.scheduled_for)
            .limit(limit)
        )
        if self.db.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        result = await self.db.execute(stmt)
        jobs = list(result.scalars().all())
        for job in jobs:
            job.status = JobStatus.RUNNING.value
            job.started_at = now
        await self.db.commit()
        return jobs

    async def _process_single_job(self, job: BackgroundJob) -> None:
        """Process a single job with timeout and retry bookkeeping."""
        job_id = job.id
        job_type = str(job.job_type)
        logger.info(
            "job_processing_start",
            job_id=str(job_id),
            job_type=job_type,
            attempt=job.attempts + 1,
        )

        job.attempts += 1
        await self.db.commit()

        handler_cls = get_handler_factory(job_type)
        handler = handler_cls()

        started = time.perf_counter()
        result = None
        error: Optional[str] = None
        try:
            result = await asyncio.wait_for(
                handler.execute(job, self.db), timeout=JOB_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(
                "job_processing_timeout",
                job_id=str(job_id),
                job_type=job_type,
                timeout_seconds=JOB_TIMEOUT_SECONDS,
            )
            error = f"Job timed out after {JOB_TIMEOUT_SECONDS}s"
        except Exception as e:  # noqa: BLE001 - job failures are isolated from the batch
            logger.error(
                "job_processing_failed",
                job_id=str(job_id),
                job_type=job_type,
                error=str(e),
            )
            error = str(e)

        # Handlers share the session; reload in case they rolled it back.
        await self.db.refresh(job)
        now = datetime.now(timezone.utc)
        if error is None:
            job.status = JobStatus.COMPLETED.value
            job.completed_at = now
            job.result = self._prepare_result_for_storage(job, result)
            job.error_message = None
            logger.info("job_processing_success", job_id=str(job_id), job_type=job_type)
        else:
            job.error_message = error
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.DEAD_LETTER.value
                job.completed_at = now
            else:
                backoff_seconds = BACKOFF_BASE_SECONDS * (2 ** (job.attempts - 1))
                job.status = JobStatus.PENDING.value
                job.scheduled_for = now + timedelta(seconds=backoff_seconds)

        BACKGROUND_JOB_DURATION.labels(job_type=job_type, status=job.status).observe(
            time.perf_counter() - started
        )
        await self.db.commit()

    async def _mark_dead_letter(self, job: BackgroundJob, error: str) -> None:
        job.status = JobStatus.DEAD_LETTER.value
        job.error_message = error
        job.completed_at = datetime.now(timezone.utc)
        await self.db.commit()


# ==================== Job Creation Helpers ====================


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    scheduled_for: Optional[datetime] = None,
    max_attempts: int = 3,
    deduplication_key: str | None = None,
) -> BackgroundJob:
    """
    Enqueue a new background job.

    Usage:
        job = await enqueue_job(
            db,
            job_type=JobType.TAX_RECHECK,
            payload={"invoice_id": "in_123"},
            deduplication_key="tax_recheck:in_123:15",
        )
    """
    job_type_value = job_type.value if hasattr(job_type, "value") else job_type
    job = BackgroundJob(
        job_type=job_type_value,
        payload=payload,
        deduplication_key=deduplication_key,
        status=JobStatus.PENDING.value,
        scheduled_for=scheduled_for or datetime.now(timezone.utc),
        max_attempts=max_attempts,
        created_at=datetime.now(timezone.utc),
    )

    db.add(job)
    try:
        await db.commit()
        await db.refresh(job)
        # Expose insertion outcome for callers that need queueing semantics.
        setattr(job, "_enqueue_created", True)
    except IntegrityError:
        await db.rollback()
        if not deduplication_key:
            raise

        existing_result = await db.execute(
            select(BackgroundJob).where(
                BackgroundJob.deduplication_key == deduplication_key
            )
        )
        existing = existing_result.scalar_one_or_none()
        if existing is None:
            raise
        setattr(existing, "_enqueue_created", False)
        logger.info(
            "job_enqueued_deduplicated",
            job_id=str(existing.id),
            job_type=job_type_value,
            deduplication_key=deduplication_key,
        )
        return existing

    BACKGROUND_JOBS_ENQUEUED.labels(job_type=job_type_value).inc()
    logger.info(
        "job_enqueued",
        job_id=str(job.id),
        job_type=job_type_value,
        deduplication_key=deduplication_key,
    )

    return job
