from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, Integer, JSON, Text, Uuid as PG_UUID
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class JobType(str, Enum):
    TAX_RECHECK = "tax_recheck"


class BackgroundJob(Base):
    """
    Durable deferred work.
    Rows survive restarts; `deduplication_key` keeps re-scheduling idempotent.
    """

    __tablename__ = "background_jobs"
    __table_args__ = {"extend_existing": True}

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )
    deduplication_key: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, index=True
    )
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
