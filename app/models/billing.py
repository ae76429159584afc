from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    DateTime,
    Numeric,
    Boolean,
    Integer,
    JSON,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckoutIntent(str, Enum):
    SUBSCRIPTION = "subscription"
    DEPOSIT = "deposit"


class TaxStatus(str, Enum):
    CALCULATED = "calculated"
    ESTIMATED = "estimated"


class SubscriptionPlan(Base):
    """
    Catalog entry a subscriber pays for.
    `payment_link` is the hosted gateway link used for reverse lookups.
    """

    __tablename__ = "subscription_plans"
    __table_args__ = {"extend_existing": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    duration_months: Mapped[int] = mapped_column(Integer, default=1)
    payment_link: Mapped[Optional[str]] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Subscriber(Base):
    __tablename__ = "subscribers"
    __table_args__ = {"extend_existing": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    chat_id: Mapped[Optional[str]] = mapped_column(String(64))
    # Locale selector for renewal reminders (e.g. "USA").
    country: Mapped[Optional[str]] = mapped_column(String(64))


class Subscription(Base):
    """
    One recurring billing relationship with the gateway.
    Never hard-deleted: cancellation is a status transition.
    """

    __tablename__ = "subscriptions"
    __table_args__ = {"extend_existing": True}

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value
    )
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    total_tax_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    tax_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    billing_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class CheckoutAttempt(Base):
    """Provisional record of a purchase in progress, before gateway confirmation."""

    __tablename__ = "checkout_attempts"
    __table_args__ = {"extend_existing": True}

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    correlation_ref: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), default="stripe")
    intent_kind: Mapped[str] = mapped_column(
        String(32), default=CheckoutIntent.SUBSCRIPTION.value
    )
    subscriber_id: Mapped[Optional[str]] = mapped_column(String(64))
    plan_id: Mapped[Optional[str]] = mapped_column(String(64))
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1000))
    status: Mapped[str] = mapped_column(
        String(20), default=CheckoutStatus.PENDING.value
    )
    # "metadata" is reserved on declarative classes.
    extra_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class TaxTransaction(Base):
    """Computed tax for one invoice. Created once, never mutated."""

    __tablename__ = "tax_transactions"
    __table_args__ = {"extend_existing": True}

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    invoice_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    subscription_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID())
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    subscriber_id: Mapped[Optional[str]] = mapped_column(String(64))
    plan_id: Mapped[Optional[str]] = mapped_column(String(64))
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(String(255))

    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    tax_breakdown: Mapped[list[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=list
    )
    billing_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )
    calculation_id: Mapped[Optional[str]] = mapped_column(String(255))
    tax_status: Mapped[str] = mapped_column(
        String(20), default=TaxStatus.CALCULATED.value
    )
    method: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class Payment(Base):
    """Ledger entry for one applied finalization."""

    __tablename__ = "payments"
    __table_args__ = {"extend_existing": True}

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID())
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    source_reference: Mapped[Optional[str]] = mapped_column(String(255))
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
