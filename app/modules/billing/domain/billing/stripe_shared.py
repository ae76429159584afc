"""Shared runtime state and primitives for Stripe billing modules."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()
settings = get_settings()

STRIPE_PROVIDER = "stripe"
CENT = Decimal("0.01")

# Metadata keys written by the checkout flow and read back by the resolver.
SUBSCRIBER_ID_KEY = "studentId"
PLAN_ID_KEY = "packageId"
PLAN_NAME_KEY = "packageName"
CHECKOUT_SESSION_KEY = "checkoutSessionId"
# Deposit checkouts carry their ledger reference here.
TX_REF_KEY = "txRef"


def from_minor_units(value: Any) -> Decimal:
    """Convert an integer amount in cents to a Decimal rounded to cents."""
    if value is None:
        return Decimal("0.00")
    return (Decimal(str(value)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def from_timestamp(value: Any) -> Optional[datetime]:
    """Stripe timestamps are unix seconds."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("stripe_invalid_timestamp", value=str(value))
        return None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round-trip; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field, which is either an id or an object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        candidate = value.get("id")
        return str(candidate) if candidate else None
    return None


def subscription_id_from_invoice(invoice: dict[str, Any]) -> Optional[str]:
    """Invoices carry the subscription at top level or under parent details."""
    direct = object_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def current_period_bounds(
    subscription: dict[str, Any],
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Period bounds live at top level on older API versions, on items on newer ones."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)
