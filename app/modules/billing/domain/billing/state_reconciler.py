"""Subscription lifecycle transitions driven by gateway events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from app.models.billing import Subscription, SubscriptionStatus

from . import stripe_shared as shared
from .record_store import RecordStore

# Gateway status -> local status. Unknown values keep the local status.
REMOTE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def _is_cancelled(subscription: Subscription) -> bool:
    return subscription.status == SubscriptionStatus.CANCELLED.value


class SubscriptionStateReconciler:
    """
    State machine over active -> past_due -> cancelled.

    Cancelled is terminal: local cancellation intent outranks a lagging
    remote status, so no later update revives a cancelled record.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    async def mark_past_due(self, external_subscription_id: str) -> Optional[Subscription]:
        subscription = await self.store.find_subscription(external_subscription_id)
        if subscription is None:
            shared.logger.warning(
                "subscription_not_found_for_payment_failure",
                subscription_id=external_subscription_id,
            )
            return None
        if _is_cancelled(subscription):
            shared.logger.info(
                "payment_failure_ignored_for_cancelled_subscription",
                subscription_id=external_subscription_id,
            )
            return subscription
        updated = await self.store.update_subscription(
            external_subscription_id, status=SubscriptionStatus.PAST_DUE.value
        )
        shared.logger.info(
            "subscription_marked_past_due", subscription_id=external_subscription_id
        )
        return updated

    async def mark_cancelled(
        self, external_subscription_id: str, cancelled_at: Optional[datetime] = None
    ) -> Optional[Subscription]:
        subscription = await self.store.find_subscription(external_subscription_id)
        if subscription is None:
            shared.logger.warning(
                "subscription_not_found_for_cancellation",
                subscription_id=external_subscription_id,
            )
            return None
        end_date = cancelled_at or datetime.now(timezone.utc)
        updated = await self.store.update_subscription(
            external_subscription_id,
            status=SubscriptionStatus.CANCELLED.value,
            end_date=end_date,
        )
        shared.logger.info(
            "subscription_cancelled",
            subscription_id=external_subscription_id,
            end_date=end_date.isoformat(),
        )
        return updated

    async def apply_remote_update(
        self, remote: dict[str, Any]
    ) -> Optional[Subscription]:
        """Apply a `customer.subscription.updated` payload."""
        external_subscription_id = str(remote.get("id") or "")
        subscription = await self.store.find_subscription(external_subscription_id)
        if subscription is None:
            shared.logger.warning(
                "subscription_not_found_for_update",
                subscription_id=external_subscription_id,
            )
            return None

        remote_status = str(remote.get("status") or "")
        previous_status = subscription.status
        status = self.next_status(
            subscription.status,
            remote_status,
            bool(remote.get("cancel_at_period_end")),
        )

        values: dict[str, Any] = {"status": status}
        _, period_end = shared.current_period_bounds(remote)
        # A recorded cancellation keeps its end date.
        if period_end is not None and not _is_cancelled(subscription):
            values["next_billing_date"] = period_end
            values["end_date"] = period_end

        updated = await self.store.update_subscription(external_subscription_id, **values)
        shared.logger.info(
            "subscription_status_reconciled",
            subscription_id=external_subscription_id,
            remote_status=remote_status,
            local_status=status,
            previous_status=previous_status,
        )
        return updated

    @staticmethod
    def next_status(local: str, remote: str, cancel_at_period_end: bool) -> str:
        if local == SubscriptionStatus.CANCELLED.value:
            return local
        if cancel_at_period_end:
            return SubscriptionStatus.CANCELLED.value
        mapped = REMOTE_STATUS_MAP.get(remote)
        return mapped.value if mapped is not None else local
