"""
Record store for the billing ledger.

The only code that touches the session for ledger entities. Inserts are
insert-if-absent: a unique violation is rolled back and reported as "already
present", which turns concurrent first deliveries into an idempotent outcome.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Sequence, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import (
    CheckoutAttempt,
    Payment,
    Subscriber,
    Subscription,
    SubscriptionPlan,
    TaxTransaction,
)
from app.shared.core.exceptions import StorageError

from . import stripe_shared as shared

T = TypeVar("T")


class RecordStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            await self.db.rollback()
            shared.logger.error("record_store_error", operation=operation, error=str(exc))
            raise StorageError(
                f"Record store operation failed: {operation}",
                details={"operation": operation},
            ) from exc

    async def _insert_if_absent(
        self,
        row: T,
        operation: str,
        lookup: Any,
    ) -> tuple[T, bool]:
        """Insert `row`; on unique violation return the existing row instead."""
        async with self._guard(operation):
            self.db.add(row)
            try:
                await self.db.commit()
                return row, True
            except IntegrityError:
                await self.db.rollback()
                existing = await lookup()
                if existing is None:
                    raise
                shared.logger.info("record_store_insert_deduplicated", operation=operation)
                return existing, False

    # ---- Subscriptions ----

    async def find_subscription(self, external_subscription_id: str) -> Optional[Subscription]:
        async with self._guard("find_subscription"):
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.external_subscription_id == external_subscription_id
                )
            )
            return result.scalar_one_or_none()

    async def insert_subscription(self, subscription: Subscription) -> tuple[Subscription, bool]:
        return await self._insert_if_absent(
            subscription,
            "insert_subscription",
            lambda: self.find_subscription(subscription.external_subscription_id),
        )

    async def update_subscription(
        self, external_subscription_id: str, **values: Any
    ) -> Optional[Subscription]:
        subscription = await self.find_subscription(external_subscription_id)
        if subscription is None:
            return None
        async with self._guard("update_subscription"):
            for key, value in values.items():
                setattr(subscription, key, value)
            await self.db.commit()
        return subscription

    async def increment_subscription_tax_total(
        self,
        external_subscription_id: str,
        amount: Decimal,
        billing_address: Optional[dict[str, Any]] = None,
    ) -> None:
        """Atomic `total_tax_paid += amount`; also flags the record as taxed."""
        values: dict[str, Any] = {
            "total_tax_paid": Subscription.total_tax_paid + amount,
            "tax_enabled": True,
        }
        if billing_address:
            values["billing_address"] = billing_address
        async with self._guard("increment_subscription_tax_total"):
            await self.db.execute(
                update(Subscription)
                .where(Subscription.external_subscription_id == external_subscription_id)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.commit()

    # ---- Checkout attempts ----

    @staticmethod
    def _checkout_filters(
        intent_kind: Optional[str], from_status: Optional[str] = None
    ) -> list[Any]:
        filters: list[Any] = [CheckoutAttempt.provider == shared.STRIPE_PROVIDER]
        if intent_kind:
            filters.append(CheckoutAttempt.intent_kind == intent_kind)
        if from_status:
            filters.append(CheckoutAttempt.status == from_status)
        return filters

    async def find_checkout(
        self, correlation_ref: str, intent_kind: Optional[str] = None
    ) -> Optional[CheckoutAttempt]:
        async with self._guard("find_checkout"):
            result = await self.db.execute(
                select(CheckoutAttempt).where(
                    CheckoutAttempt.correlation_ref == correlation_ref,
                    *self._checkout_filters(intent_kind),
                )
            )
            return result.scalar_one_or_none()

    async def find_checkout_by_url(
        self, fragment: str, intent_kind: Optional[str] = None
    ) -> Optional[CheckoutAttempt]:
        """Match a checkout whose hosted URL embeds `fragment` (a session id)."""
        async with self._guard("find_checkout_by_url"):
            result = await self.db.execute(
                select(CheckoutAttempt)
                .where(
                    CheckoutAttempt.checkout_url.contains(fragment),
                    *self._checkout_filters(intent_kind),
                )
                .order_by(CheckoutAttempt.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update_checkout_status(
        self,
        correlation_ref: str,
        status: str,
        intent_kind: Optional[str] = None,
        from_status: Optional[str] = None,
    ) -> bool:
        """Move a Stripe checkout attempt to `status`; False when nothing matched."""
        async with self._guard("update_checkout_status"):
            result = await self.db.execute(
                update(CheckoutAttempt)
                .where(
                    CheckoutAttempt.correlation_ref == correlation_ref,
                    *self._checkout_filters(intent_kind, from_status),
                )
                .values(status=status)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.commit()
            return bool(result.rowcount)

    # ---- Tax transactions ----

    async def find_tax_transaction(self, invoice_id: str) -> Optional[TaxTransaction]:
        async with self._guard("find_tax_transaction"):
            result = await self.db.execute(
                select(TaxTransaction).where(TaxTransaction.invoice_id == invoice_id)
            )
            return result.scalar_one_or_none()

    async def insert_tax_transaction(
        self, transaction: TaxTransaction
    ) -> tuple[TaxTransaction, bool]:
        return await self._insert_if_absent(
            transaction,
            "insert_tax_transaction",
            lambda: self.find_tax_transaction(transaction.invoice_id),
        )

    # ---- Payments ----

    async def find_payment(self, idempotency_key: str) -> Optional[Payment]:
        async with self._guard("find_payment"):
            result = await self.db.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def insert_payment(self, payment: Payment) -> tuple[Payment, bool]:
        return await self._insert_if_absent(
            payment,
            "insert_payment",
            lambda: self.find_payment(payment.idempotency_key),
        )

    # ---- Catalog ----

    async def find_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        async with self._guard("find_plan"):
            return await self.db.get(SubscriptionPlan, plan_id)

    async def list_plans_with_payment_links(self) -> Sequence[SubscriptionPlan]:
        async with self._guard("list_plans_with_payment_links"):
            result = await self.db.execute(
                select(SubscriptionPlan).where(
                    SubscriptionPlan.is_active.is_(True),
                    SubscriptionPlan.payment_link.is_not(None),
                )
            )
            return result.scalars().all()

    async def find_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        async with self._guard("find_subscriber"):
            return await self.db.get(Subscriber, subscriber_id)
