"""Idempotent subscription finalization (initial purchase and renewals)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from app.models.billing import (
    Payment,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.shared.core.exceptions import (
    BillingConflictError,
    GatewayLookupError,
    MissingIdentityError,
)
from app.shared.core.ops_metrics import FINALIZATIONS_TOTAL

from . import stripe_shared as shared
from .metadata_resolver import ResolvedIdentity, identity_from_metadata
from .record_store import RecordStore
from .stripe_client_impl import PaymentGateway


class FinalizeResult(str, Enum):
    CREATED = "created"
    RENEWED = "renewed"
    DUPLICATE = "duplicate"


@dataclass
class FinalizeRequest:
    is_initial_payment: bool
    idempotency_key: str
    invoice_amount: Decimal = Decimal("0")
    invoice_reference: Optional[str] = None
    currency: str = "USD"
    identity: Optional[ResolvedIdentity] = None
    gateway_subscription: Optional[dict[str, Any]] = None
    customer_id: Optional[str] = None
    source: str = "invoice"


@dataclass
class FinalizeOutcome:
    result: FinalizeResult
    subscription: Optional[Subscription] = None
    payment: Optional[Payment] = None


class IdempotentFinalizer:
    """
    Applies a subscription creation or renewal to the ledger exactly once.

    Every financial effect is tied to `idempotency_key`: the Payment row is
    unique on it and the Subscription row is unique on the external id.
    """

    def __init__(self, store: RecordStore, gateway: PaymentGateway):
        self.store = store
        self.gateway = gateway

    async def finalize(
        self, external_subscription_id: str, request: FinalizeRequest
    ) -> FinalizeOutcome:
        existing = await self.store.find_subscription(external_subscription_id)
        if existing is not None:
            if request.is_initial_payment:
                shared.logger.info(
                    "finalize_duplicate_initial_payment",
                    subscription_id=external_subscription_id,
                    idempotency_key=request.idempotency_key,
                )
                self._count(request, FinalizeResult.DUPLICATE)
                return FinalizeOutcome(FinalizeResult.DUPLICATE, subscription=existing)
            return await self._renew(existing, request)

        return await self._create(external_subscription_id, request)

    async def _identity(
        self, external_subscription_id: str, request: FinalizeRequest
    ) -> ResolvedIdentity:
        if request.identity is not None:
            return request.identity
        gateway_subscription = await self._gateway_subscription(
            external_subscription_id, request
        )
        return identity_from_metadata((gateway_subscription or {}).get("metadata"))

    async def _gateway_subscription(
        self, external_subscription_id: str, request: FinalizeRequest
    ) -> Optional[dict[str, Any]]:
        if request.gateway_subscription is None:
            try:
                request.gateway_subscription = await self.gateway.retrieve_subscription(
                    external_subscription_id
                )
            except GatewayLookupError as exc:
                shared.logger.warning(
                    "finalize_subscription_lookup_failed",
                    subscription_id=external_subscription_id,
                    error=str(exc),
                )
        return request.gateway_subscription

    async def _period(
        self,
        external_subscription_id: str,
        request: FinalizeRequest,
        plan: SubscriptionPlan,
        anchor: datetime,
    ) -> tuple[datetime, datetime]:
        gateway_subscription = await self._gateway_subscription(
            external_subscription_id, request
        )
        start, end = shared.current_period_bounds(gateway_subscription or {})
        if start and end:
            return start, end
        return anchor, anchor + relativedelta(months=max(1, plan.duration_months or 1))

    async def _create(
        self, external_subscription_id: str, request: FinalizeRequest
    ) -> FinalizeOutcome:
        identity = await self._identity(external_subscription_id, request)
        if not identity.complete:
            self._count(request, "missing_identity")
            raise MissingIdentityError(
                "Subscriber or plan not yet known for subscription",
                subscriber_id=identity.subscriber_id,
                plan_id=identity.plan_id,
                details={"subscription_id": external_subscription_id},
            )
        subscriber_id = str(identity.subscriber_id)
        plan = await self.store.find_plan(str(identity.plan_id))
        if plan is None:
            self._count(request, "missing_identity")
            raise MissingIdentityError(
                "Plan not found in catalog",
                subscriber_id=identity.subscriber_id,
                plan_id=identity.plan_id,
                details={"subscription_id": external_subscription_id},
            )

        start, end = await self._period(
            external_subscription_id, request, plan, datetime.now(timezone.utc)
        )
        subscription, created = await self.store.insert_subscription(
            Subscription(
                external_subscription_id=external_subscription_id,
                subscriber_id=subscriber_id,
                plan_id=plan.id,
                gateway_customer_id=request.customer_id,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=start,
                end_date=end,
                next_billing_date=end,
            )
        )
        if not created:
            # Another delivery won the insert race.
            self._ensure_same_subscriber(subscription, subscriber_id)
            self._count(request, FinalizeResult.DUPLICATE)
            return FinalizeOutcome(FinalizeResult.DUPLICATE, subscription=subscription)

        payment = await self._record_payment(subscription, plan, request, "initial")
        shared.logger.info(
            "subscription_finalized",
            subscription_id=external_subscription_id,
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            resolved_from=identity.sources,
            idempotency_key=request.idempotency_key,
        )
        self._count(request, FinalizeResult.CREATED)
        return FinalizeOutcome(FinalizeResult.CREATED, subscription, payment)

    async def _renew(
        self, subscription: Subscription, request: FinalizeRequest
    ) -> FinalizeOutcome:
        if await self.store.find_payment(request.idempotency_key) is not None:
            shared.logger.info(
                "finalize_duplicate_renewal",
                subscription_id=subscription.external_subscription_id,
                idempotency_key=request.idempotency_key,
            )
            self._count(request, FinalizeResult.DUPLICATE)
            return FinalizeOutcome(FinalizeResult.DUPLICATE, subscription=subscription)

        if request.identity is not None and request.identity.subscriber_id:
            self._ensure_same_subscriber(subscription, request.identity.subscriber_id)

        plan = await self.store.find_plan(subscription.plan_id)
        if plan is None:
            raise MissingIdentityError(
                "Plan not found in catalog",
                subscriber_id=subscription.subscriber_id,
                plan_id=subscription.plan_id,
            )

        current_end = shared.ensure_utc(subscription.end_date)
        now = datetime.now(timezone.utc)
        anchor = current_end if current_end and current_end > now else now
        _, end = await self._period(
            subscription.external_subscription_id, request, plan, anchor
        )

        values: dict[str, Any] = {"end_date": end, "next_billing_date": end}
        if subscription.status == SubscriptionStatus.PAST_DUE.value:
            values["status"] = SubscriptionStatus.ACTIVE.value
        payment = await self._record_payment(subscription, plan, request, "renewal")
        if payment is None:
            self._count(request, FinalizeResult.DUPLICATE)
            return FinalizeOutcome(FinalizeResult.DUPLICATE, subscription=subscription)

        updated = await self.store.update_subscription(
            subscription.external_subscription_id, **values
        )
        shared.logger.info(
            "subscription_renewed",
            subscription_id=subscription.external_subscription_id,
            end_date=end.isoformat(),
            idempotency_key=request.idempotency_key,
        )
        self._count(request, FinalizeResult.RENEWED)
        return FinalizeOutcome(FinalizeResult.RENEWED, updated or subscription, payment)

    async def _record_payment(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        request: FinalizeRequest,
        reason: str,
    ) -> Optional[Payment]:
        """Insert the ledger entry; returns None if the key was already applied."""
        amount = request.invoice_amount if request.invoice_amount > 0 else Decimal(plan.price)
        payment, created = await self.store.insert_payment(
            Payment(
                idempotency_key=request.idempotency_key,
                subscriber_id=subscription.subscriber_id,
                plan_id=subscription.plan_id,
                subscription_id=subscription.id,
                amount=shared.quantize(Decimal(amount)),
                currency=(request.currency or plan.currency or "USD").upper(),
                reason=reason,
                source_reference=request.invoice_reference,
            )
        )
        return payment if created else None

    @staticmethod
    def _ensure_same_subscriber(subscription: Subscription, subscriber_id: str) -> None:
        if subscription.subscriber_id != subscriber_id:
            shared.logger.error(
                "finalize_subscriber_conflict",
                subscription_id=subscription.external_subscription_id,
            )
            raise BillingConflictError(
                "Subscription already belongs to a different subscriber",
                details={"subscription_id": subscription.external_subscription_id},
            )

    @staticmethod
    def _count(request: FinalizeRequest, result: Any) -> None:
        value = result.value if isinstance(result, Enum) else str(result)
        FINALIZATIONS_TOTAL.labels(source=request.source, result=value).inc()
