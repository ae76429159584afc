"""Dispatch of verified Stripe events to the billing reconcilers."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import CheckoutIntent, CheckoutStatus
from app.shared.core.exceptions import GatewayLookupError, MissingIdentityError
from app.shared.core.logging import bind_event_context
from app.shared.core.ops_metrics import (
    WEBHOOK_EVENTS_TOTAL,
    WEBHOOK_PROCESSING_DURATION,
)

from . import stripe_shared as shared
from .event_auth import EventEnvelope, EventKind
from .finalizer import FinalizeRequest, IdempotentFinalizer
from .metadata_resolver import MetadataResolver, ResolutionContext, ResolvedIdentity
from .record_store import RecordStore
from .renewal_notifier import RenewalReminderDispatcher
from .state_reconciler import SubscriptionStateReconciler
from .stripe_client_impl import PaymentGateway, StripeClient
from .tax_reconciliation import (
    INVOICE_TAX_EXPANSIONS,
    RecheckScheduler,
    TaxReconciliationEngine,
)

INITIAL_BILLING_REASONS = {"subscription_create", ""}

PROCESSED = "processed"
IGNORED = "ignored"


class StripeWebhookRouter:
    """
    Maps each event kind to one handler.

    Unknown kinds are acknowledged and dropped. Handler exceptions propagate
    so the endpoint answers 5xx and the gateway re-delivers the event.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        rechecks: Optional[RecheckScheduler] = None,
        notifier: Optional[RenewalReminderDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.gateway = gateway or StripeClient()
        self.store = RecordStore(db)
        if rechecks is None:
            from app.modules.billing.domain.jobs.tax_recheck_scheduler import (
                JobTaxRecheckScheduler,
            )

            rechecks = JobTaxRecheckScheduler(db)
        self.resolver = MetadataResolver(self.store, self.gateway, sleep=sleep)
        self.finalizer = IdempotentFinalizer(self.store, self.gateway)
        self.tax = TaxReconciliationEngine(self.store, self.gateway, rechecks=rechecks)
        self.states = SubscriptionStateReconciler(self.store)
        self.notifier = notifier or RenewalReminderDispatcher()

        self.handlers: dict[EventKind, Callable[[dict[str, Any]], Awaitable[str]]] = {
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventKind.CHECKOUT_EXPIRED: self._handle_checkout_expired,
            EventKind.INVOICE_PAID: self._handle_invoice_paid,
            EventKind.INVOICE_FAILED: self._handle_invoice_failed,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.INVOICE_UPCOMING: self._handle_invoice_upcoming,
        }

    async def process(self, envelope: EventEnvelope) -> dict[str, Any]:
        bind_event_context(event_id=envelope.id, event_type=envelope.type)
        shared.logger.info("stripe_webhook_received", livemode=envelope.livemode)

        handler = self.handlers.get(envelope.kind) if envelope.kind else None
        if handler is None:
            shared.logger.info("stripe_webhook_ignored_unhandled_type")
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unhandled", outcome=IGNORED).inc()
            return {"received": True, "status": IGNORED}

        started = time.perf_counter()
        try:
            status = await handler(envelope.payload)
        except Exception as exc:
            shared.logger.error(
                "stripe_webhook_handler_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            WEBHOOK_EVENTS_TOTAL.labels(event_type=envelope.type, outcome="failed").inc()
            raise
        finally:
            WEBHOOK_PROCESSING_DURATION.labels(event_type=envelope.type).observe(
                time.perf_counter() - started
            )

        WEBHOOK_EVENTS_TOTAL.labels(event_type=envelope.type, outcome=status).inc()
        shared.logger.info("stripe_webhook_processed", status=status)
        return {"received": True, "status": status}

    # ---- handlers ----

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> str:
        session_id = str(session.get("id") or "")
        bind_event_context(session_id=session_id)
        if session.get("mode") != "subscription":
            return await self._settle_deposit_checkout(session, CheckoutStatus.COMPLETED)

        subscription_id = shared.object_id(session.get("subscription"))
        if not subscription_id:
            shared.logger.warning("checkout_session_missing_subscription")
            return IGNORED
        bind_event_context(subscription_id=subscription_id)

        metadata = session.get("metadata") or {}
        ctx = ResolutionContext(
            subscription_id=subscription_id,
            inline_metadata=metadata,
            client_reference_id=session.get("client_reference_id"),
            session_id=session_id,
            payment_link=shared.object_id(session.get("payment_link")),
            customer_id=shared.object_id(session.get("customer")),
        )
        identity = await self.resolver.resolve(ctx)

        try:
            await self.finalizer.finalize(
                subscription_id,
                FinalizeRequest(
                    is_initial_payment=True,
                    idempotency_key=f"webhook_session_{session_id}",
                    invoice_amount=shared.from_minor_units(session.get("amount_total")),
                    invoice_reference=session_id,
                    currency=str(session.get("currency") or "usd").upper(),
                    identity=identity,
                    gateway_subscription=ctx.gateway_subscription,
                    customer_id=ctx.customer_id,
                    source="checkout",
                ),
            )
        except MissingIdentityError as exc:
            shared.logger.warning(
                "checkout_finalization_deferred",
                reason=exc.message,
                has_plan_id=bool(identity.plan_id),
            )
            return PROCESSED

        correlation_ref = ctx.checkout_ref or await self._subscription_checkout_ref(session)
        if correlation_ref:
            await self.store.update_checkout_status(
                correlation_ref,
                CheckoutStatus.COMPLETED.value,
                intent_kind=CheckoutIntent.SUBSCRIPTION.value,
            )
        return PROCESSED

    async def _handle_checkout_expired(self, session: dict[str, Any]) -> str:
        bind_event_context(session_id=session.get("id"))
        if session.get("mode") != "subscription":
            return await self._settle_deposit_checkout(session, CheckoutStatus.FAILED)

        correlation_ref = await self._subscription_checkout_ref(session)
        if not correlation_ref:
            shared.logger.info("expired_checkout_without_attempt")
            return IGNORED
        await self.store.update_checkout_status(
            correlation_ref,
            CheckoutStatus.FAILED.value,
            intent_kind=CheckoutIntent.SUBSCRIPTION.value,
            from_status=CheckoutStatus.PENDING.value,
        )
        return PROCESSED

    async def _subscription_checkout_ref(self, session: dict[str, Any]) -> Optional[str]:
        metadata = session.get("metadata") or {}
        correlation_ref = session.get("client_reference_id") or metadata.get(
            shared.CHECKOUT_SESSION_KEY
        )
        if correlation_ref:
            return str(correlation_ref)
        session_id = session.get("id")
        if not session_id:
            return None
        attempt = await self.store.find_checkout_by_url(
            str(session_id), CheckoutIntent.SUBSCRIPTION.value
        )
        return attempt.correlation_ref if attempt else None

    async def _settle_deposit_checkout(
        self, session: dict[str, Any], status: CheckoutStatus
    ) -> str:
        """One-off (`mode=payment`) checkouts: only the attempt status is tracked here."""
        tx_ref = (session.get("metadata") or {}).get(shared.TX_REF_KEY) or session.get(
            "client_reference_id"
        )
        if not tx_ref:
            shared.logger.warning(
                "deposit_checkout_missing_tx_ref", mode=session.get("mode")
            )
            return IGNORED

        updated = await self.store.update_checkout_status(
            str(tx_ref),
            status.value,
            intent_kind=CheckoutIntent.DEPOSIT.value,
            from_status=CheckoutStatus.PENDING.value,
        )
        shared.logger.info(
            "deposit_checkout_settled",
            tx_ref=tx_ref,
            status=status.value,
            updated=updated,
        )
        return PROCESSED if updated else IGNORED

    async def _handle_invoice_paid(self, payload: dict[str, Any]) -> str:
        invoice_id = str(payload.get("id") or "")
        bind_event_context(invoice_id=invoice_id)
        subscription_id = shared.subscription_id_from_invoice(payload)
        if not subscription_id:
            shared.logger.info("invoice_without_subscription_ignored")
            return IGNORED
        bind_event_context(subscription_id=subscription_id)

        invoice = await self._expanded_invoice(invoice_id, payload)
        billing_reason = str(invoice.get("billing_reason") or "")
        is_initial = billing_reason in INITIAL_BILLING_REASONS
        amount_paid = shared.from_minor_units(invoice.get("amount_paid"))
        amount = amount_paid if amount_paid > 0 else shared.from_minor_units(invoice.get("total"))

        identity: Optional[ResolvedIdentity] = None
        ctx: Optional[ResolutionContext] = None
        if await self.store.find_subscription(subscription_id) is None:
            ctx = ResolutionContext(
                subscription_id=subscription_id,
                inline_metadata=_invoice_metadata(invoice),
                customer_id=shared.object_id(invoice.get("customer")),
            )
            identity = await self.resolver.resolve(ctx)
        elif is_initial:
            shared.logger.info("invoice_initial_payment_already_processed")

        try:
            await self.finalizer.finalize(
                subscription_id,
                FinalizeRequest(
                    is_initial_payment=is_initial,
                    idempotency_key=f"webhook_invoice_{invoice_id}",
                    invoice_amount=amount,
                    invoice_reference=invoice_id,
                    currency=str(invoice.get("currency") or "usd").upper(),
                    identity=identity,
                    gateway_subscription=ctx.gateway_subscription if ctx else None,
                    customer_id=shared.object_id(invoice.get("customer")),
                    source="invoice",
                ),
            )
        except MissingIdentityError as exc:
            if not is_initial:
                raise
            shared.logger.warning(
                "invoice_finalization_deferred",
                reason=exc.message,
                billing_reason=billing_reason,
            )

        await self.tax.reconcile(
            invoice,
            subscription_id,
            identity=identity,
            gateway_subscription=ctx.gateway_subscription if ctx else None,
        )
        return PROCESSED

    async def _handle_invoice_failed(self, invoice: dict[str, Any]) -> str:
        bind_event_context(invoice_id=invoice.get("id"))
        subscription_id = shared.subscription_id_from_invoice(invoice)
        if not subscription_id:
            return IGNORED
        bind_event_context(subscription_id=subscription_id)
        await self.states.mark_past_due(subscription_id)
        return PROCESSED

    async def _handle_subscription_deleted(self, remote: dict[str, Any]) -> str:
        subscription_id = str(remote.get("id") or "")
        bind_event_context(subscription_id=subscription_id)
        cancelled_at = shared.from_timestamp(
            remote.get("canceled_at") or remote.get("ended_at")
        )
        await self.states.mark_cancelled(subscription_id, cancelled_at)
        return PROCESSED

    async def _handle_subscription_updated(self, remote: dict[str, Any]) -> str:
        bind_event_context(subscription_id=remote.get("id"))
        await self.states.apply_remote_update(remote)
        return PROCESSED

    async def _handle_invoice_upcoming(self, invoice: dict[str, Any]) -> str:
        subscription_id = shared.subscription_id_from_invoice(invoice)
        bind_event_context(subscription_id=subscription_id)
        if not subscription_id:
            return IGNORED

        subscription = await self.store.find_subscription(subscription_id)
        if subscription is None:
            shared.logger.warning("upcoming_invoice_subscription_not_found")
            return PROCESSED
        subscriber = await self.store.find_subscriber(subscription.subscriber_id)
        plan = await self.store.find_plan(subscription.plan_id)
        if subscriber is None or plan is None:
            shared.logger.warning(
                "upcoming_invoice_recipient_not_found",
                has_subscriber=subscriber is not None,
                has_plan=plan is not None,
            )
            return PROCESSED

        await self.notifier.send_renewal_reminder(invoice, subscription, subscriber, plan)
        return PROCESSED

    async def _expanded_invoice(
        self, invoice_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Tax fields are often only populated on the expanded invoice."""
        try:
            return await self.gateway.retrieve_invoice(
                invoice_id, expand=INVOICE_TAX_EXPANSIONS
            )
        except GatewayLookupError as exc:
            shared.logger.warning("invoice_refetch_failed", error=str(exc))
            return payload


def _invoice_metadata(invoice: dict[str, Any]) -> dict[str, Any]:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    metadata: dict[str, Any] = dict(details.get("metadata") or {})
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        metadata.update(
            {k: v for k, v in (lines[0].get("metadata") or {}).items() if v}
        )
    metadata.update({k: v for k, v in (invoice.get("metadata") or {}).items() if v})
    return metadata
