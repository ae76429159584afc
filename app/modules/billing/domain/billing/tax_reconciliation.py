"""
Tax reconciliation for paid invoices.

The gateway computes tax asynchronously and reports it in several places
depending on API version and whether the tax is inclusive. Extraction walks
a fixed fallback chain; the first non-zero figure wins:

    1. per-line `tax_amounts`            (inclusive tax lands here)
    2. `invoice.tax`
    3. `total_details.amount_tax`
    4. `total_details.breakdown.tax_details`
    5. regional estimate (automatic tax only, bounded by TAX_ESTIMATE_MAX_RATIO)

If nothing is found while automatic tax is enabled, the originating checkout
session is consulted, and finally deferred rechecks re-run methods 1-4.
A Tax Transaction is unique per invoice id and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from app.models.billing import Subscription, TaxStatus, TaxTransaction
from app.shared.core.exceptions import GatewayLookupError
from app.shared.core.ops_metrics import TAX_RECONCILIATION_TOTAL, TAX_RECHECKS_TOTAL

from . import stripe_shared as shared
from .metadata_resolver import ResolvedIdentity
from .record_store import RecordStore
from .stripe_client_impl import PaymentGateway
from .tax_rates import StaticRegionalTaxRates, TaxRateProvider

ZERO = Decimal("0")

INVOICE_TAX_EXPANSIONS: tuple[str, ...] = (
    "customer",
    "charge",
    "payment_intent",
)


class TaxMethod(str, Enum):
    LINE_ITEMS = "line_items"
    INVOICE_TAX = "invoice_tax"
    TOTAL_DETAILS = "total_details"
    BREAKDOWN = "breakdown"
    ESTIMATE = "estimate"
    CHECKOUT_SESSION = "checkout_session"
    NONE = "none"


@dataclass(frozen=True)
class TaxExtraction:
    amount: Decimal
    method: TaxMethod
    estimated: bool = False

    @property
    def found(self) -> bool:
        return self.amount > ZERO


NO_TAX = TaxExtraction(ZERO, TaxMethod.NONE)


class RecheckScheduler(Protocol):
    async def schedule(
        self, invoice_id: str, subscription_id: str, delays: Sequence[int]
    ) -> int:
        """Enqueue deferred rechecks; returns the number newly scheduled."""
        ...


def automatic_tax_enabled(invoice: dict[str, Any]) -> bool:
    return bool((invoice.get("automatic_tax") or {}).get("enabled"))


def _tax_details(invoice: dict[str, Any]) -> list[dict[str, Any]]:
    breakdown = (invoice.get("total_details") or {}).get("breakdown") or {}
    details = breakdown.get("tax_details") or []
    return [detail for detail in details if isinstance(detail, dict)]


def extract_reported_tax(invoice: dict[str, Any]) -> TaxExtraction:
    """Methods 1-4: tax the gateway has actually reported for the invoice."""
    line_total = ZERO
    for line in (invoice.get("lines") or {}).get("data") or []:
        for item in line.get("tax_amounts") or []:
            line_total += shared.from_minor_units(item.get("amount") or 0)
    if line_total > ZERO:
        return TaxExtraction(line_total, TaxMethod.LINE_ITEMS)

    direct = shared.from_minor_units(invoice.get("tax") or 0)
    if direct > ZERO:
        return TaxExtraction(direct, TaxMethod.INVOICE_TAX)

    aggregate = shared.from_minor_units(
        (invoice.get("total_details") or {}).get("amount_tax") or 0
    )
    if aggregate > ZERO:
        return TaxExtraction(aggregate, TaxMethod.TOTAL_DETAILS)

    breakdown_total = sum(
        (shared.from_minor_units(detail.get("amount") or 0) for detail in _tax_details(invoice)),
        ZERO,
    )
    if breakdown_total > ZERO:
        return TaxExtraction(breakdown_total, TaxMethod.BREAKDOWN)

    return NO_TAX


def estimate_inclusive_tax(
    total: Decimal, rate: Decimal, max_ratio: Decimal
) -> Decimal:
    """
    Back-compute inclusive tax: base = total / (1 + rate), tax = total - base.
    Returns zero when the estimate falls outside (0, max_ratio * total).
    """
    if total <= ZERO or rate <= ZERO:
        return ZERO
    base = total / (Decimal("1") + rate)
    tax = shared.quantize(total - base)
    if tax <= ZERO or tax >= total * max_ratio:
        shared.logger.warning(
            "tax_estimate_rejected",
            estimated_tax=str(tax),
            total=str(total),
            max_ratio=str(max_ratio),
        )
        return ZERO
    return tax


def build_tax_breakdown(
    invoice: dict[str, Any], tax: Decimal
) -> list[dict[str, Any]]:
    details = _tax_details(invoice)
    if automatic_tax_enabled(invoice) and details:
        return [
            {
                "jurisdiction": detail.get("jurisdiction"),
                "tax_type": detail.get("type"),
                "rate": (
                    float(Decimal(str(detail["rate"])) / 100)
                    if detail.get("rate") is not None
                    else None
                ),
                "amount": float(shared.from_minor_units(detail.get("amount") or 0)),
                "taxable_amount": float(
                    shared.from_minor_units(detail.get("taxable_amount") or 0)
                ),
            }
            for detail in details
        ]
    subtotal = shared.from_minor_units(invoice.get("subtotal") or 0)
    return [
        {
            "jurisdiction": None,
            "tax_type": "sales_tax",
            "rate": float(round(tax / subtotal, 6)) if subtotal > ZERO else None,
            "amount": float(tax),
            "taxable_amount": float(subtotal),
        }
    ]


@dataclass
class TaxReconciliationResult:
    invoice_id: str
    extraction: TaxExtraction
    transaction: Optional[TaxTransaction] = None
    created: bool = False
    rechecks_scheduled: int = 0
    already_recorded: bool = False


class TaxReconciliationEngine:
    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        rechecks: Optional[RecheckScheduler] = None,
        rates: Optional[TaxRateProvider] = None,
    ):
        settings = shared.settings
        self.store = store
        self.gateway = gateway
        self.rechecks = rechecks
        self.rates = rates or StaticRegionalTaxRates()
        self.max_ratio = Decimal(str(settings.TAX_ESTIMATE_MAX_RATIO))
        self.recheck_delays = list(settings.TAX_RECHECK_DELAYS_SECONDS)
        self.fee_percent = Decimal(str(settings.GATEWAY_FEE_PERCENT))
        self.fixed_fees = {
            currency.upper(): Decimal(str(fee))
            for currency, fee in settings.GATEWAY_FIXED_FEES.items()
        }
        self.default_fixed_fee = Decimal(str(settings.GATEWAY_DEFAULT_FIXED_FEE))

    async def reconcile(
        self,
        invoice: dict[str, Any],
        external_subscription_id: str,
        identity: Optional[ResolvedIdentity] = None,
        gateway_subscription: Optional[dict[str, Any]] = None,
    ) -> TaxReconciliationResult:
        invoice_id = str(invoice.get("id") or "")
        existing = await self.store.find_tax_transaction(invoice_id)
        if existing is not None:
            shared.logger.info("tax_transaction_already_recorded", invoice_id=invoice_id)
            return TaxReconciliationResult(
                invoice_id, NO_TAX, transaction=existing, already_recorded=True
            )

        extraction = extract_reported_tax(invoice)
        total = shared.from_minor_units(invoice.get("total") or 0)
        auto_tax = automatic_tax_enabled(invoice)

        if not extraction.found and auto_tax and total > ZERO:
            extraction = await self._estimate(invoice, total)

        if not extraction.found and auto_tax:
            extraction = await self._from_checkout_session(
                invoice, external_subscription_id, total, gateway_subscription
            )

        if extraction.found:
            transaction, created = await self.record(
                invoice, external_subscription_id, extraction, identity
            )
            return TaxReconciliationResult(
                invoice_id, extraction, transaction=transaction, created=created
            )

        TAX_RECONCILIATION_TOTAL.labels(method=TaxMethod.NONE.value).inc()
        scheduled = 0
        if auto_tax and self.rechecks is not None:
            scheduled = await self.rechecks.schedule(
                invoice_id, external_subscription_id, self.recheck_delays
            )
            TAX_RECHECKS_TOTAL.labels(outcome="scheduled").inc(scheduled)
            shared.logger.info(
                "tax_recheck_scheduled",
                invoice_id=invoice_id,
                subscription_id=external_subscription_id,
                delays=self.recheck_delays,
                newly_scheduled=scheduled,
            )
        return TaxReconciliationResult(invoice_id, NO_TAX, rechecks_scheduled=scheduled)

    async def recheck(
        self, invoice_id: str, external_subscription_id: str
    ) -> TaxReconciliationResult:
        """Deferred recheck: re-fetch the invoice and re-run methods 1-4 only."""
        existing = await self.store.find_tax_transaction(invoice_id)
        if existing is not None:
            TAX_RECHECKS_TOTAL.labels(outcome="already_recorded").inc()
            return TaxReconciliationResult(
                invoice_id, NO_TAX, transaction=existing, already_recorded=True
            )

        invoice = await self.gateway.retrieve_invoice(
            invoice_id, expand=INVOICE_TAX_EXPANSIONS
        )
        extraction = extract_reported_tax(invoice)
        if not extraction.found:
            TAX_RECHECKS_TOTAL.labels(outcome="still_missing").inc()
            shared.logger.info("tax_recheck_still_missing", invoice_id=invoice_id)
            return TaxReconciliationResult(invoice_id, NO_TAX)

        transaction, created = await self.record(
            invoice, external_subscription_id, extraction
        )
        TAX_RECHECKS_TOTAL.labels(
            outcome="recorded" if created else "already_recorded"
        ).inc()
        return TaxReconciliationResult(
            invoice_id, extraction, transaction=transaction, created=created
        )

    async def record(
        self,
        invoice: dict[str, Any],
        external_subscription_id: str,
        extraction: TaxExtraction,
        identity: Optional[ResolvedIdentity] = None,
    ) -> tuple[TaxTransaction, bool]:
        invoice_id = str(invoice.get("id") or "")
        total = shared.from_minor_units(invoice.get("total") or 0)
        currency = str(invoice.get("currency") or "usd").upper()
        tax = shared.quantize(extraction.amount)
        fee = await self._processing_fee(invoice, total, currency)
        billing_address = await self._billing_address(invoice)
        subscription: Optional[Subscription] = await self.store.find_subscription(
            external_subscription_id
        )

        subscriber_id = subscription.subscriber_id if subscription else None
        plan_id = subscription.plan_id if subscription else None
        if identity is not None:
            subscriber_id = subscriber_id or identity.subscriber_id
            plan_id = plan_id or identity.plan_id

        transaction, created = await self.store.insert_tax_transaction(
            TaxTransaction(
                invoice_id=invoice_id,
                subscription_id=subscription.id if subscription else None,
                external_subscription_id=external_subscription_id,
                subscriber_id=subscriber_id,
                plan_id=plan_id,
                gateway_customer_id=shared.object_id(invoice.get("customer")),
                base_amount=shared.quantize(total - tax),
                tax_amount=tax,
                total_amount=total,
                processing_fee=fee,
                currency=currency,
                tax_breakdown=build_tax_breakdown(invoice, tax),
                billing_address=billing_address,
                calculation_id=(invoice.get("automatic_tax") or {}).get("calculation_id"),
                tax_status=(
                    TaxStatus.ESTIMATED.value
                    if extraction.estimated
                    else TaxStatus.CALCULATED.value
                ),
                method=extraction.method.value,
            )
        )
        if not created:
            return transaction, False

        if subscription is not None:
            await self.store.increment_subscription_tax_total(
                external_subscription_id, tax, billing_address
            )
        TAX_RECONCILIATION_TOTAL.labels(method=extraction.method.value).inc()
        shared.logger.info(
            "tax_transaction_recorded",
            invoice_id=invoice_id,
            subscription_id=external_subscription_id,
            tax_amount=str(tax),
            method=extraction.method.value,
            estimated=extraction.estimated,
            linked=subscription is not None,
        )
        return transaction, True

    # ---- estimation ----

    async def _estimate(self, invoice: dict[str, Any], total: Decimal) -> TaxExtraction:
        region = (invoice.get("customer_address") or {}).get("state")
        if not region:
            address = await self._customer_address(invoice.get("customer"))
            region = (address or {}).get("state")

        if region:
            rate = self.rates.rate_for(region)
            if rate is None:
                shared.logger.warning("tax_rate_not_found", region=region)
            else:
                tax = estimate_inclusive_tax(total, rate, self.max_ratio)
                if tax > ZERO:
                    return TaxExtraction(tax, TaxMethod.ESTIMATE, estimated=True)
        else:
            shared.logger.warning(
                "tax_estimate_missing_region", invoice_id=invoice.get("id")
            )

        # Exclusive tax that was never itemized shows up as total > subtotal.
        subtotal = shared.from_minor_units(invoice.get("subtotal") or 0)
        difference = total - subtotal
        if subtotal > ZERO and ZERO < difference < total * self.max_ratio:
            return TaxExtraction(difference, TaxMethod.ESTIMATE, estimated=True)
        return NO_TAX

    async def _from_checkout_session(
        self,
        invoice: dict[str, Any],
        external_subscription_id: str,
        total: Decimal,
        gateway_subscription: Optional[dict[str, Any]],
    ) -> TaxExtraction:
        session = await self._find_checkout_session(
            invoice, external_subscription_id, gateway_subscription
        )
        if session is None:
            return NO_TAX

        session_tax = shared.from_minor_units(
            (session.get("total_details") or {}).get("amount_tax") or 0
        )
        if session_tax > ZERO:
            return TaxExtraction(session_tax, TaxMethod.CHECKOUT_SESSION)

        details = session.get("customer_details") or {}
        region = (details.get("address") or {}).get("state")
        rate = self.rates.rate_for(region)
        if rate is not None:
            tax = estimate_inclusive_tax(total, rate, self.max_ratio)
            if tax > ZERO:
                return TaxExtraction(tax, TaxMethod.CHECKOUT_SESSION, estimated=True)
        return NO_TAX

    async def _find_checkout_session(
        self,
        invoice: dict[str, Any],
        external_subscription_id: str,
        gateway_subscription: Optional[dict[str, Any]],
    ) -> Optional[dict[str, Any]]:
        """Locate the session that started this subscription; best effort."""
        try:
            if gateway_subscription is None:
                gateway_subscription = await self.gateway.retrieve_subscription(
                    external_subscription_id
                )
            session_id = (gateway_subscription.get("metadata") or {}).get(
                shared.CHECKOUT_SESSION_KEY
            )

            if not session_id:
                payment_intent = invoice.get("payment_intent")
                if isinstance(payment_intent, str) and payment_intent:
                    payment_intent = await self.gateway.retrieve_payment_intent(
                        payment_intent
                    )
                if isinstance(payment_intent, dict):
                    session_id = (payment_intent.get("metadata") or {}).get(
                        "checkout_session_id"
                    )

            if session_id:
                return await self.gateway.retrieve_checkout_session(
                    session_id, expand=("total_details.breakdown",)
                )

            customer_id = shared.object_id(invoice.get("customer"))
            if customer_id:
                for session in await self.gateway.list_checkout_sessions(customer_id, limit=5):
                    if shared.object_id(session.get("subscription")) == external_subscription_id:
                        return session
        except GatewayLookupError as exc:
            shared.logger.warning(
                "tax_checkout_session_lookup_failed",
                invoice_id=invoice.get("id"),
                error=str(exc),
            )
        return None

    # ---- secondary lookups (never fatal) ----

    async def _customer_address(self, customer: Any) -> Optional[dict[str, Any]]:
        if isinstance(customer, dict) and "address" in customer:
            return customer.get("address")
        customer_id = shared.object_id(customer)
        if not customer_id:
            return None
        try:
            remote = await self.gateway.retrieve_customer(customer_id)
        except GatewayLookupError as exc:
            shared.logger.warning(
                "tax_customer_address_lookup_failed",
                customer_id=customer_id,
                error=str(exc),
            )
            return None
        if remote.get("deleted"):
            return None
        return remote.get("address")

    async def _billing_address(self, invoice: dict[str, Any]) -> Optional[dict[str, Any]]:
        address = invoice.get("customer_address")
        if address:
            return dict(address)
        customer_address = await self._customer_address(invoice.get("customer"))
        return dict(customer_address) if customer_address else None

    def approximate_fee(self, total: Decimal, currency: str) -> Decimal:
        fixed = self.fixed_fees.get(currency.upper(), self.default_fixed_fee)
        return shared.quantize(total * self.fee_percent + fixed)

    async def _processing_fee(
        self, invoice: dict[str, Any], total: Decimal, currency: str
    ) -> Decimal:
        """Authoritative fee from the balance transaction, else an approximation."""
        charge: Any = invoice.get("charge")
        if not charge and isinstance(invoice.get("payment_intent"), dict):
            charge = invoice["payment_intent"].get("latest_charge")
        try:
            if isinstance(charge, str) and charge:
                charge = await self.gateway.retrieve_charge(charge)
            balance_transaction: Any = (
                charge.get("balance_transaction") if isinstance(charge, dict) else None
            )
            if isinstance(balance_transaction, str) and balance_transaction:
                balance_transaction = await self.gateway.retrieve_balance_transaction(
                    balance_transaction
                )
            if isinstance(balance_transaction, dict) and balance_transaction.get("fee") is not None:
                return shared.from_minor_units(balance_transaction["fee"])
        except GatewayLookupError as exc:
            shared.logger.warning(
                "tax_processing_fee_lookup_failed",
                invoice_id=invoice.get("id"),
                error=str(exc),
            )
        return self.approximate_fee(total, currency)
