from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.models.billing import Payment, Subscription, SubscriptionStatus
from app.modules.billing.domain.billing import stripe_shared as shared
from app.modules.billing.domain.billing.finalizer import (
    FinalizeRequest,
    FinalizeResult,
    IdempotentFinalizer,
)
from app.modules.billing.domain.billing.metadata_resolver import ResolvedIdentity
from app.modules.billing.domain.billing.record_store import RecordStore
from app.shared.core.exceptions import BillingConflictError, MissingIdentityError
from tests.utils import (
    PERIOD_END,
    PERIOD_START,
    PLAN_ID,
    SUBSCRIBER_ID,
    SUBSCRIPTION_ID,
    make_gateway_subscription,
)

NEXT_PERIOD_END = PERIOD_END + 28 * 86400


def _identity(subscriber_id=SUBSCRIBER_ID, plan_id=PLAN_ID) -> ResolvedIdentity:
    return ResolvedIdentity(subscriber_id=subscriber_id, plan_id=plan_id)


def _initial(key: str = "webhook_session_cs_1", **overrides) -> FinalizeRequest:
    options = {
        "is_initial_payment": True,
        "idempotency_key": key,
        "invoice_amount": Decimal("49.00"),
        "identity": _identity(),
    }
    options.update(overrides)
    return FinalizeRequest(**options)


def _renewal(key: str = "webhook_invoice_in_002", **overrides) -> FinalizeRequest:
    options = {
        "is_initial_payment": False,
        "idempotency_key": key,
        "invoice_amount": Decimal("49.00"),
    }
    options.update(overrides)
    return FinalizeRequest(**options)


async def _count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def finalizer(db, gateway):
    gateway.subscriptions[SUBSCRIPTION_ID] = make_gateway_subscription()
    return IdempotentFinalizer(RecordStore(db), gateway)


@pytest.mark.asyncio
async def test_initial_payment_creates_active_subscription(db, catalog, finalizer):
    outcome = await finalizer.finalize(SUBSCRIPTION_ID, _initial())

    assert outcome.result is FinalizeResult.CREATED
    subscription = outcome.subscription
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert subscription.subscriber_id == SUBSCRIBER_ID
    assert shared.ensure_utc(subscription.start_date) == shared.from_timestamp(PERIOD_START)
    assert shared.ensure_utc(subscription.end_date) == shared.from_timestamp(PERIOD_END)
    assert outcome.payment.reason == "initial"
    assert outcome.payment.amount == Decimal("49.00")


@pytest.mark.asyncio
async def test_zero_amount_falls_back_to_plan_price(db, catalog, finalizer):
    outcome = await finalizer.finalize(
        SUBSCRIPTION_ID, _initial(invoice_amount=Decimal("0"))
    )
    assert outcome.payment.amount == Decimal("49.00")


@pytest.mark.asyncio
async def test_duplicate_initial_payment_is_a_no_op(db, catalog, finalizer):
    await finalizer.finalize(SUBSCRIPTION_ID, _initial())
    outcome = await finalizer.finalize(
        SUBSCRIPTION_ID, _initial(key="webhook_invoice_in_001")
    )

    assert outcome.result is FinalizeResult.DUPLICATE
    assert await _count(db, Subscription) == 1
    assert await _count(db, Payment) == 1


@pytest.mark.asyncio
async def test_period_defaults_to_plan_duration_without_gateway(db, catalog, gateway):
    finalizer = IdempotentFinalizer(RecordStore(db), gateway)

    outcome = await finalizer.finalize(SUBSCRIPTION_ID, _initial())

    start = shared.ensure_utc(outcome.subscription.start_date)
    end = shared.ensure_utc(outcome.subscription.end_date)
    assert 28 <= (end - start).days <= 31


@pytest.mark.asyncio
async def test_renewal_extends_period_once_per_key(db, catalog, gateway, finalizer):
    await finalizer.finalize(SUBSCRIPTION_ID, _initial())
    gateway.subscriptions[SUBSCRIPTION_ID]["items"]["data"][0].update(
        current_period_start=PERIOD_END, current_period_end=NEXT_PERIOD_END
    )

    renewed = await finalizer.finalize(SUBSCRIPTION_ID, _renewal())
    replayed = await finalizer.finalize(SUBSCRIPTION_ID, _renewal())

    assert renewed.result is FinalizeResult.RENEWED
    assert renewed.payment.reason == "renewal"
    assert shared.ensure_utc(renewed.subscription.end_date) == shared.from_timestamp(
        NEXT_PERIOD_END
    )
    assert replayed.result is FinalizeResult.DUPLICATE
    assert await _count(db, Payment) == 2


@pytest.mark.asyncio
async def test_renewal_reactivates_past_due(db, catalog, finalizer):
    store = finalizer.store
    await finalizer.finalize(SUBSCRIPTION_ID, _initial())
    await store.update_subscription(
        SUBSCRIPTION_ID, status=SubscriptionStatus.PAST_DUE.value
    )

    outcome = await finalizer.finalize(SUBSCRIPTION_ID, _renewal())

    assert outcome.subscription.status == SubscriptionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_renewal_without_gateway_period_extends_from_now(db, catalog, gateway, finalizer):
    await finalizer.finalize(SUBSCRIPTION_ID, _initial())
    gateway.failing.add("retrieve_subscription")

    outcome = await finalizer.finalize(SUBSCRIPTION_ID, _renewal())

    end = shared.ensure_utc(outcome.subscription.end_date)
    assert (end - datetime.now(timezone.utc)).days >= 27


@pytest.mark.asyncio
async def test_renewal_for_other_subscriber_conflicts(db, catalog, finalizer):
    await finalizer.finalize(SUBSCRIPTION_ID, _initial())

    with pytest.raises(BillingConflictError) as exc_info:
        await finalizer.finalize(
            SUBSCRIPTION_ID, _renewal(identity=_identity(subscriber_id="stu_999"))
        )

    assert exc_info.value.status_code == 409
    assert await _count(db, Payment) == 1


@pytest.mark.asyncio
async def test_incomplete_identity_creates_nothing(db, catalog, finalizer):
    with pytest.raises(MissingIdentityError) as exc_info:
        await finalizer.finalize(
            SUBSCRIPTION_ID, _initial(identity=_identity(subscriber_id=None))
        )

    assert exc_info.value.plan_id == PLAN_ID
    assert exc_info.value.details["has_subscriber_id"] is False
    assert await _count(db, Subscription) == 0
    assert await _count(db, Payment) == 0


@pytest.mark.asyncio
async def test_identity_read_from_gateway_metadata_when_not_supplied(db, catalog, gateway, finalizer):
    gateway.subscriptions[SUBSCRIPTION_ID]["metadata"] = {
        "studentId": SUBSCRIBER_ID,
        "packageId": PLAN_ID,
    }

    outcome = await finalizer.finalize(SUBSCRIPTION_ID, _initial(identity=None))

    assert outcome.result is FinalizeResult.CREATED


@pytest.mark.asyncio
async def test_unknown_plan_is_missing_identity(db, catalog, finalizer):
    with pytest.raises(MissingIdentityError):
        await finalizer.finalize(
            SUBSCRIPTION_ID, _initial(identity=_identity(plan_id="pkg_retired"))
        )
    assert await _count(db, Subscription) == 0
