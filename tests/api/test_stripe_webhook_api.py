"""
End-to-end tests for the billing API: ingress checks, signature
verification, dispatch and the internal job endpoint.
"""
import json
import time
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from app.models.billing import Payment, Subscription
from app.modules.billing.api.v1.billing import get_ingress_gate
from app.modules.billing.domain.billing.ingress import IngressGate
from app.shared.core.rate_limit import WebhookRateLimiter
from tests.utils import (
    CUSTOMER_ID,
    PLAN_ID,
    SUBSCRIBER_ID,
    SUBSCRIPTION_ID,
    make_event,
    make_gateway_subscription,
    sign_payload,
)

WEBHOOK_URL = "/api/v1/billing/stripe/webhook"
JOBS_URL = "/api/v1/billing/jobs/process"
WEBHOOK_SECRET = "whsec_test_secret"
JOB_SECRET = "internal-job-secret-for-tests"


def _signed(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(event).encode()
    headers = {
        "content-type": "application/json",
        "stripe-signature": sign_payload(body, secret, int(time.time())),
    }
    return body, headers


def _checkout_event() -> dict:
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_api",
            "mode": "subscription",
            "subscription": SUBSCRIPTION_ID,
            "customer": CUSTOMER_ID,
            "amount_total": 4900,
            "currency": "usd",
            "metadata": {"studentId": SUBSCRIBER_ID, "packageId": PLAN_ID},
        },
    )


@pytest.mark.asyncio
async def test_signed_checkout_event_is_finalized(async_client, db, catalog, gateway):
    gateway.subscriptions[SUBSCRIPTION_ID] = make_gateway_subscription()
    body, headers = _signed(_checkout_event())

    response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "processed"}
    assert (await db.execute(select(Subscription))).scalar_one().subscriber_id == SUBSCRIBER_ID
    assert (await db.execute(select(Payment))).scalar_one().amount == 49


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(async_client):
    body, headers = _signed(make_event("customer.created", {"id": "cus_1"}))

    response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(async_client, db):
    body, headers = _signed(_checkout_event(), secret="whsec_wrong")

    response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "invalid_signature"
    assert error["id"]
    assert (await db.execute(select(Subscription))).first() is None


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(async_client):
    response = await async_client.post(
        WEBHOOK_URL, content=b"{}", headers={"content-type": "application/json"}
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "missing_signature"


@pytest.mark.asyncio
async def test_wrong_content_type_is_415(async_client):
    response = await async_client.post(
        WEBHOOK_URL, content=b"<xml/>", headers={"content-type": "application/xml"}
    )
    assert response.status_code == 415


@pytest.mark.asyncio
async def test_oversized_body_is_413(app, async_client):
    app.dependency_overrides[get_ingress_gate] = lambda: IngressGate(
        limiter=WebhookRateLimiter("100/minute"), max_body_bytes=16
    )
    body, headers = _signed(_checkout_event())

    response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 413


@pytest.mark.asyncio
async def test_rate_limited_source_gets_retry_after(app, async_client):
    gate = IngressGate(limiter=WebhookRateLimiter("2/minute"), rate_limit_enabled=True)
    app.dependency_overrides[get_ingress_gate] = lambda: gate
    body, headers = _signed(make_event("customer.created", {"id": "cus_1"}))
    headers["x-forwarded-for"] = "203.0.113.7"

    statuses = []
    for _ in range(3):
        response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)
        statuses.append(response.status_code)

    assert statuses == [200, 200, 429]
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["error"]["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_renewal_without_identity_asks_for_redelivery(async_client, catalog, gateway):
    gateway.subscriptions[SUBSCRIPTION_ID] = make_gateway_subscription()
    invoice = {
        "id": "in_renew",
        "subscription": SUBSCRIPTION_ID,
        "customer": CUSTOMER_ID,
        "billing_reason": "subscription_cycle",
        "amount_paid": 4900,
        "total": 4900,
        "currency": "usd",
    }
    body, headers = _signed(make_event("invoice.payment_succeeded", invoice))

    response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "missing_identity"


@pytest.mark.asyncio
async def test_job_endpoint_requires_secret(async_client):
    response = await async_client.post(JOBS_URL)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "http_error"

    response = await async_client.post(JOBS_URL, headers={"X-Internal-Job-Secret": "nope"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_job_endpoint_disabled_without_secret(async_client):
    settings = MagicMock(INTERNAL_JOB_SECRET=None)
    with patch("app.modules.billing.api.v1.billing.get_settings", return_value=settings):
        response = await async_client.post(
            JOBS_URL, headers={"X-Internal-Job-Secret": JOB_SECRET}
        )
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_job_endpoint_processes_due_jobs(async_client):
    response = await async_client.post(
        JOBS_URL, params={"limit": 5}, headers={"X-Internal-Job-Secret": JOB_SECRET}
    )
    assert response.status_code == 200
    assert response.json() == {"processed": 0, "succeeded": 0, "failed": 0, "errors": []}


@pytest.mark.asyncio
async def test_liveness_and_root(async_client):
    live = await async_client.get("/health/live")
    root = await async_client.get("/")

    assert live.json() == {"status": "healthy"}
    assert root.json()["status"] == "ok"
    assert "X-Request-ID" in live.headers
