"""
Billing API Endpoints

Provides:
- POST /billing/stripe/webhook - Stripe payment-event intake
- POST /billing/jobs/process - On-demand processing of due background jobs
"""

import secrets
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    JobProcessResponse,
    WebhookAck,
)
from app.modules.billing.domain.billing.event_auth import EventAuthenticator
from app.modules.billing.domain.billing.ingress import IngressGate, extract_client_ip
from app.modules.billing.domain.billing.stripe_client_impl import (
    PaymentGateway,
    StripeClient,
)
from app.modules.billing.domain.billing.webhook_router import StripeWebhookRouter
from app.modules.billing.domain.jobs.processor import JobProcessor
from app.shared.core.config import get_settings
from app.shared.core.error_governance import handle_exception
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


def get_ingress_gate() -> IngressGate:
    return IngressGate()


def get_event_authenticator() -> EventAuthenticator:
    return EventAuthenticator()


def get_payment_gateway() -> PaymentGateway:
    return StripeClient()


async def require_internal_job_secret(
    x_internal_job_secret: Optional[str] = Header(default=None),
) -> None:
    """Shared-secret guard for the job endpoint; unset secret disables it."""
    expected_secret = get_settings().INTERNAL_JOB_SECRET
    if not expected_secret:
        raise HTTPException(status_code=503, detail="Job processing endpoint is disabled")
    if not x_internal_job_secret or not secrets.compare_digest(
        x_internal_job_secret, expected_secret
    ):
        raise HTTPException(status_code=403, detail="Invalid secret")


@router.post("/stripe/webhook", response_model=WebhookAck)
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: IngressGate = Depends(get_ingress_gate),
    authenticator: EventAuthenticator = Depends(get_event_authenticator),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Any:
    """
    Admit, authenticate and dispatch one Stripe event.

    4xx answers are terminal for the gateway; 5xx answers make it re-deliver.
    """
    try:
        client_ip = extract_client_ip(
            request.headers,
            request.client.host if request.client else None,
            get_settings().TRUSTED_PROXY_HOPS,
        )
        await gate.admit_request(request.headers, client_ip)
        body = await gate.read_body(request.stream())
        envelope = authenticator.authenticate(
            body, request.headers.get("stripe-signature")
        )
        return await StripeWebhookRouter(db, gateway=gateway).process(envelope)
    except Exception as exc:  # noqa: BLE001 - every failure maps to a structured response
        return handle_exception(request, exc)


@router.post("/jobs/process", response_model=JobProcessResponse)
async def process_jobs(
    limit: int = 10,
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(require_internal_job_secret),
) -> Dict[str, Any]:
    """Run due background jobs (tax rechecks) synchronously."""
    results = await JobProcessor(db).process_pending_jobs(limit=max(1, min(limit, 100)))
    logger.info(
        "jobs_processed_on_demand",
        processed=results["processed"],
        failed=results["failed"],
    )
    return results


__all__ = ["router"]
