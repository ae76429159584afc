"""Deferred tax recheck for invoices whose tax was not yet computed."""

from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob
from app.modules.billing.domain.billing.record_store import RecordStore
from app.modules.billing.domain.billing.stripe_client_impl import StripeClient
from app.modules.billing.domain.billing.tax_reconciliation import (
    TaxReconciliationEngine,
)
from app.modules.billing.domain.jobs.handlers.base import BaseJobHandler
from app.shared.core.logging import bind_event_context

logger = structlog.get_logger()


class TaxRecheckHandler(BaseJobHandler):
    """Re-fetches the invoice and records tax if it has appeared since the webhook."""

    gateway_factory = StripeClient

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        payload = job.payload or {}
        invoice_id = payload["invoice_id"]
        subscription_id = payload.get("subscription_id") or ""
        bind_event_context(invoice_id=invoice_id, subscription_id=subscription_id)

        engine = TaxReconciliationEngine(RecordStore(db), self.gateway_factory())
        result = await engine.recheck(invoice_id, subscription_id)

        logger.info(
            "tax_recheck_completed",
            delay_seconds=payload.get("delay_seconds"),
            recorded=result.created,
            already_recorded=result.already_recorded,
        )
        return {
            "invoice_id": invoice_id,
            "recorded": result.created,
            "already_recorded": result.already_recorded,
            "tax_amount": str(result.extraction.amount),
            "method": result.extraction.method.value,
        }
