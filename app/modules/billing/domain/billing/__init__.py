"""Stripe payment-event reconciliation."""

from app.modules.billing.domain.billing.event_auth import (
    EventAuthenticator,
    EventEnvelope,
    EventKind,
)
from app.modules.billing.domain.billing.finalizer import IdempotentFinalizer
from app.modules.billing.domain.billing.ingress import IngressGate
from app.modules.billing.domain.billing.metadata_resolver import MetadataResolver
from app.modules.billing.domain.billing.record_store import RecordStore
from app.modules.billing.domain.billing.state_reconciler import (
    SubscriptionStateReconciler,
)
from app.modules.billing.domain.billing.stripe_client_impl import StripeClient
from app.modules.billing.domain.billing.tax_reconciliation import (
    TaxReconciliationEngine,
)
from app.modules.billing.domain.billing.webhook_router import StripeWebhookRouter

__all__ = [
    "EventAuthenticator",
    "EventEnvelope",
    "EventKind",
    "IdempotentFinalizer",
    "IngressGate",
    "MetadataResolver",
    "RecordStore",
    "StripeClient",
    "StripeWebhookRouter",
    "SubscriptionStateReconciler",
    "TaxReconciliationEngine",
]
