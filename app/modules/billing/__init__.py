from app.modules.billing.api.v1.billing import router
from app.modules.billing.domain.billing import (
    EventAuthenticator,
    IngressGate,
    StripeWebhookRouter,
)

__all__ = [
    "router",
    "EventAuthenticator",
    "IngressGate",
    "StripeWebhookRouter",
]
