"""Stripe webhook signature verification and event envelope parsing."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from app.shared.core.exceptions import SecurityError
from app.shared.core.ops_metrics import WEBHOOK_REJECTIONS_TOTAL

from . import stripe_shared as shared


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    INVOICE_UPCOMING = "invoice.upcoming"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["EventKind"]:
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class EventEnvelope:
    """One verified gateway notification."""

    id: str
    type: str
    kind: Optional[EventKind]
    payload: dict[str, Any]
    created: Optional[int] = None
    livemode: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def _signature_error(message: str, code: str = "invalid_signature") -> SecurityError:
    WEBHOOK_REJECTIONS_TOTAL.labels(reason="signature").inc()
    return SecurityError(message, code=code, status_code=401)


class EventAuthenticator:
    """
    Verifies the `Stripe-Signature` header and deserializes the event.

    Header format: `t=<unix>,v1=<hex>[,v1=<hex>...]`; the signed payload is
    `"{t}.{body}"` under HMAC-SHA256 with the endpoint secret.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        allow_unsigned: Optional[bool] = None,
        is_production: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = shared.settings
        self.secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS
        )
        self.allow_unsigned = (
            allow_unsigned if allow_unsigned is not None else settings.ALLOW_UNSIGNED_WEBHOOKS
        )
        self.is_production = (
            is_production if is_production is not None else settings.is_production
        )
        self.clock = clock

    def authenticate(self, body: bytes, signature: Optional[str]) -> EventEnvelope:
        if self.secret:
            self.verify_signature(body, signature or "")
        else:
            self._require_insecure_mode()
        return self.parse_event(body)

    def _require_insecure_mode(self) -> None:
        if self.is_production:
            shared.logger.critical("stripe_webhook_secret_missing_in_production")
            raise _signature_error(
                "Webhook secret required in production",
                code="webhook_secret_required",
            )
        if not self.allow_unsigned:
            shared.logger.error("stripe_webhook_secret_not_configured")
            raise _signature_error(
                "Webhook secret not configured",
                code="webhook_secret_required",
            )
        shared.logger.critical(
            "stripe_webhook_signature_verification_skipped",
            msg="ALLOW_UNSIGNED_WEBHOOKS is enabled. NOT SECURE for production!",
        )

    def verify_signature(self, payload: bytes, signature: str) -> None:
        """Verify a Stripe webhook signature; raises SecurityError on any mismatch."""
        if not signature:
            shared.logger.warning("stripe_webhook_missing_signature")
            raise _signature_error(
                "Missing stripe-signature header", code="missing_signature"
            )

        timestamp: Optional[int] = None
        candidates: list[str] = []
        for item in signature.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    timestamp = None
            elif key == "v1" and value:
                candidates.append(value)

        if timestamp is None or not candidates:
            shared.logger.warning("stripe_webhook_malformed_signature_header")
            raise _signature_error("Invalid webhook signature format")

        if self.tolerance_seconds > 0 and abs(self.clock() - timestamp) > self.tolerance_seconds:
            shared.logger.warning(
                "stripe_webhook_signature_expired",
                signed_at=timestamp,
                tolerance_seconds=self.tolerance_seconds,
            )
            raise _signature_error("Webhook signature timestamp outside tolerance")

        signed_payload = str(timestamp).encode() + b"." + payload
        expected = hmac.new(
            str(self.secret).encode(), signed_payload, hashlib.sha256
        ).hexdigest()

        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            shared.logger.warning(
                "stripe_webhook_invalid_signature",
                provided_sig=candidates[0][:8] + "...",
            )
            raise _signature_error("Webhook signature doesn't match")

    def parse_event(self, body: bytes) -> EventEnvelope:
        try:
            event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            shared.logger.error("stripe_webhook_invalid_json", payload_len=len(body))
            raise SecurityError(
                "Invalid JSON payload", code="invalid_payload", status_code=400
            ) from exc

        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise SecurityError(
                "Malformed event envelope", code="invalid_payload", status_code=400
            )
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise SecurityError(
                "Event envelope has no data object",
                code="invalid_payload",
                status_code=400,
            )

        return EventEnvelope(
            id=str(event.get("id") or ""),
            type=event["type"],
            kind=EventKind.parse(event["type"]),
            payload=obj,
            created=event.get("created"),
            livemode=bool(event.get("livemode", False)),
            raw=event,
        )
