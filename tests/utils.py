"""Shared test doubles and payload builders for billing tests."""

import copy
from typing import Any, Dict, List, Optional, Sequence

from app.shared.core.exceptions import GatewayLookupError

PLAN_ID = "pkg_monthly"
PLAN_LINK = "https://buy.stripe.com/test_9AQ5lN0pX"
SUBSCRIBER_ID = "stu_001"
SUBSCRIPTION_ID = "sub_123"
CUSTOMER_ID = "cus_123"
PERIOD_START = 1_767_225_600  # 2026-01-01T00:00:00Z
PERIOD_END = 1_769_904_000  # 2026-02-01T00:00:00Z

# Top-level fields Stripe accepts in `expand[]` per resource; anything else is a 400.
EXPANDABLE_FIELDS = {
    "invoice": {
        "account_tax_ids",
        "charge",
        "customer",
        "default_payment_method",
        "default_source",
        "discounts",
        "latest_revision",
        "lines",
        "on_behalf_of",
        "payment_intent",
        "subscription",
        "test_clock",
    },
    "checkout_session": {"customer", "line_items", "payment_intent", "subscription", "total_details"},
    "charge": {"balance_transaction", "customer", "invoice", "payment_intent"},
}


class FakeStripeGateway:
    """
    In-memory stand-in for StripeClient.

    Objects are stored per resource; unknown ids and methods listed in
    `failing` raise GatewayLookupError like the real client.
    """

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.payment_links: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.payment_intents: Dict[str, Dict[str, Any]] = {}
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.balance_transactions: Dict[str, Dict[str, Any]] = {}
        self.failing: set[str] = set()
        self.calls: List[tuple[str, str]] = []
        self.metadata_updates: List[tuple[str, Dict[str, str]]] = []

    def _get(self, method: str, store: Dict[str, Dict[str, Any]], key: str) -> Dict[str, Any]:
        self.calls.append((method, key))
        if method in self.failing:
            raise GatewayLookupError(f"{method} failed")
        if key not in store:
            raise GatewayLookupError(
                f"No such object: {key}", details={"status_code": 404}
            )
        return copy.deepcopy(store[key])

    def _check_expand(self, resource: str, expand: Sequence[str]) -> None:
        for path in expand:
            if path.split(".")[0] not in EXPANDABLE_FIELDS[resource]:
                raise GatewayLookupError(
                    f"This property cannot be expanded ({path}).",
                    details={"status_code": 400},
                )

    def calls_to(self, method: str) -> List[str]:
        return [key for name, key in self.calls if name == method]

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._get("retrieve_subscription", self.subscriptions, subscription_id)

    async def retrieve_invoice(
        self, invoice_id: str, expand: Sequence[str] = ()
    ) -> Dict[str, Any]:
        self._check_expand("invoice", expand)
        return self._get("retrieve_invoice", self.invoices, invoice_id)

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return self._get("retrieve_customer", self.customers, customer_id)

    async def retrieve_payment_link(self, link_id: str) -> Dict[str, Any]:
        return self._get("retrieve_payment_link", self.payment_links, link_id)

    async def retrieve_checkout_session(
        self, session_id: str, expand: Sequence[str] = ()
    ) -> Dict[str, Any]:
        self._check_expand("checkout_session", expand)
        return self._get("retrieve_checkout_session", self.checkout_sessions, session_id)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._get("retrieve_payment_intent", self.payment_intents, payment_intent_id)

    async def retrieve_charge(
        self, charge_id: str, expand: Sequence[str] = ()
    ) -> Dict[str, Any]:
        self._check_expand("charge", expand)
        return self._get("retrieve_charge", self.charges, charge_id)

    async def retrieve_balance_transaction(
        self, balance_transaction_id: str
    ) -> Dict[str, Any]:
        return self._get(
            "retrieve_balance_transaction",
            self.balance_transactions,
            balance_transaction_id,
        )

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        self.calls.append(("update_subscription_metadata", subscription_id))
        if "update_subscription_metadata" in self.failing:
            raise GatewayLookupError("update_subscription_metadata failed")
        subscription = self.subscriptions.setdefault(
            subscription_id, {"id": subscription_id, "metadata": {}}
        )
        subscription.setdefault("metadata", {}).update(metadata)
        self.metadata_updates.append((subscription_id, dict(metadata)))
        return copy.deepcopy(subscription)

    async def list_checkout_sessions(
        self, customer_id: str, limit: int = 5
    ) -> List[Dict[str, Any]]:
        self.calls.append(("list_checkout_sessions", customer_id))
        if "list_checkout_sessions" in self.failing:
            raise GatewayLookupError("list_checkout_sessions failed")
        sessions = [
            copy.deepcopy(session)
            for session in self.checkout_sessions.values()
            if session.get("customer") == customer_id
        ]
        return sessions[:limit]


def make_gateway_subscription(
    subscription_id: str = SUBSCRIPTION_ID,
    metadata: Optional[Dict[str, str]] = None,
    status: str = "active",
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": CUSTOMER_ID,
        "status": status,
        "metadata": dict(metadata or {}),
        "cancel_at_period_end": False,
        "items": {
            "data": [
                {
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                }
            ]
        },
    }


def make_invoice(
    invoice_id: str = "in_001",
    subscription_id: str = SUBSCRIPTION_ID,
    total: int = 4900,
    billing_reason: str = "subscription_create",
    metadata: Optional[Dict[str, str]] = None,
    **fields: Any,
) -> Dict[str, Any]:
    invoice: Dict[str, Any] = {
        "id": invoice_id,
        "object": "invoice",
        "customer": CUSTOMER_ID,
        "subscription": subscription_id,
        "billing_reason": billing_reason,
        "currency": "usd",
        "total": total,
        "subtotal": total,
        "amount_paid": total,
        "amount_due": total,
        "metadata": dict(metadata or {}),
        "lines": {"data": []},
        "automatic_tax": {"enabled": False},
    }
    invoice.update(fields)
    return invoice


def sign_payload(body: bytes, secret: str, timestamp: int) -> str:
    """Build a `Stripe-Signature` header value for `body`."""
    import hashlib
    import hmac

    digest = hmac.new(
        secret.encode(), str(timestamp).encode() + b"." + body, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_001") -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1_767_225_600,
        "livemode": False,
        "data": {"object": obj},
    }
