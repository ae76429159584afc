"""Stripe API client implementation."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

import httpx

from app.shared.core.exceptions import GatewayLookupError

from . import stripe_shared as shared


class PaymentGateway(Protocol):
    """Remote operations the reconciliation engine needs from the gateway."""

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    async def retrieve_invoice(
        self, invoice_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]: ...

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]: ...

    async def retrieve_payment_link(self, link_id: str) -> dict[str, Any]: ...

    async def retrieve_checkout_session(
        self, session_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]: ...

    async def retrieve_charge(
        self, charge_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]: ...

    async def retrieve_balance_transaction(
        self, balance_transaction_id: str
    ) -> dict[str, Any]: ...

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> dict[str, Any]: ...

    async def list_checkout_sessions(
        self, customer_id: str, limit: int = 5
    ) -> list[dict[str, Any]]: ...


class StripeClient:
    """Async wrapper for Stripe REST operations."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        key = secret_key or shared.settings.STRIPE_SECRET_KEY
        if not key:
            raise GatewayLookupError(
                "STRIPE_SECRET_KEY not configured", code="gateway_not_configured"
            )
        self.base_url = (base_url or shared.settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout or shared.settings.STRIPE_TIMEOUT_SECONDS
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {key}",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[list[tuple[str, str]]] = None,
        data: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        from app.shared.core.http import get_http_client

        client = get_http_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint}",
                headers=self.headers,
                params=params,
                data=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            shared.logger.error(
                "stripe_api_error",
                endpoint=endpoint,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise GatewayLookupError(
                f"Stripe request failed: {endpoint}",
                details={"status_code": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            shared.logger.error("stripe_api_error", endpoint=endpoint, error=str(exc))
            raise GatewayLookupError(f"Stripe request failed: {endpoint}") from exc

        if not isinstance(payload, dict):
            raise GatewayLookupError("Invalid Stripe response payload type")
        return payload

    @staticmethod
    def _expand(expand: Sequence[str]) -> Optional[list[tuple[str, str]]]:
        if not expand:
            return None
        return [("expand[]", field) for field in expand]

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request("GET", f"subscriptions/{subscription_id}")

    async def retrieve_invoice(
        self, invoice_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"invoices/{invoice_id}", params=self._expand(expand)
        )

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._request("GET", f"customers/{customer_id}")

    async def retrieve_payment_link(self, link_id: str) -> dict[str, Any]:
        return await self._request("GET", f"payment_links/{link_id}")

    async def retrieve_checkout_session(
        self, session_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"checkout/sessions/{session_id}", params=self._expand(expand)
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return await self._request("GET", f"payment_intents/{payment_intent_id}")

    async def retrieve_charge(
        self, charge_id: str, expand: Sequence[str] = ()
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"charges/{charge_id}", params=self._expand(expand)
        )

    async def retrieve_balance_transaction(
        self, balance_transaction_id: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"balance_transactions/{balance_transaction_id}"
        )

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> dict[str, Any]:
        """Merge keys into the subscription's metadata (Stripe merges per key)."""
        data = {f"metadata[{key}]": str(value) for key, value in metadata.items()}
        return await self._request("POST", f"subscriptions/{subscription_id}", data=data)

    async def list_checkout_sessions(
        self, customer_id: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        payload = await self._request(
            "GET",
            "checkout/sessions",
            params=[("customer", customer_id), ("limit", str(limit))],
        )
        sessions = payload.get("data") or []
        return [session for session in sessions if isinstance(session, dict)]
