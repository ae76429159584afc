from unittest.mock import patch

import httpx
import pytest

from app.modules.billing.domain.billing.stripe_client_impl import StripeClient
from app.shared.core.exceptions import GatewayLookupError

CLIENT_GETTER = "app.shared.core.http.get_http_client"


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_missing_secret_key_is_rejected():
    with patch(
        "app.modules.billing.domain.billing.stripe_shared.settings.STRIPE_SECRET_KEY",
        None,
    ):
        with pytest.raises(GatewayLookupError) as exc_info:
            StripeClient()
    assert exc_info.value.code == "gateway_not_configured"


@pytest.mark.asyncio
async def test_retrieve_invoice_sends_auth_and_expansions():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "in_1", "object": "invoice"})

    client = StripeClient(secret_key="sk_test_unit", base_url="https://stripe.test/v1")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        invoice = await client.retrieve_invoice("in_1", expand=("customer", "charge"))

    assert invoice["id"] == "in_1"
    request = seen[0]
    assert request.url.path == "/v1/invoices/in_1"
    assert request.url.params.get_list("expand[]") == ["customer", "charge"]
    assert request.headers["Authorization"] == "Bearer sk_test_unit"


@pytest.mark.asyncio
async def test_metadata_update_is_form_encoded():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "sub_1", "metadata": {"packageId": "pkg"}})

    client = StripeClient(secret_key="sk_test_unit", base_url="https://stripe.test/v1")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        await client.update_subscription_metadata("sub_1", {"packageId": "pkg"})

    assert seen[0].method == "POST"
    assert seen[0].content == b"metadata%5BpackageId%5D=pkg"


@pytest.mark.asyncio
async def test_list_checkout_sessions_unwraps_data():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["customer"] == "cus_1"
        return httpx.Response(200, json={"data": [{"id": "cs_1"}, "junk"]})

    client = StripeClient(secret_key="sk_test_unit")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        sessions = await client.list_checkout_sessions("cus_1")

    assert sessions == [{"id": "cs_1"}]


@pytest.mark.asyncio
async def test_http_error_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"message": "No such subscription"}})

    client = StripeClient(secret_key="sk_test_unit")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        with pytest.raises(GatewayLookupError) as exc_info:
            await client.retrieve_subscription("sub_missing")

    assert exc_info.value.details == {"status_code": 404}
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_transport_error_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = StripeClient(secret_key="sk_test_unit")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        with pytest.raises(GatewayLookupError):
            await client.retrieve_customer("cus_1")


@pytest.mark.asyncio
async def test_non_object_payload_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["not", "an", "object"])

    client = StripeClient(secret_key="sk_test_unit")
    with patch(CLIENT_GETTER, return_value=_mock_client(handler)):
        with pytest.raises(GatewayLookupError):
            await client.retrieve_charge("ch_1")
