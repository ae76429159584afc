import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.models.billing import Subscriber, Subscription, SubscriptionPlan
from app.modules.billing.domain.billing.renewal_notifier import (
    ReminderChannel,
    RenewalReminderDispatcher,
    render_renewal_reminder,
    strip_markdown,
)

NOW = datetime(2026, 1, 25, tzinfo=timezone.utc)
RENEWAL = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _subscriber(**fields) -> Subscriber:
    values = {
        "id": "stu_001",
        "name": "Amina",
        "email": "amina@example.test",
        "chat_id": "555001",
        "country": "Ethiopia",
    }
    values.update(fields)
    return Subscriber(**values)


def _plan() -> SubscriptionPlan:
    return SubscriptionPlan(
        id="pkg_monthly",
        name="Monthly Tutoring",
        price=Decimal("49.00"),
        currency="USD",
        duration_months=1,
    )


def _subscription() -> Subscription:
    return Subscription(
        external_subscription_id="sub_123",
        subscriber_id="stu_001",
        plan_id="pkg_monthly",
        next_billing_date=RENEWAL,
    )


def _dispatcher(handler) -> RenewalReminderDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RenewalReminderDispatcher(http_client=client)


class TestRender:
    def test_reminder_text(self):
        text = render_renewal_reminder(
            "Amina", "Monthly Tutoring", Decimal("49"), "USD", RENEWAL, 1, now=NOW
        )
        assert "*Subscription Renewal Reminder*" in text
        assert "Hello Amina," in text
        assert "renew automatically in 7 days" in text
        assert "- Amount: $49.00" in text
        assert "- Renewal date: February 1, 2026" in text
        assert "- Duration: 1 month" in text

    def test_unknown_date_and_currency(self):
        text = render_renewal_reminder(
            None, "Quarterly", Decimal("120"), "XYZ", None, 3, now=NOW
        )
        assert "Hello there," in text
        assert "Renewal date: soon" in text
        assert "120.00 XYZ" in text
        assert "3 months" in text

    def test_single_day_is_singular(self):
        text = render_renewal_reminder(
            "Amina", "Monthly", Decimal("1"), "EUR", datetime(2026, 1, 26, tzinfo=timezone.utc), 1, now=NOW
        )
        assert "in 1 day." in text
        assert "€1.00" in text

    def test_strip_markdown(self):
        assert strip_markdown("*Bold* _it_ `code`") == "Bold it code"


class TestChannelSelection:
    def test_email_countries_use_email(self):
        dispatcher = RenewalReminderDispatcher(http_client=httpx.AsyncClient())
        assert dispatcher.select_channel(_subscriber(country="usa")) is ReminderChannel.EMAIL

    def test_other_countries_use_chat(self):
        dispatcher = RenewalReminderDispatcher(http_client=httpx.AsyncClient())
        assert dispatcher.select_channel(_subscriber()) is ReminderChannel.TELEGRAM

    def test_no_chat_and_no_email_country(self):
        dispatcher = RenewalReminderDispatcher(http_client=httpx.AsyncClient())
        assert dispatcher.select_channel(_subscriber(chat_id=None)) is None


@pytest.mark.asyncio
async def test_telegram_reminder_posts_markdown():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    channel = await _dispatcher(handler).send_renewal_reminder(
        {"amount_due": 4900, "currency": "usd"}, _subscription(), _subscriber(), _plan()
    )

    assert channel is ReminderChannel.TELEGRAM
    assert requests[0].url.path == "/bot123:test-token/sendMessage"
    body = json.loads(requests[0].content)
    assert body["chat_id"] == "555001"
    assert body["parse_mode"] == "Markdown"
    assert "$49.00" in body["text"]


@pytest.mark.asyncio
async def test_email_reminder_sends_plain_text():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    channel = await _dispatcher(handler).send_renewal_reminder(
        {"amount_due": 4900, "currency": "usd"},
        _subscription(),
        _subscriber(country="USA"),
        _plan(),
    )

    assert channel is ReminderChannel.EMAIL
    assert str(requests[0].url) == "https://mail.example.test/send"
    body = json.loads(requests[0].content)
    assert body["to"] == "amina@example.test"
    assert "*" not in body["text"]


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    channel = await _dispatcher(handler).send_renewal_reminder(
        {"amount_due": 4900}, _subscription(), _subscriber(), _plan()
    )

    assert channel is None


@pytest.mark.asyncio
async def test_missing_bot_token_skips_chat():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    dispatcher = _dispatcher(handler)
    dispatcher.telegram_token = None

    channel = await dispatcher.send_renewal_reminder(
        {"amount_due": 4900}, _subscription(), _subscriber(), _plan()
    )

    assert channel is None
