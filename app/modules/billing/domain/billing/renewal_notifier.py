"""Renewal reminders for upcoming invoices (chat or e-mail by subscriber locale)."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from app.models.billing import Subscriber, Subscription, SubscriptionPlan
from app.shared.core.ops_metrics import NOTIFICATIONS_TOTAL

from . import stripe_shared as shared

_MARKDOWN_RE = re.compile(r"[*_`]")
CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "ETB": "ETB "}


class ReminderChannel(str, Enum):
    EMAIL = "email"
    TELEGRAM = "telegram"


def strip_markdown(text: str) -> str:
    return _MARKDOWN_RE.sub("", text)


def render_renewal_reminder(
    subscriber_name: Optional[str],
    plan_name: str,
    amount: Decimal,
    currency: str,
    renewal_date: Optional[datetime],
    duration_months: int,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    if renewal_date is not None:
        days = max(0, math.ceil((renewal_date - now).total_seconds() / 86400))
        renewal_text = f"{renewal_date:%B} {renewal_date.day}, {renewal_date.year}"
    else:
        days = 7
        renewal_text = "soon"

    symbol = CURRENCY_SYMBOLS.get(currency.upper(), "")
    amount_text = f"{symbol}{amount:.2f}" if symbol else f"{amount:.2f} {currency.upper()}"
    plural = "" if days == 1 else "s"
    months = "month" if duration_months == 1 else "months"

    return (
        "*Subscription Renewal Reminder*\n\n"
        f"Hello {subscriber_name or 'there'},\n\n"
        f'Your subscription "{plan_name}" will renew automatically in {days} day{plural}.\n\n'
        "*Renewal Details:*\n"
        f"- Amount: {amount_text}\n"
        f"- Renewal date: {renewal_text}\n"
        f"- Duration: {duration_months} {months}\n\n"
        "No action is needed if you wish to continue."
    )


class RenewalReminderDispatcher:
    """Routes a rendered reminder to e-mail or Telegram. Failures never propagate."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client
        settings = shared.settings
        self.email_countries = {c.strip().upper() for c in settings.EMAIL_NOTIFY_COUNTRIES}
        self.email_url = settings.EMAIL_NOTIFY_URL
        self.telegram_token = settings.TELEGRAM_BOT_TOKEN
        self.telegram_base = settings.TELEGRAM_API_BASE.rstrip("/")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            from app.shared.core.http import get_http_client

            self._http_client = get_http_client()
        return self._http_client

    def select_channel(self, subscriber: Subscriber) -> Optional[ReminderChannel]:
        if (subscriber.country or "").strip().upper() in self.email_countries:
            return ReminderChannel.EMAIL
        if subscriber.chat_id:
            return ReminderChannel.TELEGRAM
        return None

    async def send_renewal_reminder(
        self,
        invoice: dict[str, Any],
        subscription: Subscription,
        subscriber: Subscriber,
        plan: SubscriptionPlan,
    ) -> Optional[ReminderChannel]:
        renewal_date = shared.ensure_utc(
            subscription.next_billing_date or subscription.end_date
        )
        currency = str(invoice.get("currency") or plan.currency or "USD").upper()
        message = render_renewal_reminder(
            subscriber.name,
            plan.name,
            shared.from_minor_units(invoice.get("amount_due") or 0),
            currency,
            renewal_date,
            plan.duration_months or 1,
        )

        channel = self.select_channel(subscriber)
        if channel is None:
            shared.logger.info(
                "renewal_reminder_no_channel", subscriber_id=subscriber.id
            )
            return None

        try:
            if channel is ReminderChannel.EMAIL:
                sent = await self._send_email(subscriber, message)
            else:
                sent = await self._send_telegram(str(subscriber.chat_id), message)
        except httpx.HTTPError as exc:
            shared.logger.warning(
                "renewal_reminder_failed",
                channel=channel.value,
                subscriber_id=subscriber.id,
                error=str(exc),
            )
            NOTIFICATIONS_TOTAL.labels(channel=channel.value, result="failed").inc()
            return None

        NOTIFICATIONS_TOTAL.labels(
            channel=channel.value, result="sent" if sent else "skipped"
        ).inc()
        if sent:
            shared.logger.info(
                "renewal_reminder_sent",
                channel=channel.value,
                subscriber_id=subscriber.id,
                subscription_id=subscription.external_subscription_id,
            )
        return channel if sent else None

    async def _send_email(self, subscriber: Subscriber, message: str) -> bool:
        if not self.email_url or not subscriber.email:
            shared.logger.info(
                "renewal_reminder_email_not_configured", subscriber_id=subscriber.id
            )
            return False
        response = await self.client.post(
            self.email_url,
            json={
                "to": subscriber.email,
                "subject": "Subscription Renewal Reminder",
                "text": strip_markdown(message),
            },
        )
        response.raise_for_status()
        return True

    async def _send_telegram(self, chat_id: str, message: str) -> bool:
        if not self.telegram_token:
            shared.logger.info("renewal_reminder_telegram_not_configured")
            return False
        response = await self.client.post(
            f"{self.telegram_base}/bot{self.telegram_token}/sendMessage",
            json={"chat_id": chat_id, "text": message, "parse_mode": "Markdown"},
        )
        response.raise_for_status()
        return True
