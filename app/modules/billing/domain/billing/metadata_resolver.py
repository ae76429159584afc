"""
Checkout metadata resolution.

A payment event needs a (subscriber id, plan id) pair, but the gateway may
deliver it split across sibling events or not at all. The resolver walks an
ordered chain of lookup strategies; each fills only the halves still missing,
and every newly discovered half is written back to the gateway subscription's
metadata so a concurrently processing sibling event finds it cheaply.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from app.models.billing import CheckoutIntent
from app.shared.core.exceptions import GatewayLookupError
from app.shared.core.ops_metrics import METADATA_RESOLUTION_TOTAL

from . import stripe_shared as shared
from .record_store import RecordStore
from .stripe_client_impl import PaymentGateway

_LINK_ID_PATTERNS = (
    re.compile(r"plink_([A-Za-z0-9]+)"),
    re.compile(r"test_([A-Za-z0-9]+)"),
    re.compile(r"(?:buy|pay)\.stripe\.com/(?:test_)?([A-Za-z0-9]+)"),
)


def payment_link_identifiers(value: Optional[str]) -> set[str]:
    """Every link code embedded in an id (`plink_...`) or hosted URL."""
    if not value:
        return set()
    found: set[str] = set()
    for pattern in _LINK_ID_PATTERNS:
        found.update(pattern.findall(value))
    return found


class LookupOutcome(str, Enum):
    FOUND = "found"
    PARTIAL = "partial"
    NOT_FOUND = "not_found"


@dataclass
class ResolvedIdentity:
    subscriber_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    sources: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return bool(self.subscriber_id and self.plan_id)

    @property
    def outcome(self) -> LookupOutcome:
        if self.complete:
            return LookupOutcome.FOUND
        if self.subscriber_id or self.plan_id:
            return LookupOutcome.PARTIAL
        return LookupOutcome.NOT_FOUND

    def absorb(self, other: "ResolvedIdentity", source: str) -> bool:
        """Fill missing halves from `other`. Returns True if anything was added."""
        added = False
        if not self.subscriber_id and other.subscriber_id:
            self.subscriber_id = other.subscriber_id
            added = True
        if not self.plan_id and other.plan_id:
            self.plan_id = other.plan_id
            self.plan_name = self.plan_name or other.plan_name
            added = True
        if added:
            self.sources.append(source)
        return added

    def as_metadata(self) -> dict[str, str]:
        metadata: dict[str, str] = {}
        if self.plan_id:
            metadata[shared.PLAN_ID_KEY] = str(self.plan_id)
        if self.plan_name:
            metadata[shared.PLAN_NAME_KEY] = str(self.plan_name)
        if self.subscriber_id:
            metadata[shared.SUBSCRIBER_ID_KEY] = str(self.subscriber_id)
        return metadata


def identity_from_metadata(metadata: Optional[dict[str, Any]]) -> ResolvedIdentity:
    metadata = metadata or {}

    def _clean(key: str) -> Optional[str]:
        value = metadata.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    return ResolvedIdentity(
        subscriber_id=_clean(shared.SUBSCRIBER_ID_KEY),
        plan_id=_clean(shared.PLAN_ID_KEY),
        plan_name=_clean(shared.PLAN_NAME_KEY),
    )


@dataclass
class ResolutionContext:
    """Everything the triggering event tells us about the purchase."""

    subscription_id: str
    inline_metadata: dict[str, Any] = field(default_factory=dict)
    client_reference_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_link: Optional[str] = None
    customer_id: Optional[str] = None
    gateway_subscription: Optional[dict[str, Any]] = None
    # Set once a Checkout Attempt is matched, so the caller can complete it.
    checkout_ref: Optional[str] = None


class LookupStrategy:
    name = "base"
    # Strategies that read the gateway metadata must not write it back.
    writes_back = True

    async def lookup(
        self, ctx: ResolutionContext, current: ResolvedIdentity
    ) -> ResolvedIdentity:
        raise NotImplementedError


class InlineMetadataLookup(LookupStrategy):
    name = "inline_metadata"

    async def lookup(
        self, ctx: ResolutionContext, current: ResolvedIdentity
    ) -> ResolvedIdentity:
        return identity_from_metadata(ctx.inline_metadata)


class CheckoutAttemptLookup(LookupStrategy):
    name = "checkout_attempt"

    def __init__(self, store: RecordStore):
        self.store = store

    async def lookup(
        self, ctx: ResolutionContext, current: ResolvedIdentity
    ) -> ResolvedIdentity:
        intent = CheckoutIntent.SUBSCRIPTION.value
        attempt = None
        if ctx.client_reference_id:
            attempt = await self.store.find_checkout(ctx.client_reference_id, intent)
        if attempt is None and ctx.session_id:
            attempt = await self.store.find_checkout_by_url(ctx.session_id, intent)
        if attempt is None:
            return ResolvedIdentity()

        ctx.checkout_ref = attempt.correlation_ref

        found = identity_from_metadata(attempt.extra_metadata)
        found.subscriber_id = found.subscriber_id or attempt.subscriber_id
        found.plan_id = found.plan_id or attempt.plan_id
        return found


class GatewayMetadataLookup(LookupStrategy):
    name = "gateway_metadata"
    writes_back = False

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    async def lookup(
        self, ctx: ResolutionContext, current: ResolvedIdentity
    ) -> ResolvedIdentity:
        if ctx.gateway_subscription is None:
            try:
                ctx.gateway_subscription = await self.gateway.retrieve_subscription(
                    ctx.subscription_id
                )
            except GatewayLookupError as exc:
                shared.logger.warning(
                    "metadata_gateway_subscription_lookup_failed",
                    subscription_id=ctx.subscription_id,
                    error=str(exc),
                )
                return ResolvedIdentity()
        return identity_from_metadata(ctx.gateway_subscription.get("metadata"))


class PaymentLinkLookup(LookupStrategy):
    """Reverse lookup from the hosted payment link to the plan catalog."""

    name = "payment_link"

    def __init__(self, store: RecordStore, gateway: PaymentGateway):
        self.store = store
        self.gateway = gateway

    async def _link_identifiers(self, link: str) -> set[str]:
        identifiers = payment_link_identifiers(link)
        if link.startswith("plink_"):
            identifiers.add(link[len("plink_"):])
            try:
                remote = await self.gateway.retrieve_payment_link(link)
            except GatewayLookupError as exc:
                shared.logger.warning(
                    "metadata_payment_link_lookup_failed", link_id=link, error=str(exc)
                )
            else:
                identifiers |= payment_link_identifiers(remote.get("url"))
        return identifiers

    async def _match_plan(self, link: str) -> ResolvedIdentity:
        identifiers = await self._link_identifiers(link)
        for plan in await self.store.list_plans_with_payment_links():
            plan_link = plan.payment_link or ""
            plan_ids = payment_link_identifiers(plan_link)
            if identifiers & plan_ids or link in plan_link or (
                plan_link and plan_link in link
            ):
                shared.logger.info(
                    "metadata_plan_matched_by_payment_link",
                    plan_id=plan.id,
                    link=link,
                )
                return ResolvedIdentity(plan_id=plan.id, plan_name=plan.name)
        return ResolvedIdentity()

    async def _subscriber_from_customer(self, customer_id: str) -> Optional[str]:
        try:
            customer = await self.gateway.retrieve_customer(customer_id)
        except GatewayLookupError as exc:
            shared.logger.warning(
                "metadata_customer_lookup_failed", customer_id=customer_id, error=str(exc)
            )
            return None
        return identity_from_metadata(customer.get("metadata")).subscriber_id

    async def lookup(
        self, ctx: ResolutionContext, current: ResolvedIdentity
    ) -> ResolvedIdentity:
        found = ResolvedIdentity()
        if not current.plan_id and ctx.payment_link:
            found = await self._match_plan(ctx.payment_link)
        if not current.subscriber_id and ctx.customer_id:
            found.subscriber_id = await self._subscriber_from_customer(ctx.customer_id)
        return found


class MetadataResolver:
    """Chain-of-responsibility resolver over an ordered list of lookups."""

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        poll_interval: Optional[float] = None,
        poll_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        strategies: Optional[Sequence[LookupStrategy]] = None,
    ):
        self.gateway = gateway
        self.poll_interval = (
            shared.settings.METADATA_POLL_INTERVAL_SECONDS
            if poll_interval is None
            else poll_interval
        )
        self.poll_attempts = (
            shared.settings.METADATA_POLL_ATTEMPTS
            if poll_attempts is None
            else poll_attempts
        )
        self.sleep = sleep
        self.strategies: Sequence[LookupStrategy] = strategies or (
            InlineMetadataLookup(),
            CheckoutAttemptLookup(store),
            GatewayMetadataLookup(gateway),
            PaymentLinkLookup(store, gateway),
        )

    async def resolve(self, ctx: ResolutionContext) -> ResolvedIdentity:
        identity = ResolvedIdentity()
        for strategy in self.strategies:
            found = await strategy.lookup(ctx, identity)
            added = identity.absorb(found, strategy.name)
            shared.logger.debug(
                "metadata_strategy_result",
                strategy=strategy.name,
                outcome=found.outcome.value,
                added=added,
            )
            if added and strategy.writes_back:
                await self._write_back(ctx, identity)
            if identity.complete:
                break

        if identity.plan_id and not identity.subscriber_id:
            await self._poll_for_subscriber(ctx, identity)

        if not identity.complete:
            shared.logger.warning(
                "metadata_resolution_incomplete",
                subscription_id=ctx.subscription_id,
                has_subscriber_id=bool(identity.subscriber_id),
                has_plan_id=bool(identity.plan_id),
            )
        METADATA_RESOLUTION_TOTAL.labels(
            strategy=identity.sources[-1] if identity.sources else "none",
            complete=str(identity.complete).lower(),
        ).inc()
        return identity

    async def _poll_for_subscriber(
        self, ctx: ResolutionContext, identity: ResolvedIdentity
    ) -> None:
        """Give a concurrently processing sibling event time to publish the subscriber."""
        for attempt in range(1, self.poll_attempts + 1):
            await self.sleep(self.poll_interval)
            try:
                fresh = await self.gateway.retrieve_subscription(ctx.subscription_id)
            except GatewayLookupError as exc:
                shared.logger.warning(
                    "metadata_poll_lookup_failed", attempt=attempt, error=str(exc)
                )
                continue
            ctx.gateway_subscription = fresh
            if identity.absorb(identity_from_metadata(fresh.get("metadata")), "poll"):
                shared.logger.info(
                    "metadata_subscriber_found_by_poll",
                    subscription_id=ctx.subscription_id,
                    attempt=attempt,
                )
                if identity.complete:
                    return

    async def _write_back(self, ctx: ResolutionContext, identity: ResolvedIdentity) -> None:
        """Publish known halves to the gateway subscription; failures are non-fatal."""
        existing = identity_from_metadata(
            (ctx.gateway_subscription or {}).get("metadata")
        ).as_metadata()
        updates = {
            key: value
            for key, value in identity.as_metadata().items()
            if existing.get(key) != value
        }
        if not updates:
            return
        try:
            updated = await self.gateway.update_subscription_metadata(
                ctx.subscription_id, updates
            )
        except GatewayLookupError as exc:
            shared.logger.warning(
                "metadata_write_back_failed",
                subscription_id=ctx.subscription_id,
                error=str(exc),
            )
            return
        if isinstance(updated, dict) and isinstance(updated.get("metadata"), dict):
            ctx.gateway_subscription = updated
        shared.logger.info(
            "metadata_written_back",
            subscription_id=ctx.subscription_id,
            keys=sorted(updates),
        )
