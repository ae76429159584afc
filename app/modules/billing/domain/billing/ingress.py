"""Transport-level admission checks for inbound gateway webhooks."""

from __future__ import annotations

import ipaddress
from typing import AsyncIterator, Mapping, Optional

from app.shared.core.exceptions import RateLimitExceededError, SecurityError
from app.shared.core.ops_metrics import WEBHOOK_REJECTIONS_TOTAL
from app.shared.core.rate_limit import WebhookRateLimiter, get_webhook_rate_limiter

from . import stripe_shared as shared

ACCEPTED_CONTENT_TYPES = ("application/json", "text/plain")


def extract_client_ip(
    headers: Mapping[str, str], peer_host: Optional[str], trusted_hops: int = 1
) -> str:
    """
    Resolve request source IP from X-Forwarded-For behind trusted proxies.

    Each trusted proxy appends one entry, so the address we can rely on is the
    `trusted_hops`-th valid entry counted from the right. Falls back to the
    socket peer.
    """
    fallback = peer_host or "unknown"
    xff = headers.get("x-forwarded-for", "")
    if not xff or trusted_hops <= 0:
        return fallback

    valid: list[str] = []
    for raw in (part.strip() for part in xff.split(",")):
        try:
            valid.append(str(ipaddress.ip_address(raw)))
        except ValueError:
            continue
    if not valid:
        return fallback
    return valid[-min(trusted_hops, len(valid))]


class IngressGate:
    """
    Rejects webhook requests before any business logic runs.

    Never touches the record store; the only side effect is the rate-limit
    counter for the source address.
    """

    def __init__(
        self,
        limiter: Optional[WebhookRateLimiter] = None,
        max_body_bytes: Optional[int] = None,
        rate_limit_enabled: Optional[bool] = None,
    ):
        self.limiter = limiter or get_webhook_rate_limiter()
        self.max_body_bytes = max_body_bytes or shared.settings.WEBHOOK_MAX_BODY_BYTES
        self.rate_limit_enabled = (
            shared.settings.RATELIMIT_ENABLED
            if rate_limit_enabled is None
            else rate_limit_enabled
        )

    async def admit_request(self, headers: Mapping[str, str], client_ip: str) -> None:
        """Header-only checks, run before any of the body is read."""
        self.check_content_type(headers.get("content-type", ""))

        if self.rate_limit_enabled:
            retry_after = await self.limiter.hit(client_ip)
            if retry_after is not None:
                WEBHOOK_REJECTIONS_TOTAL.labels(reason="rate_limited").inc()
                raise RateLimitExceededError(retry_after)

        self.check_declared_length(headers.get("content-length"))

    async def read_body(self, chunks: AsyncIterator[bytes]) -> bytes:
        """Buffer the body, stopping as soon as it passes the size cap."""
        body = bytearray()
        async for chunk in chunks:
            body.extend(chunk)
            if len(body) > self.max_body_bytes:
                raise self._too_large(len(body))
        return bytes(body)

    async def admit(
        self, headers: Mapping[str, str], body: bytes, client_ip: str
    ) -> None:
        await self.admit_request(headers, client_ip)
        self.check_body_size(body)

    def check_content_type(self, content_type: str) -> None:
        normalized = content_type.lower()
        if not any(accepted in normalized for accepted in ACCEPTED_CONTENT_TYPES):
            shared.logger.warning(
                "stripe_webhook_invalid_content_type", content_type=content_type
            )
            WEBHOOK_REJECTIONS_TOTAL.labels(reason="content_type").inc()
            raise SecurityError(
                "Unsupported media type: expected application/json",
                code="unsupported_media_type",
                status_code=415,
                details={"content_type": content_type or None},
            )

    def check_declared_length(self, content_length: Optional[str]) -> None:
        if not content_length:
            return
        try:
            declared = int(content_length)
        except ValueError:
            raise SecurityError(
                "Invalid Content-Length header",
                code="invalid_content_length",
                status_code=400,
            ) from None
        if declared > self.max_body_bytes:
            raise self._too_large(declared)

    def check_body_size(self, body: bytes) -> None:
        if len(body) > self.max_body_bytes:
            raise self._too_large(len(body))

    def _too_large(self, body_bytes: int) -> SecurityError:
        shared.logger.warning(
            "stripe_webhook_body_too_large",
            body_bytes=body_bytes,
            max_bytes=self.max_body_bytes,
        )
        WEBHOOK_REJECTIONS_TOTAL.labels(reason="too_large").inc()
        return SecurityError(
            "Request body too large",
            code="payload_too_large",
            status_code=413,
            details={"max_bytes": self.max_body_bytes},
        )
