"""
Webhook Rate Limiting

Sliding-window request throttling per source address, built on the `limits`
library (the engine underneath slowapi). Counters live in memory for single
instance deployments and in Redis when REDIS_URL is configured.
"""

import math
import time
from typing import Optional

import structlog
from limits import RateLimitItem, parse
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from app.shared.core.config import get_settings

__all__ = ["WebhookRateLimiter", "get_webhook_rate_limiter", "reset_rate_limiter"]

logger = structlog.get_logger()

_limiter: "WebhookRateLimiter | None" = None


class WebhookRateLimiter:
    """Moving-window limiter keyed by client address."""

    def __init__(self, limit: str, storage_uri: str = "async+memory://"):
        self.item: RateLimitItem = parse(limit)
        self.storage = storage_from_string(storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)

    async def hit(self, client_key: str) -> Optional[int]:
        """
        Record one request for `client_key`.

        Returns None when the request is admitted, otherwise the number of
        seconds until the oldest request in the window expires.
        """
        if await self.strategy.hit(self.item, "webhook", client_key):
            return None
        stats = await self.strategy.get_window_stats(self.item, "webhook", client_key)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        logger.warning(
            "webhook_rate_limited",
            client=client_key,
            limit=str(self.item),
            retry_after=retry_after,
        )
        return retry_after

    async def reset(self) -> None:
        await self.storage.reset()


def get_webhook_rate_limiter() -> WebhookRateLimiter:
    """Lazy initialization of the shared limiter instance.

    Production deployments must set REDIS_URL so limits are shared across
    replicas; settings validation refuses to boot otherwise.
    """
    global _limiter
    if _limiter is None:
        settings = get_settings()
        if settings.REDIS_URL and not settings.TESTING:
            storage_uri = f"async+{settings.REDIS_URL}"
        else:
            storage_uri = "async+memory://"
        _limiter = WebhookRateLimiter(settings.WEBHOOK_RATE_LIMIT, storage_uri)
        logger.info(
            "rate_limiting_configured",
            limit=settings.WEBHOOK_RATE_LIMIT,
            distributed=storage_uri != "async+memory://",
        )
    return _limiter


def reset_rate_limiter() -> None:
    """Drop the cached limiter so the next call rebuilds it from settings."""
    global _limiter
    _limiter = None
