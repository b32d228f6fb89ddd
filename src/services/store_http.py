"""Bounded retry with exponential backoff for App Store / Play API calls.

Only transport failures, HTTP 429 and 5xx are retried. Everything else
(including 404/410, which are terminal answers) is returned to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from config.settings import settings
from src.services.errors import StoreTransportError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 5.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STORE_MAX_ATTEMPTS,
            base_delay=settings.STORE_BACKOFF_BASE,
            max_delay=settings.STORE_BACKOFF_MAX,
        )

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based)."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: RetryPolicy,
    *,
    label: str,
) -> httpx.Response:
    """Run ``send`` until it yields a non-retryable response.

    Raises StoreTransportError once ``policy.max_attempts`` are used up.
    """
    last_error = ""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            resp = await send()
        except httpx.TransportError as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"{label}: transport error on attempt {attempt}/{policy.max_attempts}: {last_error}")
        else:
            if resp.status_code not in RETRYABLE_STATUS:
                return resp
            last_error = f"HTTP {resp.status_code}"
            logger.warning(f"{label}: {last_error} on attempt {attempt}/{policy.max_attempts}")

        if attempt < policy.max_attempts:
            await asyncio.sleep(policy.delay_for(attempt))

    raise StoreTransportError(f"{label} failed after {policy.max_attempts} attempts ({last_error})")
