"""Per-credential request throttle for provider calls.

Buckets are keyed by :func:`fingerprint` of the API key so the key itself is
never held or logged.  Each bucket starts full with ``max_per_minute`` tokens
and refills continuously.  A caller that cannot get a token within
``timeout`` seconds gets :class:`RateLimitExceededError`, which the provider
client reports as a retryable failure.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time

logger = logging.getLogger(__name__)

# Upper bound on a single sleep while waiting for a refill.
_POLL_SECONDS = 0.05


class RateLimitExceededError(RuntimeError):
    pass


def fingerprint(secret: str) -> str:
    """Short, stable, log-safe identifier for a credential."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


class _Bucket:
    def __init__(self, per_minute: int) -> None:
        self.capacity = float(per_minute)
        self.tokens = self.capacity
        self.refill_per_second = per_minute / 60.0
        self.stamp = time.monotonic()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.stamp) * self.refill_per_second)
        self.stamp = now

    async def take(self, timeout: float) -> None:
        give_up_at = time.monotonic() + timeout
        async with self.lock:
            self._refill()
            while self.tokens < 1.0:
                needed = (1.0 - self.tokens) / self.refill_per_second
                if time.monotonic() + needed > give_up_at:
                    raise RateLimitExceededError(
                        "Provider rate limit exceeded for this credential; "
                        "retry shortly or raise PROVIDER_MAX_REQUESTS_PER_MINUTE."
                    )
                await asyncio.sleep(min(needed, _POLL_SECONDS))
                self._refill()
            self.tokens -= 1.0


_buckets: dict[str, _Bucket] = {}


async def acquire_rate_limit(key: str, max_per_minute: int, timeout: float = 5.0) -> None:
    """Consume one token from *key*'s bucket; ``max_per_minute <= 0`` disables the limit."""
    if max_per_minute <= 0:
        return
    bucket = _buckets.get(key)
    if bucket is None:
        # No await between lookup and insert, so one event loop cannot race here.
        bucket = _buckets[key] = _Bucket(max_per_minute)
        logger.debug("Rate limit bucket %s created at %d/min", key, max_per_minute)
    await bucket.take(timeout)


def reset_bucket(key: str | None = None) -> None:
    """Forget *key*'s bucket, or all buckets when *key* is None."""
    if key is None:
        _buckets.clear()
    else:
        _buckets.pop(key, None)
