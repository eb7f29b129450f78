"""Token-bucket rate limiting and bounded retry for provider calls."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from . import config
from .enrichment_provider import ProviderError

log = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Token-bucket rate limiter.

    Allows up to `rate` calls per second, with a burst capacity of `burst`.
    """

    def __init__(self, rate: float, burst: int | None = None) -> None:
        self.rate = rate
        self.burst = burst if burst is not None else max(1, int(rate))
        self.tokens = float(self.burst)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
        self.last_refill = now

    def acquire(self) -> None:
        """Block until a token is available."""
        while True:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return
            deficit = 1.0 - self.tokens
            time.sleep(deficit / self.rate)


def with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int | None = None,
    backoff: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying retryable ProviderErrors with exponential backoff.

    Non-retryable errors and the last failure propagate unchanged.
    """
    attempts = max_attempts if max_attempts is not None else config.PROVIDER_MAX_ATTEMPTS
    delay = backoff if backoff is not None else config.PROVIDER_BACKOFF_SECONDS
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ProviderError as exc:
            if not exc.retryable or attempt == attempts:
                raise
            wait = delay * (2 ** (attempt - 1))
            log.warning(
                "Provider call failed (attempt %d/%d): %s; retrying in %.1fs",
                attempt, attempts, exc, wait,
            )
            sleep(wait)
    raise AssertionError("unreachable")
