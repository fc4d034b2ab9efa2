"""Token-bucket rate limiting keyed by external service name.

Limiters are owned by a `RateLimiterRegistry` instance (one per coordinator) instead of a module
global, so tests get a clean registry each time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from src.resilience.retry import DEFAULT_RETRY_CONFIG, RetryConfig, is_retriable_error, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimiterState:
    """Snapshot of a limiter for diagnostics."""

    tokens: float
    max_tokens: int
    refill_interval_s: float


class RateLimiter:
    """Token bucket with `max_tokens` capacity refilled one token per `refill_interval_s`."""

    def __init__(
            self,
            max_requests_per_minute: int = 60,
            burst_size: int | None = None,
            *,
            clock: Callable[[], float] = time.monotonic,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests_per_minute <= 0:
            raise ValueError("max_requests_per_minute must be positive")

        self.max_tokens = burst_size if burst_size is not None else max_requests_per_minute
        if self.max_tokens <= 0:
            raise ValueError("burst_size must be positive")

        self.refill_interval_s = 60.0 / max_requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.max_tokens)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return

        earned = int(elapsed / self.refill_interval_s)
        if earned <= 0:
            return

        self._tokens = min(float(self.max_tokens), self._tokens + earned)
        # Keep the fractional remainder so refills don't drift.
        self._last_refill += earned * self.refill_interval_s

    def try_acquire(self) -> bool:
        """Take a token if one is available; never blocks."""

        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        """Take a token, sleeping until one is refilled."""

        while not self.try_acquire():
            wait_s = self._last_refill + self.refill_interval_s - self._clock()
            await self._sleep(max(wait_s, 0.001))

    def can_request(self) -> bool:
        """Whether `try_acquire` would succeed right now (does not consume)."""

        self._refill()
        return self._tokens >= 1

    def get_state(self) -> RateLimiterState:
        self._refill()
        return RateLimiterState(
            tokens=self._tokens,
            max_tokens=self.max_tokens,
            refill_interval_s=self.refill_interval_s,
        )


class RateLimiterRegistry:
    """Lazily created limiters, one per service name, cached for the registry's lifetime."""

    def __init__(
            self,
            default_requests_per_minute: int = 60,
            *,
            clock: Callable[[], float] = time.monotonic,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._default_rpm = default_requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, RateLimiter] = {}

    def get(
            self,
            service: str,
            max_requests_per_minute: int | None = None,
            burst_size: int | None = None,
    ) -> RateLimiter:
        limiter = self._limiters.get(service)
        if limiter is None:
            limiter = RateLimiter(
                max_requests_per_minute or self._default_rpm,
                burst_size,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._limiters[service] = limiter
            logger.debug("rate limiter created service=%s rpm=%d", service, 60 / limiter.refill_interval_s)
        return limiter

    def services(self) -> list[str]:
        return sorted(self._limiters)


async def with_rate_limit(limiter: RateLimiter, fn: Callable[[], Awaitable[T]]) -> T:
    """Acquire a token from `limiter`, then call `fn`."""

    await limiter.acquire()
    return await fn()


async def with_retry_and_rate_limit(
        limiter: RateLimiter,
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig = DEFAULT_RETRY_CONFIG,
        *,
        should_retry: Callable[[BaseException], bool] = is_retriable_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "call",
) -> T:
    """Retry `fn` with backoff, taking a rate-limit token before every attempt."""

    async def _attempt() -> T:
        return await with_rate_limit(limiter, fn)

    return await with_retry(_attempt, config, should_retry=should_retry, sleep=sleep, label=label)
