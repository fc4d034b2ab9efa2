"""Exponential backoff retry wrapper and error classifiers.

Delay for attempt `n` (0-based) is:

    min(base_delay_ms * 2**n, max_delay_ms) * (1 + jitter_factor * random())

and is doubled again for rate-limit errors. Exhausting retries re-raises the last error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "429",
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "throttle",
)

_RETRIABLE_MARKERS: tuple[str, ...] = (
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "network",
    "socket",
    "connection",
    "fetch failed",
    "timeout",
    "timed out",
    "500",
    "502",
    "503",
    "504",
)

_NONCE_MARKERS: tuple[str, ...] = (
    "nonce too low",
    "nonce too high",
    "nonce has already been used",
    "replacement transaction underpriced",
    "already known",
    "invalid nonce",
)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters (milliseconds)."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    jitter_factor: float = 0.3
    timeout_ms: int = 30_000


DEFAULT_RETRY_CONFIG = RetryConfig()


def _error_text(error: BaseException) -> str:
    return f"{type(error).__name__} {error}".lower()


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether the error looks like an upstream rate limit (HTTP 429 and friends)."""

    if getattr(error, "code", None) == "RATE_LIMITED":
        return True
    if getattr(error, "status", None) == 429:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def is_retriable_error(error: BaseException) -> bool:
    """Default retry predicate: network failures, timeouts, 5xx and rate limits."""

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if is_rate_limit_error(error):
        return True
    text = _error_text(error)
    return any(marker in text for marker in _RETRIABLE_MARKERS)


def is_nonce_error(error: BaseException) -> bool:
    """Whether a submission failed because of a stale or colliding nonce."""

    if getattr(error, "code", None) == "NONCE_ERROR":
        return True
    text = _error_text(error)
    return any(marker in text for marker in _NONCE_MARKERS)


def calculate_backoff_delay(
        attempt: int,
        config: RetryConfig = DEFAULT_RETRY_CONFIG,
        *,
        is_rate_limit: bool = False,
        rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in milliseconds before retry number `attempt`.

    The result never exceeds `max_delay_ms * (1 + jitter_factor)` for regular errors
    (twice that for rate-limit errors).
    """

    exponential = config.base_delay_ms * (2 ** max(attempt, 0))
    capped = min(exponential, config.max_delay_ms)
    delay = capped * (1 + config.jitter_factor * rand())
    if is_rate_limit:
        delay *= 2
    return float(delay)


async def with_retry(
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig = DEFAULT_RETRY_CONFIG,
        *,
        should_retry: Callable[[BaseException], bool] = is_retriable_error,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "call",
) -> T:
    """Call `fn` until it succeeds or retries are exhausted.

    Raises:
        The last error raised by `fn` once `config.max_retries` retries have failed, or immediately
        if `should_retry` rejects the error.
    """

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= config.max_retries or not should_retry(exc):
                raise

            delay_ms = calculate_backoff_delay(
                attempt, config, is_rate_limit=is_rate_limit_error(exc)
            )
            logger.warning(
                "retrying label=%s attempt=%d/%d delay_ms=%d error=%s",
                label,
                attempt + 1,
                config.max_retries,
                int(delay_ms),
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay_ms)
            await sleep(delay_ms / 1000)
            attempt += 1


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int, message: str = "operation") -> T:
    """Await `awaitable` with a deadline.

    Raises:
        TimeoutError: If the deadline passes first.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"{message} timed out after {timeout_ms}ms") from exc
