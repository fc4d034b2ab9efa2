"""Tests for retry/backoff, timeouts and token-bucket rate limiting."""

from __future__ import annotations

import asyncio

import pytest

from src.execution.contracts import NonceError
from src.resilience.rate_limiter import RateLimiter, RateLimiterRegistry, with_retry_and_rate_limit
from src.resilience.retry import (
    RetryConfig,
    calculate_backoff_delay,
    is_nonce_error,
    is_rate_limit_error,
    is_retriable_error,
    with_retry,
    with_timeout,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _Flaky:
    """Fails with `error` for the first `failures` calls, then returns "ok"."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.parametrize("attempt", range(8))
@pytest.mark.parametrize("rand", [0.0, 0.5, 0.999])
def test_backoff_delay_is_bounded(attempt: int, rand: float) -> None:
    config = RetryConfig(base_delay_ms=1000, max_delay_ms=5000, jitter_factor=0.3)
    delay = calculate_backoff_delay(attempt, config, rand=lambda: rand)
    assert config.base_delay_ms <= delay <= config.max_delay_ms * (1 + config.jitter_factor)

    limited = calculate_backoff_delay(attempt, config, is_rate_limit=True, rand=lambda: rand)
    assert limited == pytest.approx(delay * 2)


def test_backoff_grows_exponentially_until_cap() -> None:
    config = RetryConfig(base_delay_ms=100, max_delay_ms=1000, jitter_factor=0)
    delays = [calculate_backoff_delay(n, config) for n in range(6)]
    assert delays == [100, 200, 400, 800, 1000, 1000]


def test_error_classifiers() -> None:
    assert is_retriable_error(ConnectionError("reset"))
    assert is_retriable_error(TimeoutError())
    assert is_retriable_error(RuntimeError("HTTP 503 Service Unavailable"))
    assert not is_retriable_error(ValueError("insufficient funds"))

    assert is_rate_limit_error(RuntimeError("429 Too Many Requests"))
    assert not is_rate_limit_error(RuntimeError("boom"))

    assert is_nonce_error(NonceError("stale"))
    assert is_nonce_error(RuntimeError("nonce too low"))
    assert not is_nonce_error(RuntimeError("reverted"))


@pytest.mark.asyncio
async def test_with_retry_recovers_from_transient_errors() -> None:
    clock = _FakeClock()
    fn = _Flaky(2, ConnectionError("econnreset"))
    retries: list[int] = []

    result = await with_retry(
        fn,
        RetryConfig(max_retries=3, base_delay_ms=10, jitter_factor=0),
        on_retry=lambda attempt, exc, delay: retries.append(attempt),
        sleep=clock.sleep,
    )

    assert result == "ok"
    assert fn.calls == 3
    assert retries == [0, 1]
    assert clock.sleeps == [0.01, 0.02]


@pytest.mark.asyncio
async def test_with_retry_reraises_after_exhaustion() -> None:
    clock = _FakeClock()
    fn = _Flaky(10, ConnectionError("econnrefused"))

    with pytest.raises(ConnectionError):
        await with_retry(fn, RetryConfig(max_retries=2, base_delay_ms=1), sleep=clock.sleep)
    assert fn.calls == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors() -> None:
    clock = _FakeClock()
    fn = _Flaky(1, ValueError("bad request"))

    with pytest.raises(ValueError):
        await with_retry(fn, RetryConfig(max_retries=5), sleep=clock.sleep)
    assert fn.calls == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_with_timeout_raises_timeout_error() -> None:
    with pytest.raises(TimeoutError, match="slow call timed out after 10ms"):
        await with_timeout(asyncio.sleep(1), 10, "slow call")

    assert await with_timeout(asyncio.sleep(0, result=5), 1000) == 5


def test_rate_limiter_burst_and_refill() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(60, burst_size=2, clock=clock, sleep=clock.sleep)

    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert not limiter.can_request()

    clock.now += 1.0
    assert limiter.can_request()
    assert limiter.try_acquire()

    clock.now += 10.0
    state = limiter.get_state()
    assert state.tokens == 2
    assert state.max_tokens == 2
    assert state.refill_interval_s == 1.0


@pytest.mark.asyncio
async def test_rate_limiter_acquire_waits_for_refill() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(120, burst_size=1, clock=clock, sleep=clock.sleep)

    await limiter.acquire()
    await limiter.acquire()

    assert clock.sleeps == [0.5]


def test_rate_limiter_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0)
    with pytest.raises(ValueError):
        RateLimiter(60, burst_size=0)


def test_registry_caches_limiters_per_service() -> None:
    registry = RateLimiterRegistry(30)
    limiter = registry.get("ethereum_rpc")
    assert registry.get("ethereum_rpc") is limiter
    assert limiter.refill_interval_s == 2.0
    assert registry.get("solana_rpc", 120).refill_interval_s == 0.5
    assert registry.services() == ["ethereum_rpc", "solana_rpc"]


@pytest.mark.asyncio
async def test_retry_takes_a_token_per_attempt() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(60, burst_size=5, clock=clock, sleep=clock.sleep)
    fn = _Flaky(2, TimeoutError())

    result = await with_retry_and_rate_limit(
        limiter,
        fn,
        RetryConfig(max_retries=3, base_delay_ms=0, jitter_factor=0),
        sleep=clock.sleep,
    )

    assert result == "ok"
    assert limiter.get_state().tokens == 2
