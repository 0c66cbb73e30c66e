"""
Tests for the pitwall.utils.resilience module.

This module tests:
- Backoff delay computation
- Retry behavior for retryable and non-retryable errors
- Circuit breaker state transitions
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from pitwall.config import RetryConfig
from pitwall.exceptions import CircuitOpenError, ModelError
from pitwall.utils.resilience import (
    CircuitBreaker,
    CircuitState,
    compute_delay,
    default_is_retryable,
    retry_with_backoff,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Retry Tests
# =============================================================================

class TestComputeDelay:
    """Tests for exponential backoff."""

    def test_exponential_without_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=0.0)

        assert [compute_delay(n, config) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=2.0, max_delay=100.0, jitter=0.1)

        assert compute_delay(1, config, rng=lambda: 0.0) == pytest.approx(1.8)
        assert compute_delay(1, config, rng=lambda: 1.0) == pytest.approx(2.2)


class TestRetry:
    """Tests for retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), asyncio.TimeoutError(), "ok"])
        sleep = AsyncMock()

        result = await retry_with_backoff(func, RetryConfig(max_attempts=3, jitter=0.0), sleep=sleep)

        assert result == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        func = AsyncMock(side_effect=ModelError("overloaded", status_code=529))
        sleep = AsyncMock()

        with pytest.raises(ModelError):
            await retry_with_backoff(func, RetryConfig(max_attempts=2), sleep=sleep)

        assert func.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=ModelError("bad request", status_code=400, is_retryable=False))
        sleep = AsyncMock()

        with pytest.raises(ModelError):
            await retry_with_backoff(func, sleep=sleep)

        assert func.await_count == 1
        sleep.assert_not_awaited()

    def test_default_is_retryable(self):
        assert default_is_retryable(ConnectionError())
        assert default_is_retryable(asyncio.TimeoutError())
        assert default_is_retryable(ModelError("x"))
        assert not default_is_retryable(ModelError("x", is_retryable=False))
        assert not default_is_retryable(ValueError())


# =============================================================================
# Circuit Breaker Tests
# =============================================================================

class TestCircuitBreaker:
    """Tests for the circuit breaker."""

    def make_breaker(self, clock):
        config = RetryConfig(failure_threshold=2, recovery_timeout=30.0, success_threshold=2)
        return CircuitBreaker("model", config, clock=clock)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = self.make_breaker(FakeClock())
        failing = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(AsyncMock(return_value="ok"))
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_half_open_then_closed(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.now = 31.0
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state is CircuitState.HALF_OPEN

        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        clock.now = 31.0

        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError("still down")))

        assert breaker.state is CircuitState.OPEN
        assert breaker.opened_at == 31.0

    def test_success_resets_failures_when_closed(self):
        breaker = self.make_breaker(FakeClock())
        breaker.record_failure()
        breaker.record_success()

        assert breaker.get_status() == {
            "name": "model",
            "state": "closed",
            "failure_count": 0,
            "success_count": 0,
        }
