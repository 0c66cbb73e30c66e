"""
Retry and circuit-breaker primitives for failable external calls.

``retry_with_backoff`` retries an async callable with exponential backoff and
jitter; ``CircuitBreaker`` stops calling a failing dependency for a recovery
period. The model client combines both.
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..config import RetryConfig
from ..exceptions import CircuitOpenError, ModelError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504, 529)


def default_is_retryable(error: BaseException) -> bool:
    """Timeouts, connection errors and retryable model errors are retried."""
    if isinstance(error, ModelError):
        return error.is_retryable
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return False
    return True


def compute_delay(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> float:
    """
    Delay before retrying after failed ``attempt`` (1-based).

    ``base_delay * 2 ** (attempt - 1)`` with +/- ``jitter`` applied, capped at
    ``max_delay``.
    """
    delay = config.base_delay * (2 ** (attempt - 1))
    if config.jitter:
        delay += delay * config.jitter * (2 * rng() - 1)
    return max(0.0, min(delay, config.max_delay))


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await ``func()`` up to ``config.max_attempts`` times.

    Args:
        func: Zero-argument coroutine factory
        config: Retry settings (defaults to RetryConfig())
        is_retryable: Decides whether an exception is worth another attempt
        operation: Name used in log messages
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The first successful result

    Raises:
        The last exception once attempts are exhausted, or immediately for
        non-retryable errors
    """
    config = config or RetryConfig()
    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                logger.debug(f"{operation} failed with non-retryable error: {e}")
                raise
            if attempt >= config.max_attempts:
                logger.error(f"Max attempts ({config.max_attempts}) exhausted for {operation}: {e}")
                raise
            delay = compute_delay(attempt, config)
            logger.warning(
                f"{operation} failed ({e}). Retry {attempt}/{config.max_attempts - 1} after {delay:.1f}s"
            )
            await sleep(delay)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail fast while a dependency keeps failing.

    CLOSED opens after ``failure_threshold`` consecutive failures. OPEN rejects
    calls with CircuitOpenError until ``recovery_timeout`` has elapsed, then
    lets calls through as HALF_OPEN. HALF_OPEN closes after
    ``success_threshold`` successes and reopens on any failure.
    """

    def __init__(
        self,
        name: str,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or RetryConfig()
        self.name = name
        self.failure_threshold = config.failure_threshold
        self.recovery_timeout = config.recovery_timeout
        self.success_threshold = config.success_threshold
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None

    def _check(self) -> None:
        if self.state is not CircuitState.OPEN:
            return
        elapsed = self._clock() - (self.opened_at or 0.0)
        if elapsed >= self.recovery_timeout:
            logger.info(f"Circuit '{self.name}' half-open after {elapsed:.1f}s")
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
        else:
            raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)

    def record_success(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                logger.info(f"Circuit '{self.name}' closed")
                self.state = CircuitState.CLOSED
                self.failure_count = 0
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning(f"Circuit '{self.name}' opened after {self.failure_count} failures")
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """Await ``func()`` through the breaker."""
        self._check()
        try:
            result = await func()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
        }
