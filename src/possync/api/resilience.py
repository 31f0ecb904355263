#!/usr/bin/env python3
"""Resilience Patterns for POS provider calls.

This module provides the building blocks the client and worker use to ride
out transient failures:
    - Retry with exponential backoff and jitter
    - Circuit breaker
    - Deadlines for awaitables

Example:
    circuit = CircuitBreaker(failure_threshold=5, timeout=60)
    await circuit.before_call()
    try:
        result = await fetch_page()
    except ServerError as e:
        await circuit.record_failure(e)
        raise
    await circuit.record_success()

    token = await retry_async(fetch_token, max_attempts=3)

    page = await with_timeout(fetcher.fetch_page, 120, token, guid, window, cursor)
"""
import asyncio
import logging
import random
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    CircuitOpenError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry with Exponential Backoff
# ============================================

# Default exceptions that are considered retryable
DEFAULT_RETRYABLE_EXCEPTIONS = (
    TransientNetworkError,
    RateLimitError,
    ServerError,
    asyncio.TimeoutError,
    ConnectionResetError,
)


def backoff_delay(attempt: int, initial_delay: float = 1.0, backoff_factor: float = 2.0, max_delay: float = 60.0) -> float:
    """Delay before retry number `attempt` (1-based), without jitter."""
    return min(initial_delay * (backoff_factor ** (attempt - 1)), max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    **kwargs,
) -> T:
    """Retry an async function call with exponential backoff.

    Exceptions outside retryable_exceptions propagate immediately.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts (including the first)
        backoff_factor: Delay multiplier
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        retryable_exceptions: Exceptions to retry on
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func
    """
    last_exception: Optional[Exception] = None
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            last_exception = e

            if isinstance(e, RateLimitError) and e.retry_after:
                delay = float(e.retry_after)

            if attempt < max_attempts:
                actual_delay = min(delay * (0.5 + random.random()), max_delay)
                logger.warning(
                    f"Retry {attempt}/{max_attempts}: {e}. Waiting {actual_delay:.1f}s"
                )
                await asyncio.sleep(actual_delay)
                delay = min(delay * backoff_factor, max_delay)
            else:
                raise

    if last_exception:
        raise last_exception
    raise RuntimeError("Retry logic error")


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker to stop hammering a provider that is down.

    State Transitions:
        CLOSED -> OPEN: When failure_count >= failure_threshold
        OPEN -> HALF_OPEN: When timeout expires
        HALF_OPEN -> CLOSED: When success_threshold test requests succeed
        HALF_OPEN -> OPEN: When a test request fails
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 2,
        name: str = "default",
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _should_attempt(self) -> bool:
        """Check if request should be attempted based on current state."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._last_failure_time:
                elapsed = (datetime.now(UTC) - self._last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    return True
            return False

        return True

    async def before_call(self) -> None:
        """Gate a request; raises CircuitOpenError while the circuit is open."""
        async with self._lock:
            if not self._should_attempt():
                reset_at = None
                if self._last_failure_time:
                    reset_at = self._last_failure_time + timedelta(seconds=self.timeout)

                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )

            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

    async def record_success(self):
        async with self._lock:
            self._failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.info(
                        f"Circuit '{self.name}' closing after "
                        f"{self._success_count} successes"
                    )
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def record_failure(self, exception: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after test failure: {exception}"
                )
                self._state = CircuitState.OPEN

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    logger.warning(
                        f"Circuit '{self.name}' opening after "
                        f"{self._failure_count} failures"
                    )
                    self._state = CircuitState.OPEN

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": (
                self._last_failure_time.isoformat()
                if self._last_failure_time
                else None
            ),
        }


# ============================================
# Deadlines
# ============================================

async def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout_seconds: Optional[float],
    *args,
    operation: Optional[str] = None,
    **kwargs,
) -> T:
    """Execute an async function with a deadline.

    A hung upstream or storage call must not hold a job in processing
    forever, so every suspension point in the worker goes through here.

    Args:
        func: Async function to execute
        timeout_seconds: Deadline in seconds (None disables the deadline)
        *args: Arguments for func
        operation: Name used in the error message
        **kwargs: Keyword arguments for func

    Raises:
        TimeoutError: If the deadline passes (the inner call is cancelled)
    """
    if timeout_seconds is None:
        return await func(*args, **kwargs)

    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        name = operation or getattr(func, "__name__", "operation")
        raise TimeoutError(
            f"{name} timed out after {timeout_seconds:g}s",
            timeout_seconds=timeout_seconds,
            cause=e,
        )


__all__ = [
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "backoff_delay",
    "retry_async",
    "CircuitState",
    "CircuitBreaker",
    "with_timeout",
]
