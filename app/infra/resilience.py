"""
Resilience primitives for outbound calls.

- SlidingWindowRateLimiter: caps requests per rolling window
- CircuitBreaker: closed / open / half-open failure isolation
- RetryPolicy + retry_async: capped exponential backoff

Clocks and sleep functions are injectable so behaviour can be driven
deterministically from tests.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    retryable = False

    def __init__(self, name: str = "service"):
        super().__init__(f"Circuit breaker is open - {name} unavailable")
        self.name = name


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` within any ``window`` seconds."""

    def __init__(
        self,
        max_requests: int = 10,
        window: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait until a request may be issued, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return

                wait = self.window - (now - self._timestamps[0])
                logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
                await self._sleep(max(wait, 0.0))

    @property
    def in_window(self) -> int:
        """Requests recorded in the current window."""
        self._evict(self._clock())
        return len(self._timestamps)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _is_service_failure(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


class CircuitBreaker:
    """
    Three-state circuit breaker.

    CLOSED: calls pass; consecutive service failures are counted and the
    breaker opens at ``failure_threshold``.
    OPEN: calls are rejected with CircuitOpenError until ``reset_timeout``
    has elapsed since the last failure, then the breaker is HALF_OPEN.
    HALF_OPEN: trial calls pass; ``half_open_successes`` successes close
    the breaker, any failure reopens it.

    Only exceptions classified by ``is_failure`` count. Terminal client
    errors (bad request, not found) leave the counters untouched.
    """

    def __init__(
        self,
        name: str = "service",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_successes: int = 3,
        clock: Clock = time.monotonic,
        is_failure: Callable[[BaseException], bool] = _is_service_failure,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._is_failure = is_failure

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_at is not None
            and self._clock() - self._last_failure_at >= self.reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.warning(f"Circuit '{self.name}' {self._state.value} -> {new_state.value}")
        self._state = new_state
        if new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0

    def record_success(self) -> None:
        self._failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.half_open_successes:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._last_failure_at = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker closed."""
        self._transition(CircuitState.CLOSED)
        self._last_failure_at = None

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: if the breaker is open
        """
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.name)

        try:
            result = await operation()
        except Exception as e:
            if self._is_failure(e):
                self.record_failure()
            raise

        self.record_success()
        return result


@dataclass
class RetryPolicy:
    """Capped exponential backoff: ``min(base * 2**(attempt-1), max)``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = _is_service_failure,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    """Run ``operation`` with retries per ``policy``.

    The last exception is re-raised once attempts are exhausted or a
    non-retryable error occurs.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)
