"""Tests for the rate limiter, circuit breaker and retry helpers."""

import pytest
from unittest.mock import AsyncMock

from app.core.scheduling.errors import EMRClientError, EMRTransientError
from app.infra.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryPolicy,
    SlidingWindowRateLimiter,
    retry_async,
)


class ManualClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def _fail():
    raise EMRTransientError("boom", 503)


async def _ok():
    return "ok"


class TestCircuitBreaker:
    """Test CircuitBreaker state transitions."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            name="emr",
            failure_threshold=5,
            reset_timeout=60.0,
            half_open_successes=3,
            clock=clock,
        )

    async def _trip(self, breaker):
        for _ in range(5):
            with pytest.raises(EMRTransientError):
                await breaker.call(_fail)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        """Five consecutive failures open the circuit."""
        for _ in range(4):
            with pytest.raises(EMRTransientError):
                await breaker.call(_fail)
        assert breaker.state == CircuitState.CLOSED

        with pytest.raises(EMRTransientError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, breaker):
        """An open circuit fails fast."""
        await self._trip(breaker)
        operation = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenError):
            await breaker.call(operation)
        operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_half_open_after_timeout(self, breaker, clock):
        await self._trip(breaker)
        clock.now += 59
        assert breaker.state == CircuitState.OPEN
        clock.now += 1
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_three_successes_close(self, breaker, clock):
        """Half-open needs three successful trials to close."""
        await self._trip(breaker)
        clock.now += 60

        await breaker.call(_ok)
        await breaker.call(_ok)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.call(_ok)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failure_in_half_open_reopens(self, breaker, clock):
        await self._trip(breaker)
        clock.now += 60
        await breaker.call(_ok)

        with pytest.raises(EMRTransientError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count(self, breaker):
        """Terminal 4xx errors leave the breaker closed."""

        async def rejected():
            raise EMRClientError("bad request", 400)

        for _ in range(10):
            with pytest.raises(EMRClientError):
                await breaker.call(rejected)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        for _ in range(3):
            with pytest.raises(EMRTransientError):
                await breaker.call(_fail)
        await breaker.call(_ok)
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_reset_closes(self, breaker):
        await self._trip(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED


class TestSlidingWindowRateLimiter:
    """Test SlidingWindowRateLimiter."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_without_waiting(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(max_requests=3, window=1.0, clock=clock, sleep=clock.sleep)

        for _ in range(3):
            await limiter.acquire()

        assert clock.sleeps == []
        assert limiter.in_window == 3

    @pytest.mark.asyncio
    async def test_waits_for_window_to_slide(self):
        """The request over the limit waits until the oldest leaves the window."""
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(max_requests=2, window=1.0, clock=clock, sleep=clock.sleep)

        await limiter.acquire()
        clock.now += 0.25
        await limiter.acquire()
        await limiter.acquire()

        assert clock.sleeps == [pytest.approx(0.75)]
        assert clock.now == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_old_requests_expire(self):
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(max_requests=10, window=1.0, clock=clock, sleep=clock.sleep)
        for _ in range(10):
            await limiter.acquire()

        clock.now += 1.0
        assert limiter.in_window == 0


class TestRetry:
    """Test RetryPolicy and retry_async."""

    def test_delays_double_and_cap(self):
        policy = RetryPolicy(max_attempts=8, base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        clock = ManualClock()
        operation = AsyncMock(side_effect=[EMRTransientError("a"), EMRTransientError("b"), "done"])

        result = await retry_async(operation, RetryPolicy(max_attempts=3), sleep=clock.sleep)

        assert result == "done"
        assert operation.await_count == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        clock = ManualClock()
        operation = AsyncMock(side_effect=EMRTransientError("down"))

        with pytest.raises(EMRTransientError):
            await retry_async(operation, RetryPolicy(max_attempts=3), sleep=clock.sleep)

        assert operation.await_count == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        clock = ManualClock()
        operation = AsyncMock(side_effect=EMRClientError("bad", 422))

        with pytest.raises(EMRClientError):
            await retry_async(operation, RetryPolicy(max_attempts=3), sleep=clock.sleep)

        assert operation.await_count == 1
        assert clock.sleeps == []
