"""
Tests for the circuit breaker and async backoff helpers.

This module tests the circuit breaker implementation to ensure
proper failure handling and recovery.
"""

from unittest.mock import AsyncMock, patch

import pytest

from dm_pilot.resilience import CircuitBreaker, CircuitBreakerError, CircuitState, with_backoff


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def fail_func():
    raise ValueError("test error")


async def success_func():
    return "success"


class TestCircuitBreaker:
    """Test suite for CircuitBreaker class."""

    @pytest.mark.asyncio
    async def test_circuit_breaker_closed_state(self):
        """Test that circuit breaker starts in CLOSED state."""
        breaker = CircuitBreaker("test", failure_threshold=3)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_successful_call(self):
        """Test successful function call through circuit breaker."""
        breaker = CircuitBreaker("test", failure_threshold=3)

        assert await breaker.call(success_func) == "success"
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_failure_increments_counter(self):
        """Test that failures increment the failure counter."""
        breaker = CircuitBreaker("test", failure_threshold=3)

        with pytest.raises(ValueError):
            await breaker.call(fail_func)

        assert breaker.failures == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_circuit_opens_after_threshold(self):
        """Test that circuit opens after reaching failure threshold."""
        breaker = CircuitBreaker("test", failure_threshold=3)

        for _ in range(3):
            with pytest.raises(ValueError):
                await breaker.call(fail_func)

        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerError):
            await breaker.call(success_func)

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self):
        """Test OPEN -> HALF_OPEN -> CLOSED after a successful trial call."""
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=60, clock=clock)

        with pytest.raises(ValueError):
            await breaker.call(fail_func)
        assert breaker.state == CircuitState.OPEN
        assert breaker.seconds_until_retry() == 60

        clock.now += 61
        assert await breaker.call(success_func) == "success"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        """Test that a failed trial call opens the circuit again."""
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=10, clock=clock)

        with pytest.raises(ValueError):
            await breaker.call(fail_func)
        clock.now += 11

        with pytest.raises(ValueError):
            await breaker.call(fail_func)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerError):
            await breaker.call(success_func)

    @pytest.mark.asyncio
    async def test_reset(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        with pytest.raises(ValueError):
            await breaker.call(fail_func)

        breaker.reset()

        assert breaker.get_status()["state"] == "closed"
        assert await breaker.call(success_func) == "success"


class TestWithBackoff:
    """Test suite for the with_backoff decorator."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = {"n": 0}

        @with_backoff(max_retries=3, base_delay=1, max_delay=10)
        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("down")
            return "ok"

        with patch("dm_pilot.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await flaky() == "ok"

        assert calls["n"] == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        @with_backoff(max_retries=2, base_delay=4, max_delay=5)
        async def always_fails():
            raise ConnectionError("down")

        with patch("dm_pilot.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(ConnectionError):
                await always_fails()

        assert [c.args[0] for c in sleep.call_args_list] == [4, 5]

    @pytest.mark.asyncio
    async def test_only_listed_exceptions_retried(self):
        @with_backoff(max_retries=3, exceptions=(ConnectionError,))
        async def bad_input():
            raise ValueError("bad")

        with patch("dm_pilot.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(ValueError):
                await bad_input()

        sleep.assert_not_called()
