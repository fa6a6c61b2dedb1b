"""
Resilience helpers - circuit breaker and async exponential backoff.

The circuit breaker guards the generation service: once it keeps failing,
HRN classification, automation replies and lead analysis stop waiting on
it and take their safe defaults immediately.

States:
    CLOSED     calls pass through
    OPEN       calls fail fast with CircuitBreakerError
    HALF_OPEN  a limited number of trial calls decide between the two

    CLOSED --(failures >= threshold)--> OPEN
    OPEN --(recovery_timeout elapsed)--> HALF_OPEN
    HALF_OPEN --(success)--> CLOSED
    HALF_OPEN --(failure)--> OPEN

`with_backoff` retries an async callable with capped exponential delays;
the Supabase store uses it to re-establish its connection.
"""

import asyncio
import logging
import time
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised instead of calling through while the circuit is open."""


class CircuitBreaker:
    """Fail-fast guard around an unreliable async dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None
        self.half_open_calls = 0

        logger.info(
            f"Circuit breaker '{name}' initialized: "
            f"threshold={failure_threshold}, recovery={recovery_timeout}s"
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await `func(*args, **kwargs)` unless the circuit is open.

        Raises:
            CircuitBreakerError: If the circuit refuses the call.
            Exception: Whatever `func` raised (after recording the failure).
        """
        if not self._admit():
            raise CircuitBreakerError(
                f"Circuit breaker '{self.name}' is OPEN - "
                f"retry in {self.seconds_until_retry():.0f}s"
            )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure()
            logger.warning(
                f"Circuit breaker '{self.name}': call failed "
                f"({self.failures}/{self.failure_threshold}) - {e}"
            )
            raise

        self.record_success()
        return result

    def _admit(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.seconds_until_retry() > 0:
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_calls = 0
            logger.info(f"Circuit breaker '{self.name}' -> HALF_OPEN")

        if self.half_open_calls < self.half_open_max_calls:
            self.half_open_calls += 1
            return True
        return False

    def seconds_until_retry(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self.opened_at))

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.name}': recovered, closing circuit")
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.half_open_calls = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.half_open_calls = 0
        logger.error(
            f"Circuit breaker '{self.name}' -> OPEN "
            f"(failures={self.failures}, recovery in {self.recovery_timeout}s)"
        )

    def reset(self) -> None:
        logger.info(f"Circuit breaker '{self.name}': manual reset")
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.half_open_calls = 0
        self.opened_at = None

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "failure_threshold": self.failure_threshold,
            "retry_in_seconds": self.seconds_until_retry(),
        }


def with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: tuple = (Exception,),
):
    """
    Retry an async function with delays of min(base_delay * 2**attempt, max_delay).

    Usage:
        @with_backoff(max_retries=3, base_delay=1, max_delay=10)
        async def connect():
            ...
    """
    def decorator(func: Callable[..., Awaitable[Any]]):
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(
                            f"'{func.__name__}' failed after {max_retries} retries: {e}"
                        )
                        raise
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    logger.warning(
                        f"'{func.__name__}' failed (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
