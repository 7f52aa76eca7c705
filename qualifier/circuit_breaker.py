"""
Circuit breaker pattern for resilient external service calls.
Stops hammering the Language Service or Snowflake while they are down,
so a turn degrades to its fallback immediately instead of waiting on a timeout.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitBreakerOpenError(RuntimeError):
    """Raised when circuit breaker blocks execution."""


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Circuit breaker shared by sync (Snowflake) and async (Language Service) callers.

    States:
    - CLOSED: Requests pass through normally
    - OPEN: All requests fail immediately (service is down)
    - HALF_OPEN: Allow one test request to check if service recovered

    Transitions:
    - CLOSED -> OPEN: After failure_threshold consecutive failures
    - OPEN -> HALF_OPEN: After timeout seconds
    - HALF_OPEN -> CLOSED: If test request succeeds
    - HALF_OPEN -> OPEN: If test request fails
    """

    def __init__(self, failure_threshold: int = 5, timeout: int = 60, name: str = "CircuitBreaker"):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening circuit
            timeout: Seconds to wait before attempting recovery
            name: Name for logging
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name

        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self.last_failure_time = None

        logger.info(
            f"CircuitBreaker '{name}' initialized: "
            f"threshold={failure_threshold}, timeout={timeout}s"
        )

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a synchronous function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is OPEN
            Exception: Whatever ``func`` raised (after being counted)
        """
        self._before_call()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result

    async def acall(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await a coroutine function with circuit breaker protection.

        Timeouts raised inside ``func`` count as failures, so a Language
        Service that keeps timing out opens the circuit.
        """
        self._before_call()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result

    def _before_call(self):
        """Block the call while OPEN, or move to HALF_OPEN once the timeout elapsed."""
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                logger.info(f"CircuitBreaker '{self.name}': OPEN -> HALF_OPEN")
                self.state = CircuitState.HALF_OPEN
            else:
                raise CircuitBreakerOpenError(
                    f"CircuitBreaker '{self.name}' is OPEN. Service unavailable."
                )

    def _record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"CircuitBreaker '{self.name}': HALF_OPEN -> CLOSED")
            self._reset()
        else:
            self.failure_count = 0

    def _record_failure(self, error: Exception):
        """Record a failure and potentially open circuit."""
        self.failure_count += 1
        self.last_failure_time = time.time()

        logger.error(
            f"CircuitBreaker '{self.name}' failure "
            f"({self.failure_count}/{self.failure_threshold}): {error!r}"
        )

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"CircuitBreaker '{self.name}': {self.state.name} -> OPEN")
            self.state = CircuitState.OPEN

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt recovery."""
        if self.last_failure_time is None:
            return True

        elapsed = time.time() - self.last_failure_time
        return elapsed >= self.timeout

    def _reset(self):
        """Reset circuit breaker to normal operation."""
        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self.last_failure_time = None

    def get_state(self) -> dict:
        """Get current circuit breaker state for monitoring."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
        }
