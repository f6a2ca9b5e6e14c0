"""
Resilience patterns for the durable store.

1. **Circuit Breaker**: every repository call goes through ``db_circuit_breaker``.
   After ``CB_FAILURE_THRESHOLD`` consecutive connection-level failures the
   circuit opens and calls fail fast with :class:`CircuitBreakerError` until
   ``CB_RECOVERY_TIMEOUT`` has elapsed; then one probe call is let through.

2. **Retry with Exponential Backoff**: wraps whole transactional units
   (``accept_proposal``, ``fund_contract``, ...).  Row locks taken with
   ``SELECT ... FOR UPDATE`` can deadlock or hit a serialization failure on
   PostgreSQL; the unit is rolled back by the caller and replayed from the
   start, re-reading every row it depends on.
"""

import asyncio
import functools
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type

from sqlalchemy.exc import DBAPIError, OperationalError

from marketplace.core.config import settings

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs worth replaying: serialization_failure, deadlock_detected.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


# ────────────────────────────────────────────────────────────────────────────
# Circuit Breaker
# ────────────────────────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    """Possible states of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is OPEN, failing fast. Retry after {retry_after:.1f}s."
        )


class CircuitBreaker:
    """
    Async circuit breaker.

    Only ``expected_exceptions`` count as failures; domain errors and
    integrity errors pass straight through without touching the counters.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._seconds_open() >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit '%s' → HALF_OPEN", self.name)
        return self._state

    def _seconds_open(self) -> float:
        return time.monotonic() - self._opened_at

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` unless the circuit is open."""
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerError(
                self.name, max(self.recovery_timeout - self._seconds_open(), 0.0)
            )

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions:
            self._on_failure()
            raise

        if self._state != CircuitState.CLOSED:
            logger.info("Circuit '%s' → CLOSED", self.name)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        return result

    def _on_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.error(
                "Circuit '%s' → OPEN after %d failures; fast-failing for %.1fs",
                self.name,
                self._failure_count,
                self.recovery_timeout,
            )
        else:
            logger.warning(
                "Circuit '%s' failure %d/%d",
                self.name,
                self._failure_count,
                self.failure_threshold,
            )

    def get_status(self) -> dict:
        """Snapshot for health reporting."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_s": self.recovery_timeout,
        }


db_circuit_breaker = CircuitBreaker(
    name="database",
    failure_threshold=settings.CB_FAILURE_THRESHOLD,
    recovery_timeout=settings.CB_RECOVERY_TIMEOUT,
    expected_exceptions=(ConnectionError, OSError, TimeoutError),
)


# ────────────────────────────────────────────────────────────────────────────
# Retry with Exponential Backoff
# ────────────────────────────────────────────────────────────────────────────


def is_transient_db_error(exc: BaseException) -> bool:
    """True for deadlocks / serialization failures that a replay can resolve."""
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        if sqlstate in _RETRYABLE_SQLSTATES:
            return True
        return isinstance(exc, OperationalError) and "locked" in str(exc.orig).lower()
    return False


def retry_with_backoff(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: float = 5.0,
    retry_if: Callable[[BaseException], bool] = is_transient_db_error,
) -> Callable:
    """
    Decorator: replay an async callable when ``retry_if(exc)`` is true.

    Defaults come from ``TX_MAX_RETRIES`` / ``TX_RETRY_BASE_DELAY``.  Delays
    double per attempt with up to 50% jitter.  Any other exception propagates
    on the first attempt.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            retries = settings.TX_MAX_RETRIES if max_retries is None else max_retries
            delay = settings.TX_RETRY_BASE_DELAY if base_delay is None else base_delay

            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if attempt >= retries or not retry_if(exc):
                        raise
                    attempt += 1
                    pause = min(delay, max_delay)
                    pause += random.uniform(0, pause * 0.5)
                    logger.warning(
                        "Retry %d/%d for %s in %.2fs (%s)",
                        attempt,
                        retries,
                        func.__qualname__,
                        pause,
                        type(exc).__name__,
                    )
                    await asyncio.sleep(pause)
                    delay *= 2

        return wrapper

    return decorator
