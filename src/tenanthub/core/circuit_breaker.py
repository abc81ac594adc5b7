"""Circuit breaker for calls to external infrastructure APIs.

States:
- CLOSED: calls pass through
- OPEN: calls are rejected until the cool-down elapses
- HALF_OPEN: trial calls decide whether to close again

One breaker per external dependency (docker, dns, proxy, storage, ...),
looked up by name through get_circuit_breaker().
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from tenanthub.app.metrics.collector import (
    CIRCUIT_BREAKER_CALLS_TOTAL,
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    CIRCUIT_BREAKER_STATE,
)
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when circuit is open and request is rejected."""

    def __init__(self, service: str, retry_after: float) -> None:
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {service}, retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Circuit breaker with configurable thresholds.

    Args:
        name: Breaker name (metric label and log field)
        failure_threshold: Consecutive failures that open the circuit
        success_threshold: Half-open successes that close it again
        timeout: Seconds the circuit stays open before a trial call
        error_classifier: Returns 'permanent', 'retryable' or 'unknown';
            permanent errors (bad request, not found) don't count as failures
        clock: Monotonic time source
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        error_classifier: Callable[[Exception], str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._error_classifier = error_classifier
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _set_state(self, state: CircuitState, **log_fields) -> None:
        logger.info(
            "Circuit %s: %s -> %s",
            self.name,
            self._state.value,
            state.value,
            extra={"event": LogEvent.STATE_CHANGED, "circuit": self.name, **log_fields},
        )
        self._state = state
        CIRCUIT_BREAKER_STATE.labels(circuit=self.name).set(_STATE_VALUES[state.value])

    async def call(self, coro_factory: Callable[[], Awaitable[T]]) -> T:
        """Run one call under breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
        """
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                retry_after = max(0.0, self.timeout - (self._clock() - (self._opened_at or 0)))
                CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(circuit=self.name).inc()
                logger.warning(
                    "Circuit OPEN, rejecting request",
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "circuit": self.name,
                        "retry_after": retry_after,
                    },
                )
                raise CircuitOpenError(self.name, retry_after)

        try:
            result = await coro_factory()
        except Exception as exc:
            CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="failure").inc()
            if self._error_classifier and self._error_classifier(exc) == "permanent":
                raise
            await self._record_failure()
            raise

        CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="success").inc()
        await self._record_success()
        return result

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.timeout
        ):
            self._success_count = 0
            self._set_state(CircuitState.HALF_OPEN)

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._failure_count = 0
                    self._set_state(CircuitState.CLOSED, success_count=self._success_count)
            else:
                self._failure_count = 0

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._opened_at = self._clock()
                self._set_state(CircuitState.OPEN, failure_count=self._failure_count)


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str = "default",
    error_classifier: Callable[[Exception], str] | None = None,
) -> CircuitBreaker:
    """Get or create circuit breaker by name.

    error_classifier is only used when the breaker is first created.
    """
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name=name, error_classifier=error_classifier)
    return _circuit_breakers[name]


def reset_all_circuit_breakers() -> None:
    """Reset all circuit breakers (for testing)."""
    _circuit_breakers.clear()
