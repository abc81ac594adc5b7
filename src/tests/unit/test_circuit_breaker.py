"""Tests for the circuit breaker guarding infrastructure APIs."""

import pytest

from tenanthub.core.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
    reset_all_circuit_breakers,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def fail() -> str:
    raise RuntimeError("fail")


async def success() -> str:
    return "ok"


class TestCircuitBreaker:
    """Tests for CircuitBreaker state transitions."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    async def _trip(self, cb: CircuitBreaker) -> None:
        for _ in range(cb.failure_threshold):
            with pytest.raises(RuntimeError):
                await cb.call(fail)
        assert cb.state == CircuitState.OPEN

    async def test_initial_state_is_closed(self) -> None:
        """Circuit should start in CLOSED state."""
        assert CircuitBreaker(name="test").state == CircuitState.CLOSED

    async def test_success_keeps_circuit_closed(self) -> None:
        """Successful calls should keep circuit closed."""
        cb = CircuitBreaker(name="test", failure_threshold=3)
        for _ in range(10):
            assert await cb.call(success) == "ok"
        assert cb.state == CircuitState.CLOSED

    async def test_failures_open_circuit(self) -> None:
        """Circuit should open after failure_threshold failures."""
        cb = CircuitBreaker(name="test", failure_threshold=3)
        await self._trip(cb)

    async def test_open_circuit_rejects_immediately(self, clock: FakeClock) -> None:
        """Open circuit should reject calls with CircuitOpenError."""
        cb = CircuitBreaker(name="docker", failure_threshold=2, timeout=30.0, clock=clock)
        await self._trip(cb)

        clock.now += 10
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.call(success)

        assert exc_info.value.service == "docker"
        assert exc_info.value.retry_after == pytest.approx(20.0)

    async def test_half_open_success_closes_circuit(self, clock: FakeClock) -> None:
        """Circuit should close after success_threshold successes in HALF_OPEN."""
        cb = CircuitBreaker(
            name="test", failure_threshold=2, success_threshold=2, timeout=5.0, clock=clock
        )
        await self._trip(cb)

        clock.now += 5
        await cb.call(success)
        assert cb.state == CircuitState.HALF_OPEN
        await cb.call(success)
        assert cb.state == CircuitState.CLOSED

    async def test_half_open_failure_reopens_circuit(self, clock: FakeClock) -> None:
        """Circuit should reopen on failure in HALF_OPEN state."""
        cb = CircuitBreaker(name="test", failure_threshold=2, timeout=5.0, clock=clock)
        await self._trip(cb)

        clock.now += 5
        with pytest.raises(RuntimeError):
            await cb.call(fail)
        assert cb.state == CircuitState.OPEN

    async def test_success_resets_failure_count(self) -> None:
        """Success should reset failure count in CLOSED state."""
        cb = CircuitBreaker(name="test", failure_threshold=3)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(fail)
        await cb.call(success)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(fail)

        assert cb.state == CircuitState.CLOSED

    async def test_permanent_errors_do_not_count(self) -> None:
        """Errors classified permanent propagate without tripping the circuit."""
        cb = CircuitBreaker(
            name="test", failure_threshold=2, error_classifier=lambda e: "permanent"
        )
        for _ in range(5):
            with pytest.raises(RuntimeError):
                await cb.call(fail)
        assert cb.state == CircuitState.CLOSED


class TestCircuitBreakerRegistry:
    """Tests for named circuit breaker lookup."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        reset_all_circuit_breakers()

    def test_same_name_same_instance(self) -> None:
        assert get_circuit_breaker("docker") is get_circuit_breaker("docker")

    def test_different_names(self) -> None:
        assert get_circuit_breaker("docker") is not get_circuit_breaker("dns")

    def test_reset_clears_all_instances(self) -> None:
        """reset_all_circuit_breakers should clear all instances."""
        cb1 = get_circuit_breaker("docker")
        reset_all_circuit_breakers()
        assert get_circuit_breaker("docker") is not cb1


class TestCircuitOpenError:
    """Tests for CircuitOpenError exception."""

    def test_has_service_and_retry_after(self) -> None:
        exc = CircuitOpenError("storage", 15.5)
        assert exc.service == "storage"
        assert exc.retry_after == 15.5

    def test_message_format(self) -> None:
        exc = CircuitOpenError("storage", 15.5)
        assert "storage" in str(exc)
        assert "15.5" in str(exc)
