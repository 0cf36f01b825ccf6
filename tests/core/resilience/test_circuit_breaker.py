"""Tests for the circuit breaker."""

import asyncio
from unittest.mock import patch

import pytest

from core.errors.exceptions import CircuitOpenError, ValidationError
from core.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState


def make_breaker(**overrides):
    config = CircuitBreakerConfig(
        failure_threshold=overrides.pop("failure_threshold", 2),
        success_threshold=overrides.pop("success_threshold", 1),
        timeout_seconds=overrides.pop("timeout_seconds", 30.0),
        half_open_max_calls=overrides.pop("half_open_max_calls", 1),
    )
    return CircuitBreaker("test", config, **overrides)


async def failing():
    raise asyncio.TimeoutError("scorer timed out")


async def succeeding():
    return "ok"


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_opens_after_threshold_transient_failures(self):
        breaker = make_breaker()

        for _ in range(2):
            with pytest.raises(asyncio.TimeoutError):
                await breaker.call_async(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call_async(succeeding)
        assert breaker.stats.rejected_calls == 1

    async def test_permanent_errors_do_not_trip(self):
        breaker = make_breaker()

        async def bad_input():
            raise ValidationError("bad transaction")

        for _ in range(5):
            with pytest.raises(ValidationError):
                await breaker.call_async(bad_input)

        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_success_closes(self):
        transitions = []
        breaker = make_breaker(
            on_state_change=lambda old, new: transitions.append((old, new))
        )
        for _ in range(2):
            with pytest.raises(asyncio.TimeoutError):
                await breaker.call_async(failing)

        with patch("core.resilience.circuit_breaker.time.time") as fake_time:
            fake_time.return_value = breaker._last_failure_time + 31
            assert breaker.state == CircuitState.HALF_OPEN
            assert await breaker.call_async(succeeding) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert (CircuitState.CLOSED, CircuitState.OPEN) in transitions
        assert (CircuitState.HALF_OPEN, CircuitState.CLOSED) in transitions

    async def test_success_passes_result_through(self):
        breaker = make_breaker()

        assert await breaker.call_async(succeeding) == "ok"
        assert breaker.stats.successful_calls == 1
