"""
Circuit breaker pattern for resilience against cascading failures.

Guards calls into external scoring services (transaction classifier, risk
scorer). While the circuit is open, callers fail fast and switch to their
local fallback instead of waiting on a dead dependency.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Failing, requests rejected immediately (fast-fail)
- HALF_OPEN: Testing recovery, limited requests allowed

Usage:
    breaker = CircuitBreaker("classifier", CLASSIFIER_CIRCUIT_CONFIG)
    result = await breaker.call_async(lambda: classifier.classify(txn))
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from core.errors.exceptions import (
    CircuitOpenError,
    ErrorCategory,
    classify_exception,
)
from core.logging.utilities import log_exception, log_with_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    # Number of failures before opening circuit
    failure_threshold: int = 5

    # Number of successes in half-open before closing
    success_threshold: int = 2

    # Seconds to wait in open state before testing
    timeout_seconds: float = 30.0

    # Max concurrent calls allowed in half-open
    half_open_max_calls: int = 3

    # Error categories that count as failures (None = transient and unknown)
    failure_categories: Optional[tuple] = None


# External classifier: a handful of failures means the service is down,
# fall back to keyword rules for a minute before probing again.
CLASSIFIER_CIRCUIT_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    success_threshold=2,
    timeout_seconds=60.0,
    half_open_max_calls=3,
)

RISK_SCORER_CIRCUIT_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    success_threshold=1,
    timeout_seconds=60.0,
    half_open_max_calls=1,
)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    current_state: str = "closed"


class CircuitBreaker:
    """
    Circuit breaker implementation with exception-aware failure tracking.

    Thread-safe for concurrent access.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_calls = 0

        self._stats = CircuitStats()
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state (may transition on access)."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        """Get copy of current statistics."""
        with self._lock:
            self._check_state_transition()
            return CircuitStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                state_changes=self._stats.state_changes,
                last_failure_time=self._stats.last_failure_time,
                last_success_time=self._stats.last_success_time,
                current_state=self._state.value,
            )

    def _should_count_failure(self, exc: Exception) -> bool:
        category = classify_exception(exc)

        if self.config.failure_categories:
            return category in self.config.failure_categories

        # Permanent errors are bad input, not a sick dependency
        return category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
            ErrorCategory.CIRCUIT_OPEN,
        )

    def _check_state_transition(self) -> None:
        """Check if state should transition (called under lock)."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = time.time() - self._last_failure_time
            if elapsed >= self.config.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to new state (called under lock)."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._stats.state_changes += 1
        self._stats.current_state = new_state.value

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            level = logging.INFO
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
            level = logging.INFO
        else:
            self._success_count = 0
            level = logging.WARNING

        log_with_context(
            logger,
            level,
            f"Circuit {new_state.value.replace('_', '-')}",
            circuit_name=self.name,
            circuit_state=new_state.value,
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Error in circuit state change callback",
                    level=logging.WARNING,
                    include_traceback=False,
                    circuit_name=self.name,
                )

    def _record_success(self) -> None:
        """Record successful call (called under lock)."""
        self._stats.successful_calls += 1
        self._stats.last_success_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            # Consecutive failure tracking
            self._failure_count = 0

    def _record_failure(self, exc: Exception) -> None:
        """Record failed call (called under lock)."""
        self._stats.failed_calls += 1
        self._stats.last_failure_time = time.time()

        if not self._should_count_failure(exc):
            return

        self._last_failure_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _can_execute(self) -> bool:
        """Check if call can proceed (called under lock)."""
        self._check_state_transition()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            return False

        if self._half_open_calls < self.config.half_open_max_calls:
            self._half_open_calls += 1
            return True

        return False

    def _get_retry_after(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = time.time() - self._last_failure_time
        return max(0.0, self.config.timeout_seconds - elapsed)

    def _before_call(self) -> None:
        with self._lock:
            self._stats.total_calls += 1
            if not self._can_execute():
                self._stats.rejected_calls += 1
                raise CircuitOpenError(self.name, self._get_retry_after())

    def call(self, func: Callable[[], T]) -> T:
        """
        Execute function through circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Any exception from func (also recorded as failure)
        """
        self._before_call()
        try:
            result = func()
        except Exception as e:
            with self._lock:
                self._record_failure(e)
            raise
        with self._lock:
            self._record_success()
        return result

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await a coroutine factory through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Any exception from func (also recorded as failure)
        """
        self._before_call()
        try:
            result = await func()
        except Exception as e:
            with self._lock:
                self._record_failure(e)
            raise
        with self._lock:
            self._record_success()
        return result

    def record_success(self) -> None:
        """Manually record a success."""
        with self._lock:
            self._stats.total_calls += 1
            self._record_success()

    def record_failure(self, exc: Exception) -> None:
        """Manually record a failure."""
        with self._lock:
            self._stats.total_calls += 1
            self._record_failure(exc)

    def reset(self) -> None:
        """Manually reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None

    def get_diagnostics(self) -> dict:
        """Get diagnostic info for health checks."""
        with self._lock:
            self._check_state_transition()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "stats": {
                    "total_calls": self._stats.total_calls,
                    "successful_calls": self._stats.successful_calls,
                    "failed_calls": self._stats.failed_calls,
                    "rejected_calls": self._stats.rejected_calls,
                    "state_changes": self._stats.state_changes,
                },
            }
