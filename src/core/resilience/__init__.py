"""
Resilience patterns module.

Provides fault tolerance primitives:
    - CircuitBreaker: State machine (closed/open/half-open)
"""

from core.resilience.circuit_breaker import (
    CLASSIFIER_CIRCUIT_CONFIG,
    RISK_SCORER_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
)

__all__ = [
    "CLASSIFIER_CIRCUIT_CONFIG",
    "RISK_SCORER_CIRCUIT_CONFIG",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
]
