"""
Exception hierarchy and error classification shared by pipeline components.

Provides:
- ErrorCategory enum for acknowledge/redeliver decisions
- Typed exception hierarchy for pipeline errors
- Classification utilities for foreign exceptions
"""

import asyncio
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures; the job is left unacknowledged and
                   redelivered (broker unreachable, store timeout, write conflict)
        PERMANENT: Failures that will not succeed on redelivery
                   (malformed file, missing record, invalid payload)
        CIRCUIT_OPEN: Circuit breaker is open, rejecting fast without attempting
        UNKNOWN: Unclassified errors, treated like transient ones
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should leave the job eligible for redelivery."""
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.CIRCUIT_OPEN,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class ConnectionError(TransientError):
    """Network connection to a backing service failed."""

    pass


class TimeoutError(TransientError):
    """Operation timed out."""

    pass


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class NotFoundError(PermanentError):
    """Referenced resource does not exist."""

    pass


class ValidationError(PermanentError):
    """Data validation failed."""

    pass


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


# =============================================================================
# Circuit Breaker Errors
# =============================================================================


class CircuitOpenError(PipelineError):
    """Circuit breaker is open, rejecting requests."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(
        self,
        circuit_name: str,
        retry_after: float,
        cause: Optional[Exception] = None,
    ):
        message = f"Circuit '{circuit_name}' is open"
        super().__init__(message, cause, {"circuit_name": circuit_name})
        self.circuit_name = circuit_name
        self.retry_after = retry_after


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    if isinstance(exc, (asyncio.TimeoutError, OSError)):
        return ErrorCategory.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "no route to host",
        "network unreachable",
        "name resolution",
        "broken pipe",
        "nobrokersavailable",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    # Programming and data errors will not heal on redelivery
    if isinstance(exc, (KeyError, TypeError, ValueError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def is_transient_error(exc: BaseException) -> bool:
    """Check if exception should leave its job for redelivery."""
    return classify_exception(exc) in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.CIRCUIT_OPEN,
        ErrorCategory.UNKNOWN,
    )
