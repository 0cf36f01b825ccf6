"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base classes
    PipelineError,
    TransientError,
    PermanentError,
    CircuitOpenError,
    # Transient errors
    ConnectionError,
    TimeoutError,
    # Permanent errors
    NotFoundError,
    ValidationError,
    ConfigurationError,
    # Classification utilities
    classify_exception,
    is_transient_error,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    "CircuitOpenError",
    # Transient errors
    "ConnectionError",
    "TimeoutError",
    # Permanent errors
    "NotFoundError",
    "ValidationError",
    "ConfigurationError",
    # Classification utilities
    "classify_exception",
    "is_transient_error",
]
