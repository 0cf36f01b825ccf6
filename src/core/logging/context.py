"""Log context propagation using contextvars.

Values set here are picked up by the formatters and filters in this package.
asyncio tasks copy the current context when they are created, so a worker
task that sets its own stage does not leak it into sibling workers.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_domain: ContextVar[Optional[str]] = ContextVar("log_domain", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("log_stage", default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar("log_worker_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "log_correlation_id", default=None
)


def set_log_context(
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    """
    Set log context values for the current execution context.

    Only the arguments that are not None are changed.
    """
    if domain is not None:
        _domain.set(domain)
    if stage is not None:
        _stage.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if correlation_id is not None:
        _correlation_id.set(correlation_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Return the current log context. Every key is always present."""
    return {
        "domain": _domain.get(),
        "stage": _stage.get(),
        "worker_id": _worker_id.get(),
        "correlation_id": _correlation_id.get(),
    }


def clear_log_context() -> None:
    """Reset all log context values."""
    _domain.set(None)
    _stage.set(None)
    _worker_id.set(None)
    _correlation_id.set(None)


def clear_correlation_id() -> None:
    """Drop the correlation id once a job has been handled."""
    _correlation_id.set(None)
