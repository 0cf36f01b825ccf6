"""
Structured logging module.

Provides JSON logging with correlation IDs and context propagation.

Import from here or directly from sub-modules:
    from core.logging.setup import setup_logging, setup_multi_worker_logging
    from core.logging.context import set_log_context
    from core.logging.utilities import log_with_context, log_exception
"""

from core.logging.context import (
    clear_correlation_id,
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.setup import get_logger
from core.logging.utilities import log_exception, log_with_context

__all__ = [
    "clear_correlation_id",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_exception",
    "log_with_context",
    "set_log_context",
]
