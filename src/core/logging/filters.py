"""Logging filters."""

import logging

from core.logging.context import get_log_context


class StageContextFilter(logging.Filter):
    """
    Pass only records emitted while the log context stage matches.

    Used by per-worker file handlers so each worker type gets its own file.
    """

    def __init__(self, stage: str):
        super().__init__()
        self.stage = stage

    def filter(self, record: logging.LogRecord) -> bool:
        return get_log_context()["stage"] == self.stage
