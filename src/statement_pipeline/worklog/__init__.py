"""
Durable work streams with consumer-group delivery.

Backends:
- InMemoryWorkLog: single process, no external services
- KafkaWorkLog: shared between processes, required for clustered mode
"""

from statement_pipeline.config import WorkLogBackend, WorkLogConfig
from statement_pipeline.worklog.base import StreamEntry, WorkLog
from statement_pipeline.worklog.memory import InMemoryWorkLog


def create_work_log(config: WorkLogConfig) -> WorkLog:
    """Build the work log selected by config.backend."""
    if config.backend == WorkLogBackend.KAFKA:
        from statement_pipeline.worklog.kafka import KafkaWorkLog

        return KafkaWorkLog(config)
    return InMemoryWorkLog(reclaim_idle_ms=config.reclaim_idle_ms)


__all__ = ["StreamEntry", "WorkLog", "InMemoryWorkLog", "create_work_log"]
