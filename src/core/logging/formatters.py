"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "duration_ms",
        "error_category",
        "error_message",
        "batch_size",
        "circuit_name",
        "circuit_state",
        # Work log
        "stream",
        "group",
        "consumer",
        "message_id",
        "delivery_count",
        "stream_length",
        # Jobs
        "job_type",
        "next_job_type",
        "correlation_id",
        "lease_token",
        # Records
        "statement_id",
        "transaction_id",
        "stage",
        "status",
        "transaction_count",
        "rejected_rows",
        "error_count",
        "validation_rate",
        "risk_score",
        "risk_level",
        "category",
        "source",
        # Workers
        "worker_type",
        "worker_name",
        "worker_count",
        "pid",
        "exit_code",
        "restart_count",
        "delay_seconds",
        "processed_count",
        "success_rate",
        "rate_per_minute",
        "health",
        "worker",
        "returncode",
        "restarts_in_window",
        "grace_period_seconds",
        "clustered",
        "max_workers",
        "issues",
        "total_processed",
        "total_errors",
        "throughput_per_minute",
        "stream_lengths",
        "replayed",
        "holder",
        "user_id",
        "pattern_count",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables
        ctx = get_log_context()
        if ctx["domain"]:
            log_entry["domain"] = ctx["domain"]
        if ctx["stage"]:
            log_entry["stage"] = ctx["stage"]
        if ctx["worker_id"]:
            log_entry["worker_id"] = ctx["worker_id"]
        if ctx["correlation_id"]:
            log_entry["correlation_id"] = ctx["correlation_id"]

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        if ctx["domain"]:
            parts.append(f"[{ctx['domain']}]")
        if ctx["stage"]:
            parts.append(f"[{ctx['stage']}]")

        prefix = " - ".join(parts)

        correlation_id = ctx["correlation_id"] or getattr(record, "correlation_id", None)
        if correlation_id:
            message = f"{prefix} - [{str(correlation_id)[:12]}] {record.getMessage()}"
        else:
            message = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
