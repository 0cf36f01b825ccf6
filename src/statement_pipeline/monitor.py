"""
Health and metrics monitoring for a running WorkerManager.

Two periodic loops:
- health: work log reachability plus per-worker state, classified as
  healthy, degraded (individual workers failing) or unhealthy (broker
  unreachable)
- metrics: processed/error totals per worker type, throughput since the
  manager started, and backlog per stream

Both loops are observational only. Errors inside them are logged and
swallowed so monitoring can never take the pipeline down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.logging import get_logger, log_exception, log_with_context
from statement_pipeline.metrics import (
    update_connection_status,
    update_health_status,
    update_stream_length,
)
from statement_pipeline.schemas.records import utc_now

if TYPE_CHECKING:
    from statement_pipeline.manager import WorkerManager

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthReport:
    status: HealthStatus
    work_log_connected: bool
    issues: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "work_log_connected": self.work_log_connected,
            "issues": list(self.issues),
            "checked_at": self.checked_at.isoformat(),
        }


class HealthMonitor:
    """
    Periodic health classification and metrics sampling for one manager.

    Usage:
        >>> monitor = HealthMonitor(manager)
        >>> report = await monitor.check_health()
        >>> snapshot = await monitor.collect_metrics()
    """

    def __init__(self, manager: "WorkerManager"):
        self.manager = manager
        self.last_report: Optional[HealthReport] = None
        self.last_metrics: Dict[str, Any] = {}
        # Error counts seen at the previous check, per worker identity
        self._seen_errors: Dict[str, int] = {}

    async def check_health(self) -> HealthReport:
        """Classify pipeline health and publish it as a gauge."""
        try:
            connected = await self.manager.work_log.ping()
        except Exception as e:
            log_exception(
                logger, e, "Work log ping raised", level=logging.WARNING, include_traceback=False
            )
            connected = False
        update_connection_status(connected)

        issues: List[str] = []
        if not connected:
            issues.append("work log unreachable")

        for identity, entry in self.manager.workers.items():
            issue = self._worker_issue(identity, entry)
            if issue:
                issues.append(issue)

        if not connected:
            status = HealthStatus.UNHEALTHY
        elif issues:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        report = HealthReport(status=status, work_log_connected=connected, issues=issues)
        if self.last_report is None or self.last_report.status != status:
            log_with_context(
                logger,
                logging.INFO if status == HealthStatus.HEALTHY else logging.WARNING,
                "Pipeline health changed",
                health=status.value,
                issues=issues,
            )
        self.last_report = report
        update_health_status(status.value)
        return report

    def _worker_issue(self, identity: str, entry: Any) -> Optional[str]:
        if entry.abandoned:
            return f"{identity} abandoned after repeated crashes"

        if entry.worker is not None:
            stats = entry.worker.stats()
            if self.manager.is_running and not stats["is_running"]:
                return f"{identity} is not running"
            previous = self._seen_errors.get(identity, 0)
            self._seen_errors[identity] = stats["error_count"]
            if stats["error_count"] > previous:
                return f"{identity} reported {stats['error_count'] - previous} new errors"
            return None

        if entry.process is not None and entry.process.returncode is not None:
            return f"{identity} exited with code {entry.process.returncode}"
        return None

    async def collect_metrics(self) -> Dict[str, Any]:
        """Aggregate counters per worker type and sample stream backlogs."""
        by_type: Dict[str, Dict[str, int]] = {}
        for entry in self.manager.workers.values():
            totals = by_type.setdefault(
                entry.worker_type.value, {"workers": 0, "processed": 0, "errors": 0}
            )
            totals["workers"] += 1
            if entry.worker is not None:
                stats = entry.worker.stats()
                totals["processed"] += stats["processed_count"]
                totals["errors"] += stats["error_count"]

        total_processed = sum(t["processed"] for t in by_type.values())
        total_errors = sum(t["errors"] for t in by_type.values())
        uptime = self.manager.uptime_seconds
        throughput = total_processed / (uptime / 60.0) if uptime > 0 else 0.0

        stream_lengths: Dict[str, Optional[int]] = {}
        for stream in self.manager.config.streams.all():
            try:
                length = await self.manager.work_log.length(stream)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Failed to sample stream length",
                    level=logging.DEBUG,
                    include_traceback=False,
                    stream=stream,
                )
                stream_lengths[stream] = None
                continue
            stream_lengths[stream] = length
            update_stream_length(stream, length)

        snapshot = {
            "uptime_seconds": round(uptime, 3),
            "total_processed": total_processed,
            "total_errors": total_errors,
            "throughput_per_minute": round(throughput, 3),
            "by_worker_type": by_type,
            "stream_lengths": stream_lengths,
        }
        self.last_metrics = snapshot
        return snapshot

    # -------------------------------------------------------------------------
    # Periodic loops
    # -------------------------------------------------------------------------

    async def run_health_checks(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.check_health()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(logger, e, "Health check failed", level=logging.WARNING)

    async def run_metrics_collection(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                snapshot = await self.collect_metrics()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(logger, e, "Metrics collection failed", level=logging.WARNING)
                continue
            log_with_context(
                logger,
                logging.INFO,
                "Pipeline metrics",
                total_processed=snapshot["total_processed"],
                total_errors=snapshot["total_errors"],
                throughput_per_minute=snapshot["throughput_per_minute"],
                stream_lengths=snapshot["stream_lengths"],
            )
