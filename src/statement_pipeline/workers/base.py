"""
Stage worker base class.

A stage worker consumes one stream through one consumer group, decodes each
entry into a typed job, dispatches it by job type and acknowledges it once
every side effect (record writes, follow-on jobs) is done.

Outcome per entry:
- success / duplicate: acknowledged
- superseded (another delivery owns the stage): not acknowledged, not an error
- transient or unclassified error: not acknowledged, redelivered later
- permanent error: failure recorded via on_permanent_failure, acknowledged
- unknown job type: logged at ERROR, not acknowledged
- undecodable or over-delivered entry: the statement stage it owns is failed
  and routed to finalization, then the entry is copied to the dead-letter
  stream and acknowledged
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.errors.exceptions import ErrorCategory, classify_exception
from core.logging import (
    clear_correlation_id,
    get_logger,
    log_exception,
    log_with_context,
    set_log_context,
)
from statement_pipeline.config import PipelineConfig, WorkerType
from statement_pipeline.exceptions import (
    JobDecodeError,
    LeaseHeldError,
    StageFailedError,
    StatementNotFoundError,
    UnknownJobTypeError,
)
from statement_pipeline.metrics import (
    record_dead_letter,
    record_job_processed,
    record_read_error,
)
from statement_pipeline.schemas.jobs import (
    DeadLetterEntry,
    FinalizeStatementProcessingJob,
    FinalizeStatementProcessingPayload,
    JobMessage,
    decode_job,
)
from statement_pipeline.schemas.records import (
    ProcessingStatus,
    Stage,
    StageStatus,
    StatementRecord,
    utc_now,
)
from statement_pipeline.store import RecordStore
from statement_pipeline.worklog import StreamEntry, WorkLog

logger = get_logger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_ERROR = "error"

FollowUp = Tuple[str, JobMessage]


@dataclass
class JobContext:
    """Delivery-specific facts a handler needs besides the job itself."""

    stream: str
    message_id: str
    delivery_count: int
    correlation_id: str

    @property
    def lease_token(self) -> str:
        return f"{self.message_id}#{self.delivery_count}"


@dataclass
class StageOutcome:
    """What a completed stage writes and what it hands on."""

    metadata: Dict[str, Any] = field(default_factory=dict)
    update: Optional[Callable[[StatementRecord], None]] = None
    follow_ups: List[FollowUp] = field(default_factory=list)


Handler = Callable[[Any, JobContext], Awaitable[Optional[str]]]


class StageWorker(ABC):
    """
    Consume-dispatch-acknowledge loop shared by all worker types.

    Subclasses set worker_type and return their handlers from
    dispatch_table(). Handlers receive the decoded job and its JobContext and
    return an outcome string (None means success).

    Processed and error counters are only ever written by the consume loop.

    Usage:
        >>> worker = StatementProcessingWorker(work_log, store, config, index=0)
        >>> task = asyncio.create_task(worker.run())
        >>> worker.request_shutdown()
        >>> await task
    """

    worker_type: WorkerType
    # Job types that own a statement stage
    stage_by_job: Dict[str, Stage] = {}

    def __init__(
        self,
        work_log: WorkLog,
        store: RecordStore,
        config: PipelineConfig,
        index: int = 0,
        consumer_name: Optional[str] = None,
    ):
        self.work_log = work_log
        self.store = store
        self.config = config
        self.streams = config.streams
        self.settings = config.workers[self.worker_type]
        self.consumer_name = (
            consumer_name or f"{self.settings.consumer_prefix}-{os.getpid()}-{index}"
        )
        self._handlers: Dict[str, Handler] = {
            job_type.value: handler for job_type, handler in self.dispatch_table().items()
        }

        self.processed_count = 0
        self.error_count = 0
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._started_at: Optional[float] = None

    @abstractmethod
    def dispatch_table(self) -> Dict[Any, Handler]:
        """Map JobType to handler coroutine."""

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def _stop(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    def request_shutdown(self) -> None:
        """Stop reading new entries; the entry in progress finishes."""
        self._stop().set()

    async def run(self) -> None:
        """Consume until request_shutdown() is called or the task is cancelled."""
        stop = self._stop()
        self._running = True
        self._started_at = time.monotonic()
        set_log_context(worker_id=self.consumer_name, stage=self.worker_type.value)
        log_with_context(
            logger,
            logging.INFO,
            "Worker started",
            worker_type=self.worker_type.value,
            stream=self.settings.stream,
            group=self.settings.group,
            consumer=self.consumer_name,
        )

        try:
            while not stop.is_set():
                try:
                    entries = await self.work_log.read_group(
                        self.settings.stream,
                        self.settings.group,
                        self.consumer_name,
                        batch_size=self.settings.batch_size,
                        block_timeout_ms=self.settings.block_timeout_ms,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    record_read_error(self.settings.stream, self.settings.group)
                    log_exception(
                        logger,
                        e,
                        "Failed to read from work log, backing off",
                        level=logging.WARNING,
                        include_traceback=False,
                        stream=self.settings.stream,
                    )
                    await self._wait_or_stop(self.settings.read_error_backoff_seconds)
                    continue

                for entry in entries:
                    # Remaining entries stay pending and are redelivered
                    if stop.is_set():
                        break
                    await self.process_entry(entry)
        finally:
            self._running = False
            log_with_context(
                logger,
                logging.INFO,
                "Worker stopped",
                worker_type=self.worker_type.value,
                consumer=self.consumer_name,
                processed_count=self.processed_count,
                error_count=self.error_count,
            )

    async def _wait_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop().wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # -------------------------------------------------------------------------
    # Per-entry processing
    # -------------------------------------------------------------------------

    async def process_entry(self, entry: StreamEntry) -> str:
        """Decode, dispatch and settle one delivery. Returns the outcome."""
        if entry.delivery_count > self.settings.max_deliveries:
            error = (
                f"Delivered {entry.delivery_count} times "
                f"(max {self.settings.max_deliveries})"
            )
            if await self._fail_abandoned_stage(entry, error):
                await self._dead_letter(entry, error, reason="max_deliveries")
            return OUTCOME_ERROR

        try:
            job = decode_job(entry.value)
        except UnknownJobTypeError as e:
            log_exception(
                logger,
                e,
                "Unknown job type, leaving unacknowledged",
                include_traceback=False,
                message_id=entry.message_id,
                job_type=e.job_type,
            )
            return OUTCOME_ERROR
        except JobDecodeError as e:
            if await self._fail_abandoned_stage(entry, str(e)):
                await self._dead_letter(
                    entry, str(e), reason="decode_error", job_type=e.job_type
                )
            return OUTCOME_ERROR

        handler = self._handlers.get(job.type)
        if handler is None:
            log_exception(
                logger,
                UnknownJobTypeError(job.type, self.worker_type.value),
                "No handler for job type, leaving unacknowledged",
                include_traceback=False,
                message_id=entry.message_id,
                job_type=job.type,
            )
            return OUTCOME_ERROR

        ctx = JobContext(
            stream=self.settings.stream,
            message_id=entry.message_id,
            delivery_count=entry.delivery_count,
            correlation_id=job.correlation_id or entry.message_id,
        )
        set_log_context(correlation_id=ctx.correlation_id)
        start = time.perf_counter()
        outcome = OUTCOME_ERROR
        try:
            outcome = await self._dispatch(handler, job, ctx)
        finally:
            duration = time.perf_counter() - start
            self.processed_count += 1
            if outcome == OUTCOME_ERROR:
                self.error_count += 1
            record_job_processed(self.worker_type.value, job.type, outcome, duration)
            log_with_context(
                logger,
                logging.DEBUG,
                "Job settled",
                job_type=job.type,
                message_id=entry.message_id,
                status=outcome,
                duration_ms=round(duration * 1000, 2),
            )
            clear_correlation_id()
        return outcome

    async def _dispatch(self, handler: Handler, job: JobMessage, ctx: JobContext) -> str:
        try:
            outcome = await handler(job, ctx) or OUTCOME_SUCCESS
        except asyncio.CancelledError:
            raise
        except LeaseHeldError as e:
            log_with_context(
                logger,
                logging.INFO,
                "Stage owned by another delivery, dropping this one",
                job_type=job.type,
                message_id=ctx.message_id,
                delivery_count=ctx.delivery_count,
                holder=e.holder,
            )
            return OUTCOME_SUPERSEDED
        except Exception as e:
            if classify_exception(e) != ErrorCategory.PERMANENT:
                log_exception(
                    logger,
                    e,
                    "Job failed, leaving for redelivery",
                    level=logging.WARNING,
                    job_type=job.type,
                    message_id=ctx.message_id,
                    delivery_count=ctx.delivery_count,
                )
                return OUTCOME_ERROR

            log_exception(
                logger,
                e,
                "Job failed permanently",
                job_type=job.type,
                message_id=ctx.message_id,
            )
            try:
                await self.on_permanent_failure(job, ctx, e)
            except LeaseHeldError:
                return OUTCOME_SUPERSEDED
            except Exception as record_error:
                log_exception(
                    logger,
                    record_error,
                    "Failed to record permanent failure, leaving for redelivery",
                    job_type=job.type,
                    message_id=ctx.message_id,
                )
                return OUTCOME_ERROR
            await self._ack(ctx.message_id)
            return OUTCOME_ERROR

        await self._ack(ctx.message_id)
        return outcome

    async def _ack(self, message_id: str) -> None:
        try:
            await self.work_log.ack(self.settings.stream, self.settings.group, message_id)
        except Exception as e:
            # Side effects are done; the redelivery finds its stage completed
            log_exception(
                logger,
                e,
                "Failed to acknowledge job",
                level=logging.WARNING,
                include_traceback=False,
                message_id=message_id,
            )

    async def on_permanent_failure(
        self, job: JobMessage, ctx: JobContext, error: Exception
    ) -> None:
        """Record a terminal failure before the job is acknowledged.

        Statement-scoped jobs (those listed in stage_by_job) mark their stage
        FAILED and route the statement to finalization.
        """
        stage = self.stage_by_job.get(job.type)
        if stage is None:
            return
        await self.fail_statement_stage(
            job.payload.statement_id, job.payload.user_id, stage, ctx, error
        )

    async def fail_statement_stage(
        self,
        statement_id: str,
        user_id: str,
        stage: Stage,
        ctx: JobContext,
        error: Exception,
        fenced: bool = True,
    ) -> None:
        if isinstance(error, StatementNotFoundError):
            return
        message = getattr(error, "message", None) or str(error)
        await self.store.fail_stage(
            statement_id, stage, message, lease_token=ctx.lease_token if fenced else None
        )

        if stage == Stage.FINALIZE:

            def mark_failed(record: StatementRecord) -> None:
                record.processing.status = ProcessingStatus.FAILED
                record.processing.completed_at = utc_now()

            await self.store.mutate_statement(statement_id, mark_failed)
            return

        finalize = FinalizeStatementProcessingJob(
            payload=FinalizeStatementProcessingPayload(
                statement_id=statement_id,
                user_id=user_id,
                status=ProcessingStatus.FAILED,
                warnings=[f"{stage.value} failed: {message}"],
            )
        )
        await self.enqueue(self.streams.statement_processing, finalize, ctx)

    async def _fail_abandoned_stage(self, entry: StreamEntry, error: str) -> bool:
        """Fail the statement stage an entry owns before it is dead-lettered.

        Returns False when the failure could not be recorded; the entry then
        stays pending so the next delivery tries again.
        """
        target = _peek_statement_job(entry.value)
        if target is None:
            return True
        job_type, statement_id, correlation_id = target
        stage = self.stage_by_job.get(job_type)
        if stage is None:
            return True

        ctx = JobContext(
            stream=self.settings.stream,
            message_id=entry.message_id,
            delivery_count=entry.delivery_count,
            correlation_id=correlation_id or entry.message_id,
        )
        try:
            record = await self.store.find_statement(statement_id)
            if record is None:
                return True
            if record.processing.stage(stage).status in (
                StageStatus.COMPLETED,
                StageStatus.FAILED,
            ):
                return True
            # The lease belongs to an earlier delivery that never finished
            await self.fail_statement_stage(
                statement_id,
                record.user_id,
                stage,
                ctx,
                StageFailedError(stage.value, error),
                fenced=False,
            )
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to record abandoned stage, leaving for redelivery",
                level=logging.WARNING,
                message_id=entry.message_id,
                statement_id=statement_id,
            )
            return False
        log_with_context(
            logger,
            logging.WARNING,
            "Stage failed after its job was abandoned",
            statement_id=statement_id,
            stage=stage.value,
            message_id=entry.message_id,
            error_message=error,
        )
        return True

    async def _dead_letter(
        self,
        entry: StreamEntry,
        error: str,
        reason: str,
        job_type: Optional[str] = None,
    ) -> None:
        raw = entry.value.decode("utf-8", errors="replace")
        if job_type is None:
            job_type = _peek_type(raw)
        dead = DeadLetterEntry(
            source_stream=self.settings.stream,
            message_id=entry.message_id,
            job_type=job_type,
            raw=raw,
            error=error,
            delivery_count=entry.delivery_count,
        )
        try:
            await self.work_log.append(self.streams.dead_letter, dead)
            await self.work_log.ack(self.settings.stream, self.settings.group, entry.message_id)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to dead-letter entry, leaving for redelivery",
                level=logging.WARNING,
                message_id=entry.message_id,
            )
            return
        record_dead_letter(self.settings.stream, reason)
        log_with_context(
            logger,
            logging.ERROR,
            "Moved entry to dead-letter stream",
            stream=self.settings.stream,
            message_id=entry.message_id,
            job_type=job_type,
            delivery_count=entry.delivery_count,
            error_message=error,
        )

    # -------------------------------------------------------------------------
    # Helpers for handlers
    # -------------------------------------------------------------------------

    async def enqueue(self, stream: str, job: JobMessage, ctx: JobContext) -> str:
        """Append a follow-on job carrying this delivery's correlation id."""
        if not job.correlation_id:
            job.correlation_id = ctx.correlation_id
        message_id = await self.work_log.append(stream, job)
        log_with_context(
            logger,
            logging.DEBUG,
            "Enqueued follow-on job",
            stream=stream,
            job_type=job.type,
            message_id=message_id,
        )
        return message_id

    async def run_stage(
        self,
        ctx: JobContext,
        statement_id: str,
        stage: Stage,
        body: Callable[[StatementRecord], Awaitable[StageOutcome]],
        replay: Callable[[StatementRecord], Awaitable[List[FollowUp]]],
    ) -> str:
        """
        Run one statement stage under a lease.

        Claims the stage, runs body, completes the stage with the owning
        lease token, then enqueues the follow-ups. If the stage already
        completed on an earlier delivery, replay decides which follow-ups
        (if any) were lost and re-emits them.
        """
        claim = await self.store.claim_stage(
            statement_id, stage, ctx.lease_token, self.config.work_log.stage_lease_seconds
        )
        if claim.already_completed:
            follow_ups = await replay(claim.record)
            for stream, job in follow_ups:
                await self.enqueue(stream, job, ctx)
            log_with_context(
                logger,
                logging.INFO,
                "Stage already completed, skipping",
                statement_id=statement_id,
                stage=stage.value,
                replayed=len(follow_ups),
            )
            return OUTCOME_DUPLICATE

        outcome = await body(claim.record)
        await self.store.complete_stage(
            statement_id,
            stage,
            ctx.lease_token,
            metadata=outcome.metadata,
            update=outcome.update,
        )
        for stream, job in outcome.follow_ups:
            await self.enqueue(stream, job, ctx)
        log_with_context(
            logger,
            logging.INFO,
            "Stage completed",
            statement_id=statement_id,
            stage=stage.value,
        )
        return OUTCOME_SUCCESS

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    @property
    def success_rate(self) -> float:
        if self.processed_count == 0:
            return 0.0
        return (self.processed_count - self.error_count) / self.processed_count * 100

    def extra_stats(self) -> Dict[str, Any]:
        return {}

    def stats(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        stats = {
            "worker_name": self.consumer_name,
            "worker_type": self.worker_type.value,
            "is_running": self._running,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
            "uptime_seconds": uptime,
        }
        stats.update(self.extra_stats())
        return stats


def stage_pending(record: StatementRecord, stage: Stage) -> bool:
    """True if a stage has never been started."""
    return record.processing.stage(stage).status == StageStatus.PENDING


def _peek_type(raw: str) -> Optional[str]:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("type"), str):
        return data["type"]
    return None


def _peek_statement_job(raw: bytes) -> Optional[Tuple[str, str, Optional[str]]]:
    """(job type, statement id, correlation id) from a raw entry, if present."""
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    payload = data.get("payload")
    job_type = data.get("type")
    if not isinstance(payload, dict) or not isinstance(job_type, str):
        return None
    statement_id = payload.get("statementId")
    if not isinstance(statement_id, str) or not statement_id:
        return None
    correlation_id = data.get("correlationId")
    return job_type, statement_id, correlation_id if isinstance(correlation_id, str) else None
