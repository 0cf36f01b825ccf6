"""
Statement Processing Worker - drives an uploaded statement to validated transactions.

Sub-pipeline, one job type per stage, each enqueued only after the previous
stage completed:

    PROCESS_UPLOADED_STATEMENT -> PARSE_STATEMENT_FILE -> EXTRACT_TRANSACTIONS
        -> VALIDATE_STATEMENT_DATA -> categorization (all transactions valid)
                                   -> FINALIZE_STATEMENT_PROCESSING (warnings)

FINALIZE_STATEMENT_PROCESSING also arrives from the risk worker once
analysis is done, or from any worker after a stage failed permanently.

Consumer group: statement-workers
Input stream: statement-processing
Output streams: statement-processing, transaction-categorization, notifications
"""

import logging
from typing import Any, Dict, List

from core.logging import get_logger, log_with_context
from statement_pipeline.config import WorkerType
from statement_pipeline.exceptions import StageFailedError
from statement_pipeline.schemas.jobs import (
    CategorizeStatementTransactionsJob,
    CategorizeStatementTransactionsPayload,
    ExtractTransactionsJob,
    ExtractTransactionsPayload,
    FinalizeStatementProcessingJob,
    FinalizeStatementProcessingPayload,
    JobType,
    ParseStatementFileJob,
    ParseStatementFilePayload,
    ProcessUploadedStatementJob,
    StatementProcessingCompletedJob,
    StatementProcessingCompletedPayload,
    ValidateStatementDataJob,
    ValidateStatementDataPayload,
)
from statement_pipeline.schemas.records import (
    FinalStats,
    ParsedTransaction,
    ProcessingStatus,
    Stage,
    StageStatus,
    StatementRecord,
    utc_now,
)
from statement_pipeline.services.parser import (
    parse_statement_file,
    to_transaction_records,
    transaction_id,
)
from statement_pipeline.services.validation import validate_transactions
from statement_pipeline.workers.base import (
    OUTCOME_DUPLICATE,
    FollowUp,
    Handler,
    JobContext,
    StageOutcome,
    StageWorker,
    stage_pending,
)

logger = get_logger(__name__)


class StatementProcessingWorker(StageWorker):
    """
    Worker for the statement-processing stream.

    Parsed transactions travel inside the EXTRACT_TRANSACTIONS payload and
    are also kept in the parsing stage metadata, so a lost follow-on job can
    be rebuilt from the record alone.
    """

    worker_type = WorkerType.STATEMENT_PROCESSING
    stage_by_job = {
        JobType.PROCESS_UPLOADED_STATEMENT.value: Stage.UPLOAD,
        JobType.PARSE_STATEMENT_FILE.value: Stage.PARSING,
        JobType.EXTRACT_TRANSACTIONS.value: Stage.EXTRACTION,
        JobType.VALIDATE_STATEMENT_DATA.value: Stage.VALIDATION,
        JobType.FINALIZE_STATEMENT_PROCESSING.value: Stage.FINALIZE,
    }

    def dispatch_table(self) -> Dict[Any, Handler]:
        return {
            JobType.PROCESS_UPLOADED_STATEMENT: self.process_uploaded_statement,
            JobType.PARSE_STATEMENT_FILE: self.parse_statement_file,
            JobType.EXTRACT_TRANSACTIONS: self.extract_transactions,
            JobType.VALIDATE_STATEMENT_DATA: self.validate_statement_data,
            JobType.FINALIZE_STATEMENT_PROCESSING: self.finalize_statement_processing,
        }

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    async def process_uploaded_statement(
        self, job: ProcessUploadedStatementJob, ctx: JobContext
    ) -> str:
        p = job.payload

        def parse_job() -> FollowUp:
            return (
                self.streams.statement_processing,
                ParseStatementFileJob(
                    payload=ParseStatementFilePayload(
                        statement_id=p.statement_id, file_path=p.file_path, user_id=p.user_id
                    )
                ),
            )

        async def body(record: StatementRecord) -> StageOutcome:
            def update(r: StatementRecord) -> None:
                r.file_path = p.file_path

            return StageOutcome(
                metadata={"upload_metadata": p.upload_metadata, "file_path": p.file_path},
                update=update,
                follow_ups=[parse_job()],
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            return [parse_job()] if stage_pending(record, Stage.PARSING) else []

        return await self.run_stage(ctx, p.statement_id, Stage.UPLOAD, body, replay)

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def _extract_job(
        self, statement_id: str, user_id: str, parsed: List[ParsedTransaction]
    ) -> FollowUp:
        return (
            self.streams.statement_processing,
            ExtractTransactionsJob(
                payload=ExtractTransactionsPayload(
                    statement_id=statement_id, user_id=user_id, parsed_transactions=parsed
                )
            ),
        )

    async def parse_statement_file(self, job: ParseStatementFileJob, ctx: JobContext) -> str:
        p = job.payload

        async def body(record: StatementRecord) -> StageOutcome:
            result = await parse_statement_file(p.file_path)
            if not result.transactions:
                raise StageFailedError(
                    Stage.PARSING.value,
                    f"No transactions found in statement file ({len(result.rejected_rows)} "
                    "rows rejected)",
                )

            metadata = result.metadata()
            metadata["parsed_transactions"] = [
                t.model_dump(mode="json") for t in result.transactions
            ]

            def update(r: StatementRecord) -> None:
                r.file_info = {"size": result.file_size, "format": result.format}

            log_with_context(
                logger,
                logging.INFO,
                "Parsed statement file",
                statement_id=p.statement_id,
                transaction_count=len(result.transactions),
                rejected_count=len(result.rejected_rows),
            )
            return StageOutcome(
                metadata=metadata,
                update=update,
                follow_ups=[self._extract_job(p.statement_id, p.user_id, result.transactions)],
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            if not stage_pending(record, Stage.EXTRACTION):
                return []
            stored = record.processing.parsing.metadata.get("parsed_transactions", [])
            parsed = [ParsedTransaction.model_validate(t) for t in stored]
            return [self._extract_job(p.statement_id, p.user_id, parsed)]

        return await self.run_stage(ctx, p.statement_id, Stage.PARSING, body, replay)

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def _validate_job(self, statement_id: str, user_id: str, ids: List[str]) -> FollowUp:
        return (
            self.streams.statement_processing,
            ValidateStatementDataJob(
                payload=ValidateStatementDataPayload(
                    statement_id=statement_id, user_id=user_id, transaction_ids=ids
                )
            ),
        )

    async def extract_transactions(self, job: ExtractTransactionsJob, ctx: JobContext) -> str:
        p = job.payload

        async def body(record: StatementRecord) -> StageOutcome:
            records = to_transaction_records(p.statement_id, p.user_id, p.parsed_transactions)
            inserted = await self.store.insert_transactions(records)

            def update(r: StatementRecord) -> None:
                r.transaction_count = len(records)

            return StageOutcome(
                metadata={
                    "extracted_transactions": len(records),
                    "inserted_transactions": inserted,
                },
                update=update,
                follow_ups=[
                    self._validate_job(p.statement_id, p.user_id, [r.id for r in records])
                ],
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            if not stage_pending(record, Stage.VALIDATION):
                return []
            count = record.processing.extraction.metadata.get("extracted_transactions", 0)
            ids = [transaction_id(p.statement_id, i) for i in range(count)]
            return [self._validate_job(p.statement_id, p.user_id, ids)]

        return await self.run_stage(ctx, p.statement_id, Stage.EXTRACTION, body, replay)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _after_validation(
        self, statement_id: str, user_id: str, is_valid: bool, errors: List[str]
    ) -> FollowUp:
        if is_valid:
            return (
                self.streams.transaction_categorization,
                CategorizeStatementTransactionsJob(
                    payload=CategorizeStatementTransactionsPayload(
                        statement_id=statement_id, user_id=user_id
                    )
                ),
            )
        return (
            self.streams.statement_processing,
            FinalizeStatementProcessingJob(
                payload=FinalizeStatementProcessingPayload(
                    statement_id=statement_id,
                    user_id=user_id,
                    status=ProcessingStatus.COMPLETED_WITH_WARNINGS,
                    warnings=list(errors),
                )
            ),
        )

    async def validate_statement_data(
        self, job: ValidateStatementDataJob, ctx: JobContext
    ) -> str:
        p = job.payload

        async def body(record: StatementRecord) -> StageOutcome:
            transactions = await self.store.find_transactions(ids=p.transaction_ids)
            rejected = record.processing.parsing.metadata.get("rejected_rows", [])
            report = validate_transactions(transactions, rejected)
            log_with_context(
                logger,
                logging.INFO if report.is_valid else logging.WARNING,
                "Validated statement data",
                statement_id=p.statement_id,
                valid_transactions=report.valid_transactions,
                total_transactions=report.total_transactions,
                error_count=len(report.errors),
            )
            return StageOutcome(
                metadata=report.metadata(),
                follow_ups=[
                    self._after_validation(
                        p.statement_id, p.user_id, report.is_valid, report.errors
                    )
                ],
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            metadata = record.processing.validation.metadata
            is_valid = bool(metadata.get("is_valid"))
            next_stage = Stage.CATEGORIZATION if is_valid else Stage.FINALIZE
            if not stage_pending(record, next_stage):
                return []
            return [
                self._after_validation(
                    p.statement_id, p.user_id, is_valid, metadata.get("errors", [])
                )
            ]

        return await self.run_stage(ctx, p.statement_id, Stage.VALIDATION, body, replay)

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def _notification(self, record: StatementRecord) -> FollowUp:
        stats = record.processing.final_stats or FinalStats()
        return (
            self.streams.notifications,
            StatementProcessingCompletedJob(
                payload=StatementProcessingCompletedPayload(
                    statement_id=record.id,
                    user_id=record.user_id,
                    status=record.processing.status,
                    stats=stats,
                    warnings=list(record.processing.warnings),
                )
            ),
        )

    async def finalize_statement_processing(
        self, job: FinalizeStatementProcessingJob, ctx: JobContext
    ) -> str:
        p = job.payload

        async def body(record: StatementRecord) -> StageOutcome:
            transactions = await self.store.find_transactions(statement_id=p.statement_id)
            total = len(transactions)
            categorized = sum(1 for t in transactions if t.category)
            now = utc_now()
            started = record.processing.started_at or record.created_at
            stats = FinalStats(
                total_transactions=total,
                categorized_transactions=categorized,
                categorization_rate=categorized / total * 100 if total else 0.0,
                total_amount=sum(abs(t.amount) for t in transactions),
                processing_time_ms=max((now - started).total_seconds() * 1000, 0.0),
            )

            def update(r: StatementRecord) -> None:
                r.processing.status = p.status
                r.processing.completed_at = now
                r.processing.final_stats = stats
                r.processing.warnings = list(p.warnings)

            return StageOutcome(metadata={"status": p.status.value}, update=update)

        async def replay(record: StatementRecord) -> List[FollowUp]:
            return []

        outcome = await self.run_stage(ctx, p.statement_id, Stage.FINALIZE, body, replay)
        record = await self.store.get_statement(p.statement_id)
        if record.processing.finalize.metadata.get("notified"):
            return outcome

        stream, notification = self._notification(record)
        await self.enqueue(stream, notification, ctx)
        await self.store.update_stage_status(
            p.statement_id, Stage.FINALIZE, StageStatus.COMPLETED, metadata={"notified": True}
        )
        log_with_context(
            logger,
            logging.INFO,
            "Statement processing finished",
            statement_id=p.statement_id,
            status=record.processing.status.value,
            replayed=outcome == OUTCOME_DUPLICATE,
        )
        return outcome
