"""
Transaction Categorization Worker - assigns categories to transactions.

Job types:
- CATEGORIZE_SINGLE_TRANSACTION: one stored or inline transaction
- CATEGORIZE_BATCH_TRANSACTIONS: by ids, inline data, or a whole statement
- CATEGORIZE_STATEMENT_TRANSACTIONS: the pipeline's categorization stage;
  hands the statement on to risk analysis
- RECATEGORIZE_TRANSACTION: forced re-classification, audited

Consumer group: categorization-workers
Input stream: transaction-categorization
Output streams: risk-analysis, statement-processing, audit-log
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from core.logging import get_logger, log_with_context
from statement_pipeline.config import PipelineConfig, WorkerType
from statement_pipeline.exceptions import StageFailedError
from statement_pipeline.metrics import record_categorizations
from statement_pipeline.schemas.jobs import (
    NEXT_STAGE_ANALYSIS,
    AnalyzeStatementRiskJob,
    AnalyzeStatementRiskPayload,
    AnalyzeTransactionRiskJob,
    AnalyzeTransactionRiskPayload,
    CategorizeBatchTransactionsJob,
    CategorizeSingleTransactionJob,
    CategorizeStatementTransactionsJob,
    DetectFraudPatternsJob,
    DetectFraudPatternsPayload,
    FinalizeStatementProcessingJob,
    FinalizeStatementProcessingPayload,
    JobType,
    RecategorizeTransactionJob,
    TransactionRecategorizedJob,
    TransactionRecategorizedPayload,
)
from statement_pipeline.schemas.records import (
    ProcessingStatus,
    Stage,
    StatementRecord,
    TransactionRecord,
    utc_now,
)
from statement_pipeline.services.categorizer import Classification, TransactionCategorizer
from statement_pipeline.store import RecordStore
from statement_pipeline.workers.base import (
    FollowUp,
    Handler,
    JobContext,
    StageOutcome,
    StageWorker,
    stage_pending,
)
from statement_pipeline.worklog import WorkLog

logger = get_logger(__name__)

STATEMENT_BATCH_SIZE = 10


class TransactionCategorizationWorker(StageWorker):
    """Worker for the transaction-categorization stream."""

    worker_type = WorkerType.TRANSACTION_CATEGORIZATION
    stage_by_job = {
        JobType.CATEGORIZE_STATEMENT_TRANSACTIONS.value: Stage.CATEGORIZATION,
    }

    def __init__(
        self,
        work_log: WorkLog,
        store: RecordStore,
        config: PipelineConfig,
        index: int = 0,
        consumer_name: Optional[str] = None,
        categorizer: Optional[TransactionCategorizer] = None,
    ):
        super().__init__(work_log, store, config, index=index, consumer_name=consumer_name)
        self.categorizer = categorizer or TransactionCategorizer()
        self.cache_hit_count = 0
        self.fresh_count = 0

    def dispatch_table(self) -> Dict[Any, Handler]:
        return {
            JobType.CATEGORIZE_SINGLE_TRANSACTION: self.categorize_single_transaction,
            JobType.CATEGORIZE_BATCH_TRANSACTIONS: self.categorize_batch_transactions,
            JobType.CATEGORIZE_STATEMENT_TRANSACTIONS: self.categorize_statement_transactions,
            JobType.RECATEGORIZE_TRANSACTION: self.recategorize_transaction,
        }

    def _track(self, results: Sequence[Classification]) -> None:
        hits = sum(1 for r in results if r.is_cache_hit)
        self.cache_hit_count += hits
        self.fresh_count += len(results) - hits
        record_categorizations(r.source for r in results)

    async def _persist(self, transaction: TransactionRecord, result: Classification) -> None:
        transaction.category = result.category
        transaction.subcategory = result.subcategory
        transaction.metadata["categorization"] = {
            "confidence": result.confidence,
            "method": result.source,
            "categorized_at": utc_now().isoformat(),
            "model_version": result.model_version,
        }
        await self.store.update_transaction(transaction)

    async def _categorize_stored(
        self, transactions: List[TransactionRecord], batch_size: int
    ) -> List[Classification]:
        results = await self.categorizer.categorize_batch(transactions, batch_size=batch_size)
        for transaction, result in zip(transactions, results):
            await self._persist(transaction, result)
        self._track(results)
        return results

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def categorize_single_transaction(
        self, job: CategorizeSingleTransactionJob, ctx: JobContext
    ) -> None:
        p = job.payload
        if p.transaction_id:
            transaction = await self.store.get_transaction(p.transaction_id)
        else:
            transaction = p.transaction_data

        result = await self.categorizer.categorize(transaction, force=p.force_recategorize)
        if p.transaction_id:
            await self._persist(transaction, result)
        self._track([result])

        log_with_context(
            logger,
            logging.INFO,
            "Categorized transaction",
            transaction_id=p.transaction_id,
            category=result.category,
            source=result.source,
        )

        if p.next_stage == NEXT_STAGE_ANALYSIS and p.transaction_id:
            await self.enqueue(
                self.streams.risk_analysis,
                AnalyzeTransactionRiskJob(
                    payload=AnalyzeTransactionRiskPayload(
                        transaction_id=p.transaction_id,
                        statement_id=p.statement_id or transaction.statement_id,
                    )
                ),
                ctx,
            )

    async def categorize_batch_transactions(
        self, job: CategorizeBatchTransactionsJob, ctx: JobContext
    ) -> None:
        p = job.payload
        if p.transaction_ids:
            stored = await self.store.find_transactions(ids=p.transaction_ids)
            results = await self._categorize_stored(stored, p.batch_size)
            ids = [t.id for t in stored]
        elif p.transaction_data:
            results = await self.categorizer.categorize_batch(
                p.transaction_data, batch_size=p.batch_size
            )
            self._track(results)
            ids = [t.id for t in p.transaction_data if t.id]
        else:
            stored = await self.store.find_transactions(statement_id=p.statement_id)
            results = await self._categorize_stored(stored, p.batch_size)
            ids = [t.id for t in stored]

        log_with_context(
            logger,
            logging.INFO,
            "Batch categorization completed",
            statement_id=p.statement_id,
            transaction_count=len(results),
        )

        if results and p.next_stage == NEXT_STAGE_ANALYSIS and p.statement_id:
            await self.enqueue(
                self.streams.risk_analysis,
                DetectFraudPatternsJob(
                    payload=DetectFraudPatternsPayload(
                        statement_id=p.statement_id, transaction_ids=ids
                    )
                ),
                ctx,
            )

    def _after_categorization(self, record: StatementRecord, next_stage: Optional[str]) -> FollowUp:
        if next_stage == NEXT_STAGE_ANALYSIS:
            return (
                self.streams.risk_analysis,
                AnalyzeStatementRiskJob(
                    payload=AnalyzeStatementRiskPayload(
                        statement_id=record.id,
                        user_id=record.user_id,
                        transaction_count=record.transaction_count,
                        opening_balance=record.opening_balance,
                    )
                ),
            )
        return (
            self.streams.statement_processing,
            FinalizeStatementProcessingJob(
                payload=FinalizeStatementProcessingPayload(
                    statement_id=record.id,
                    user_id=record.user_id,
                    status=ProcessingStatus.COMPLETED,
                )
            ),
        )

    async def categorize_statement_transactions(
        self, job: CategorizeStatementTransactionsJob, ctx: JobContext
    ) -> str:
        p = job.payload
        next_stage = Stage.RISK_ANALYSIS if p.next_stage == NEXT_STAGE_ANALYSIS else Stage.FINALIZE

        async def body(record: StatementRecord) -> StageOutcome:
            transactions = await self.store.find_transactions(statement_id=p.statement_id)
            if not transactions:
                raise StageFailedError(Stage.CATEGORIZATION.value, "No transactions to categorize")
            results = await self._categorize_stored(transactions, STATEMENT_BATCH_SIZE)
            hits = sum(1 for r in results if r.is_cache_hit)
            return StageOutcome(
                metadata={
                    "total_transactions": len(transactions),
                    "categorized_transactions": len(results),
                    "cache_hits": hits,
                    "fresh": len(results) - hits,
                },
                follow_ups=[self._after_categorization(record, p.next_stage)],
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            if not stage_pending(record, next_stage):
                return []
            return [self._after_categorization(record, p.next_stage)]

        return await self.run_stage(ctx, p.statement_id, Stage.CATEGORIZATION, body, replay)

    async def recategorize_transaction(
        self, job: RecategorizeTransactionJob, ctx: JobContext
    ) -> None:
        p = job.payload
        transaction = await self.store.get_transaction(p.transaction_id)
        previous_category = transaction.category

        result = await self.categorizer.recategorize(transaction, new_category=p.new_category)
        transaction.category = result.category
        transaction.subcategory = result.subcategory
        transaction.metadata["categorization"] = {
            "confidence": result.confidence,
            "method": "manual_recategorization",
            "source": result.source,
            "categorized_at": utc_now().isoformat(),
            "reason": p.reason,
            "previous_category": previous_category,
            "model_version": result.model_version,
        }
        await self.store.update_transaction(transaction)

        await self.enqueue(
            self.streams.audit_log,
            TransactionRecategorizedJob(
                payload=TransactionRecategorizedPayload(
                    transaction_id=p.transaction_id,
                    previous_category=previous_category,
                    new_category=result.category,
                    reason=p.reason,
                    user_id=p.user_id,
                )
            ),
            ctx,
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hit_count + self.fresh_count
        return self.cache_hit_count / total * 100 if total else 0.0

    def extra_stats(self) -> Dict[str, Any]:
        return {
            "cache_hit_count": self.cache_hit_count,
            "fresh_count": self.fresh_count,
            "cache_hit_rate": self.cache_hit_rate,
        }
