"""
Tests for TransactionCategorizationWorker.

Covers the pipeline's categorization stage (hand-off to risk analysis or
finalization), single/batch/inline categorization, audited
recategorization, and cache hit tracking with an injected classifier.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from statement_pipeline.schemas.jobs import (
    AnalyzeStatementRiskJob,
    AnalyzeTransactionRiskJob,
    CategorizeBatchTransactionsJob,
    CategorizeBatchTransactionsPayload,
    CategorizeSingleTransactionJob,
    CategorizeSingleTransactionPayload,
    CategorizeStatementTransactionsJob,
    CategorizeStatementTransactionsPayload,
    DetectFraudPatternsJob,
    FinalizeStatementProcessingJob,
    RecategorizeTransactionJob,
    RecategorizeTransactionPayload,
    TransactionInput,
    TransactionRecategorizedJob,
)
from statement_pipeline.schemas.records import (
    ParsedTransaction,
    ProcessingStatus,
    Stage,
    StageStatus,
)
from statement_pipeline.services.categorizer import (
    BatchClassification,
    Classification,
    TransactionCategorizer,
)
from statement_pipeline.services.parser import to_transaction_records
from statement_pipeline.workers import TransactionCategorizationWorker

STREAM = "transaction-categorization"
GROUP = "categorization-workers"


@pytest.fixture
def worker(work_log, store, config):
    return TransactionCategorizationWorker(
        work_log, store, config, consumer_name="categorization-test"
    )


@pytest.fixture
async def statement_with_transactions(store, seed_statement):
    await seed_statement(transaction_count=3, opening_balance=1000.0)
    parsed = [
        ParsedTransaction(line_number=1, description="Walmart Supercenter", amount=-82.10),
        ParsedTransaction(line_number=2, description="ACME Payroll", amount=2400.00),
        ParsedTransaction(line_number=3, description="Online Transfer", amount=-300.00),
    ]
    await store.insert_transactions(to_transaction_records("st-1", "user-1", parsed))
    return "st-1"


def statement_job(next_stage="ANALYSIS") -> CategorizeStatementTransactionsJob:
    return CategorizeStatementTransactionsJob(
        correlation_id="st-1",
        payload=CategorizeStatementTransactionsPayload(
            statement_id="st-1", user_id="user-1", next_stage=next_stage
        ),
    )


@pytest.mark.asyncio
class TestCategorizeStatementTransactions:
    async def test_categorizes_and_hands_off_to_risk_analysis(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        _, outcome = await deliver(worker, statement_job())

        assert outcome == "success"
        transactions = await store.find_transactions(statement_id="st-1")
        assert [t.category for t in transactions] == ["GROCERIES", "INCOME", "TRANSFER"]
        assert all(t.subcategory == "General" for t in transactions)
        meta = transactions[0].metadata["categorization"]
        assert meta["method"] == "fallback"
        assert meta["confidence"] == 0.5
        assert meta["model_version"] == "1.0"

        record = await store.get_statement("st-1")
        assert record.processing.categorization.status == StageStatus.COMPLETED
        assert record.processing.categorization.metadata["categorized_transactions"] == 3
        assert record.processing.categorization.metadata["cache_hits"] == 0

        [risk_job] = stream_jobs("risk-analysis")
        assert isinstance(risk_job, AnalyzeStatementRiskJob)
        assert risk_job.payload.statement_id == "st-1"
        assert risk_job.payload.transaction_count == 3
        assert risk_job.payload.opening_balance == 1000.0
        assert risk_job.payload.finalize is True
        assert risk_job.correlation_id == "st-1"

    async def test_without_next_stage_goes_straight_to_finalize(
        self, worker, statement_with_transactions, deliver, stream_jobs
    ):
        _, outcome = await deliver(worker, statement_job(next_stage=None))

        assert outcome == "success"
        assert stream_jobs("risk-analysis") == []
        [finalize] = stream_jobs("statement-processing")
        assert isinstance(finalize, FinalizeStatementProcessingJob)
        assert finalize.payload.status == ProcessingStatus.COMPLETED

    async def test_no_transactions_fails_stage(
        self, worker, work_log, store, seed_statement, deliver, stream_jobs
    ):
        await seed_statement()

        _, outcome = await deliver(worker, statement_job())

        assert outcome == "error"
        assert work_log.pending_count(STREAM, GROUP) == 0
        record = await store.get_statement("st-1")
        assert record.processing.categorization.status == StageStatus.FAILED
        [finalize] = stream_jobs("statement-processing")
        assert finalize.payload.status == ProcessingStatus.FAILED
        assert finalize.payload.warnings == [
            "categorization failed: No transactions to categorize"
        ]

    async def test_replay_re_emits_risk_job_while_analysis_pending(
        self, worker, statement_with_transactions, deliver, redeliver, stream_jobs
    ):
        entry, _ = await deliver(worker, statement_job())

        outcome = await worker.process_entry(redeliver(entry))

        assert outcome == "duplicate"
        assert len(stream_jobs("risk-analysis")) == 2

    async def test_replay_after_analysis_started_emits_nothing(
        self, worker, store, statement_with_transactions, deliver, redeliver, stream_jobs
    ):
        entry, _ = await deliver(worker, statement_job())
        await store.claim_stage("st-1", Stage.RISK_ANALYSIS, "risk#1", lease_seconds=300)

        outcome = await worker.process_entry(redeliver(entry))

        assert outcome == "duplicate"
        assert len(stream_jobs("risk-analysis")) == 1


@pytest.mark.asyncio
class TestCategorizeSingleAndBatch:
    async def test_single_stored_transaction_continues_to_risk(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        job = CategorizeSingleTransactionJob(
            payload=CategorizeSingleTransactionPayload(
                transaction_id="st-1-0", next_stage="ANALYSIS"
            )
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "success"
        transaction = await store.get_transaction("st-1-0")
        assert transaction.category == "GROCERIES"
        [risk_job] = stream_jobs("risk-analysis")
        assert isinstance(risk_job, AnalyzeTransactionRiskJob)
        assert risk_job.payload.transaction_id == "st-1-0"
        assert risk_job.payload.statement_id == "st-1"

    async def test_single_inline_transaction_writes_nothing(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        job = CategorizeSingleTransactionJob(
            payload=CategorizeSingleTransactionPayload(
                transaction_data=TransactionInput(description="Shell Gas Station", amount=-40.0),
                next_stage="ANALYSIS",
            )
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "success"
        assert worker.fresh_count == 1
        assert stream_jobs("risk-analysis") == []
        stored = await store.find_transactions(statement_id="st-1")
        assert all(t.category is None for t in stored)

    async def test_batch_by_statement_queues_fraud_detection(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        job = CategorizeBatchTransactionsJob(
            payload=CategorizeBatchTransactionsPayload(statement_id="st-1", next_stage="ANALYSIS")
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "success"
        stored = await store.find_transactions(statement_id="st-1")
        assert all(t.category for t in stored)
        [fraud_job] = stream_jobs("risk-analysis")
        assert isinstance(fraud_job, DetectFraudPatternsJob)
        assert fraud_job.payload.transaction_ids == ["st-1-0", "st-1-1", "st-1-2"]

    async def test_batch_by_ids_only_touches_listed_transactions(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        job = CategorizeBatchTransactionsJob(
            payload=CategorizeBatchTransactionsPayload(transaction_ids=["st-1-1"])
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "success"
        stored = await store.find_transactions(statement_id="st-1")
        categories = {t.id: t.category for t in stored}
        assert categories == {"st-1-0": None, "st-1-1": "INCOME", "st-1-2": None}
        assert stream_jobs("risk-analysis") == []


@pytest.mark.asyncio
class TestRecategorize:
    async def test_recategorize_with_explicit_category_is_audited(
        self, worker, store, statement_with_transactions, deliver, stream_jobs
    ):
        transaction = await store.get_transaction("st-1-0")
        transaction.category = "GROCERIES"
        await store.update_transaction(transaction)
        job = RecategorizeTransactionJob(
            payload=RecategorizeTransactionPayload(
                transaction_id="st-1-0",
                new_category="DINING",
                reason="user correction",
                user_id="user-1",
            )
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "success"
        updated = await store.get_transaction("st-1-0")
        assert updated.category == "DINING"
        meta = updated.metadata["categorization"]
        assert meta["method"] == "manual_recategorization"
        assert meta["source"] == "manual_fallback"
        assert meta["previous_category"] == "GROCERIES"
        assert meta["reason"] == "user correction"

        [audit] = stream_jobs("audit-log")
        assert isinstance(audit, TransactionRecategorizedJob)
        assert audit.payload.previous_category == "GROCERIES"
        assert audit.payload.new_category == "DINING"
        assert audit.payload.user_id == "user-1"

    async def test_recategorize_missing_transaction_is_permanent(
        self, worker, work_log, deliver, stream_jobs
    ):
        job = RecategorizeTransactionJob(
            payload=RecategorizeTransactionPayload(transaction_id="no-such-transaction")
        )

        _, outcome = await deliver(worker, job)

        assert outcome == "error"
        assert work_log.pending_count(STREAM, GROUP) == 0
        assert stream_jobs("audit-log") == []


@pytest.mark.asyncio
class TestCacheTracking:
    async def test_cache_hit_rate_from_classifier_results(
        self, work_log, store, config, statement_with_transactions, deliver
    ):
        classifier = MagicMock()
        classifier.classify_batch = AsyncMock(
            return_value=BatchClassification(
                results=[
                    Classification("GROCERIES", confidence=0.95, source="cache"),
                    Classification("INCOME", confidence=0.9, source="classifier"),
                    Classification("TRANSFER", confidence=0.85, source="cache"),
                ]
            )
        )
        worker = TransactionCategorizationWorker(
            work_log,
            store,
            config,
            consumer_name="categorization-test",
            categorizer=TransactionCategorizer(classifier=classifier),
        )

        _, outcome = await deliver(worker, statement_job())

        assert outcome == "success"
        assert worker.cache_hit_count == 2
        assert worker.fresh_count == 1
        assert worker.cache_hit_rate == pytest.approx(200 / 3)
        stats = worker.stats()
        assert stats["cache_hit_count"] == 2
        assert stats["cache_hit_rate"] == pytest.approx(200 / 3)
        classifier.classify_batch.assert_awaited_once()

        record = await store.get_statement("st-1")
        assert record.processing.categorization.metadata["cache_hits"] == 2
        assert record.processing.categorization.metadata["fresh"] == 1
        transaction = await store.get_transaction("st-1-1")
        assert transaction.metadata["categorization"]["confidence"] == 0.9

    async def test_cache_hit_rate_is_zero_before_any_work(self, worker):
        assert worker.cache_hit_rate == 0.0
