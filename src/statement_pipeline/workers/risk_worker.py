"""
Risk Analysis Worker - scores statements and transactions, raises alerts.

Job types:
- ANALYZE_STATEMENT_RISK: the pipeline's risk stage; persists score, level
  and factors, alerts on high risk, queues fraud detection for concerning
  scores, then hands the statement to finalization
- ANALYZE_TRANSACTION_RISK: one transaction; alerts when suspicious
- DETECT_FRAUD_PATTERNS: round-number and rapid-transaction patterns

Consumer group: risk-workers
Input stream: risk-analysis
Output streams: alerts, risk-analysis, statement-processing
"""

import logging
from typing import Any, Dict, List, Optional

from core.logging import get_logger, log_with_context
from statement_pipeline.config import PipelineConfig, WorkerType
from statement_pipeline.exceptions import StageFailedError
from statement_pipeline.schemas.jobs import (
    AnalyzeStatementRiskJob,
    AnalyzeStatementRiskPayload,
    AnalyzeTransactionRiskJob,
    DetectFraudPatternsJob,
    DetectFraudPatternsPayload,
    FinalizeStatementProcessingJob,
    FinalizeStatementProcessingPayload,
    FraudPatternsDetectedJob,
    FraudPatternsDetectedPayload,
    HighRiskDetectedJob,
    HighRiskDetectedPayload,
    JobType,
    SuspiciousTransactionDetectedJob,
    SuspiciousTransactionDetectedPayload,
)
from statement_pipeline.schemas.records import (
    ProcessingStatus,
    Stage,
    StatementRecord,
    utc_now,
)
from statement_pipeline.services.risk import RiskAnalyzer
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

ALERT_SCORE_THRESHOLD = 70
FRAUD_CHECK_THRESHOLD = 50
SUSPICIOUS_TRANSACTION_THRESHOLD = 80


class RiskAnalysisWorker(StageWorker):
    """Worker for the risk-analysis stream."""

    worker_type = WorkerType.RISK_ANALYSIS
    stage_by_job = {
        JobType.ANALYZE_STATEMENT_RISK.value: Stage.RISK_ANALYSIS,
    }

    def __init__(
        self,
        work_log: WorkLog,
        store: RecordStore,
        config: PipelineConfig,
        index: int = 0,
        consumer_name: Optional[str] = None,
        analyzer: Optional[RiskAnalyzer] = None,
    ):
        super().__init__(work_log, store, config, index=index, consumer_name=consumer_name)
        self.analyzer = analyzer or RiskAnalyzer()
        self.high_risk_count = 0
        self.fraud_alert_count = 0

    def dispatch_table(self) -> Dict[Any, Handler]:
        return {
            JobType.ANALYZE_STATEMENT_RISK: self.analyze_statement_risk,
            JobType.ANALYZE_TRANSACTION_RISK: self.analyze_transaction_risk,
            JobType.DETECT_FRAUD_PATTERNS: self.detect_fraud_patterns,
        }

    def _statement_follow_ups(
        self, record: StatementRecord, p: AnalyzeStatementRiskPayload, transaction_ids: List[str]
    ) -> List[FollowUp]:
        score = record.risk_score or 0.0
        follow_ups: List[FollowUp] = []
        if record.risk_level == "HIGH" or score > ALERT_SCORE_THRESHOLD:
            follow_ups.append(
                (
                    self.streams.alerts,
                    HighRiskDetectedJob(
                        payload=HighRiskDetectedPayload(
                            statement_id=record.id,
                            user_id=p.user_id,
                            risk_score=score,
                            risk_level=record.risk_level or "LOW",
                            risk_factors=list(record.risk_factors),
                        )
                    ),
                )
            )
        if score > FRAUD_CHECK_THRESHOLD:
            follow_ups.append(
                (
                    self.streams.risk_analysis,
                    DetectFraudPatternsJob(
                        payload=DetectFraudPatternsPayload(
                            statement_id=record.id,
                            user_id=p.user_id,
                            transaction_ids=transaction_ids,
                        )
                    ),
                )
            )
        if p.finalize:
            follow_ups.append(
                (
                    self.streams.statement_processing,
                    FinalizeStatementProcessingJob(
                        payload=FinalizeStatementProcessingPayload(
                            statement_id=record.id,
                            user_id=p.user_id,
                            status=ProcessingStatus.COMPLETED,
                        )
                    ),
                )
            )
        return follow_ups

    async def analyze_statement_risk(
        self, job: AnalyzeStatementRiskJob, ctx: JobContext
    ) -> str:
        p = job.payload

        async def body(record: StatementRecord) -> StageOutcome:
            transactions = await self.store.find_transactions(statement_id=p.statement_id)
            if not transactions:
                raise StageFailedError(
                    Stage.RISK_ANALYSIS.value,
                    f"No transactions found for statement {p.statement_id}",
                )
            opening_balance = (
                p.opening_balance if p.opening_balance is not None else record.opening_balance
            )
            assessment = await self.analyzer.analyze_statement(transactions, opening_balance)

            def update(r: StatementRecord) -> None:
                r.risk_score = assessment.score
                r.risk_level = assessment.level
                r.risk_factors = list(assessment.factors)

            scored = record.model_copy(deep=True)
            update(scored)
            follow_ups = self._statement_follow_ups(scored, p, [t.id for t in transactions])
            if any(isinstance(f, HighRiskDetectedJob) for _, f in follow_ups):
                self.high_risk_count += 1
                log_with_context(
                    logger,
                    logging.WARNING,
                    "High risk statement detected",
                    statement_id=p.statement_id,
                    risk_score=assessment.score,
                )
            return StageOutcome(
                metadata={
                    "risk_score": assessment.score,
                    "risk_level": assessment.level,
                    "risk_factors": list(assessment.factors),
                    "transaction_count": len(transactions),
                    "source": assessment.source,
                    "analysis_date": utc_now().isoformat(),
                },
                update=update,
                follow_ups=follow_ups,
            )

        async def replay(record: StatementRecord) -> List[FollowUp]:
            if not p.finalize or not stage_pending(record, Stage.FINALIZE):
                return []
            transactions = await self.store.find_transactions(statement_id=p.statement_id)
            return self._statement_follow_ups(record, p, [t.id for t in transactions])

        return await self.run_stage(ctx, p.statement_id, Stage.RISK_ANALYSIS, body, replay)

    async def analyze_transaction_risk(
        self, job: AnalyzeTransactionRiskJob, ctx: JobContext
    ) -> None:
        p = job.payload
        transaction = await self.store.get_transaction(p.transaction_id)
        related = await self.store.find_transactions(statement_id=transaction.statement_id)
        assessment = await self.analyzer.analyze_transaction(transaction, related)

        transaction.risk_assessment = {
            "risk_score": assessment.score,
            "risk_level": assessment.level,
            "risk_factors": list(assessment.factors),
            "analysis_date": utc_now().isoformat(),
        }
        await self.store.update_transaction(transaction)

        if assessment.score > SUSPICIOUS_TRANSACTION_THRESHOLD:
            await self.enqueue(
                self.streams.alerts,
                SuspiciousTransactionDetectedJob(
                    payload=SuspiciousTransactionDetectedPayload(
                        transaction_id=transaction.id,
                        statement_id=transaction.statement_id,
                        risk_score=assessment.score,
                        risk_factors=list(assessment.factors),
                    )
                ),
                ctx,
            )

    async def detect_fraud_patterns(self, job: DetectFraudPatternsJob, ctx: JobContext) -> None:
        p = job.payload
        if p.transaction_ids:
            transactions = await self.store.find_transactions(ids=p.transaction_ids)
        else:
            transactions = await self.store.find_transactions(statement_id=p.statement_id)
        if not transactions:
            logger.info(
                "No transactions to analyze for fraud",
                extra={"statement_id": p.statement_id},
            )
            return

        analysis = self.analyzer.detect_fraud(transactions)

        def update(record: StatementRecord) -> None:
            record.fraud_analysis = analysis.to_dict()

        await self.store.mutate_statement(p.statement_id, update)

        if not analysis.patterns:
            return

        self.fraud_alert_count += 1
        log_with_context(
            logger,
            logging.WARNING,
            "Fraud patterns detected",
            statement_id=p.statement_id,
            risk_score=analysis.score,
            pattern_count=len(analysis.patterns),
        )
        await self.enqueue(
            self.streams.alerts,
            FraudPatternsDetectedJob(
                payload=FraudPatternsDetectedPayload(
                    statement_id=p.statement_id,
                    user_id=p.user_id,
                    fraud_risk_score=analysis.score,
                    suspicious_patterns=analysis.patterns,
                    alert_level="HIGH" if analysis.score > ALERT_SCORE_THRESHOLD else "MEDIUM",
                )
            ),
            ctx,
        )

    def extra_stats(self) -> Dict[str, Any]:
        return {
            "high_risk_count": self.high_risk_count,
            "fraud_alert_count": self.fraud_alert_count,
        }
