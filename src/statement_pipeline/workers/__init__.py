"""
Stage workers.

One worker class per worker type; the manager builds instances through
create_worker() so the mapping lives in one place.
"""

from typing import Any, Dict, Type

from statement_pipeline.config import PipelineConfig, WorkerType
from statement_pipeline.store import RecordStore
from statement_pipeline.workers.base import StageWorker
from statement_pipeline.workers.categorization_worker import TransactionCategorizationWorker
from statement_pipeline.workers.risk_worker import RiskAnalysisWorker
from statement_pipeline.workers.statement_worker import StatementProcessingWorker
from statement_pipeline.worklog import WorkLog

WORKER_CLASSES: Dict[WorkerType, Type[StageWorker]] = {
    WorkerType.STATEMENT_PROCESSING: StatementProcessingWorker,
    WorkerType.TRANSACTION_CATEGORIZATION: TransactionCategorizationWorker,
    WorkerType.RISK_ANALYSIS: RiskAnalysisWorker,
}


def create_worker(
    worker_type: WorkerType,
    work_log: WorkLog,
    store: RecordStore,
    config: PipelineConfig,
    index: int = 0,
    **kwargs: Any,
) -> StageWorker:
    """Instantiate the worker class registered for worker_type.

    Extra keyword arguments go to the worker constructor (e.g. a custom
    categorizer or risk analyzer).
    """
    worker_class = WORKER_CLASSES[WorkerType.parse(worker_type)]
    return worker_class(work_log, store, config, index=index, **kwargs)


__all__ = [
    "WORKER_CLASSES",
    "RiskAnalysisWorker",
    "StageWorker",
    "StatementProcessingWorker",
    "TransactionCategorizationWorker",
    "create_worker",
]
