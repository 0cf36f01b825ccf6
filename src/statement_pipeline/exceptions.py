"""
Exception types raised by the statement pipeline.

Builds on the shared hierarchy in core.errors. The category of each class
decides what a stage worker does with the message that raised it:

- TRANSIENT: leave unacknowledged, the work log redelivers it later
- PERMANENT: record the failure on the statement, acknowledge
"""

from typing import Optional

from core.errors.exceptions import (
    ConfigurationError,
    ConnectionError,
    NotFoundError,
    PermanentError,
    TransientError,
    ValidationError,
)


# =============================================================================
# Work Log Errors
# =============================================================================


class WorkLogError(ConnectionError):
    """Work log (broker) unreachable or rejected an operation."""

    pass


class JobDecodeError(ValidationError):
    """Message body is not a valid job of any known shape."""

    def __init__(
        self,
        message: str,
        job_type: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause, {"job_type": job_type})
        self.job_type = job_type


class UnknownJobTypeError(ConfigurationError):
    """Job type has no handler in the receiving worker's dispatch table."""

    def __init__(self, job_type: str, worker_type: Optional[str] = None):
        message = f"Unknown job type: {job_type}"
        if worker_type:
            message = f"Unknown job type for {worker_type} worker: {job_type}"
        super().__init__(message, context={"job_type": job_type})
        self.job_type = job_type


# =============================================================================
# Record Store Errors
# =============================================================================


class StatementNotFoundError(NotFoundError):
    """Statement record does not exist."""

    def __init__(self, statement_id: str):
        super().__init__(
            f"Statement {statement_id} not found",
            context={"statement_id": statement_id},
        )
        self.statement_id = statement_id


class TransactionNotFoundError(NotFoundError):
    """Transaction record does not exist."""

    def __init__(self, transaction_id: str):
        super().__init__(
            f"Transaction {transaction_id} not found",
            context={"transaction_id": transaction_id},
        )
        self.transaction_id = transaction_id


class StaleRecordError(TransientError):
    """Record changed since it was read (optimistic concurrency conflict)."""

    def __init__(self, statement_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Statement {statement_id} is at version {actual_version}, "
            f"expected {expected_version}",
            context={
                "statement_id": statement_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.statement_id = statement_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class LeaseHeldError(TransientError):
    """Another delivery of the same job owns the stage."""

    def __init__(self, statement_id: str, stage: str, holder: Optional[str]):
        super().__init__(
            f"Stage {stage} of statement {statement_id} is leased by {holder}",
            context={"statement_id": statement_id, "stage": stage, "holder": holder},
        )
        self.statement_id = statement_id
        self.stage = stage
        self.holder = holder


# =============================================================================
# Stage Errors
# =============================================================================


class StageFailedError(PermanentError):
    """Terminal business failure of one pipeline stage."""

    def __init__(
        self,
        stage: str,
        message: str,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause, {"stage": stage})
        self.stage = stage


class ClassifierUnavailableError(TransientError):
    """External scoring service is not configured or not reachable."""

    pass
