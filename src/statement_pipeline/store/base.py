"""
Abstract record store.

Provides:
- RecordStore: storage primitives every backend implements
- Version-checked read-modify-write for statement records
- Stage lease helpers (claim, complete, fail) used by stage workers

Every statement write presents the version it read; a mismatch raises
StaleRecordError and the write is retried against the fresh record.
Stage leases fence concurrent deliveries of the same job: only the delivery
holding a stage's lease may complete or fail it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.logging import get_logger, log_with_context
from statement_pipeline.exceptions import (
    LeaseHeldError,
    StaleRecordError,
    StatementNotFoundError,
    TransactionNotFoundError,
)
from statement_pipeline.schemas.records import (
    ProcessingStatus,
    Stage,
    StageStatus,
    StatementRecord,
    TransactionRecord,
    utc_now,
)

logger = get_logger(__name__)

# Returning False from a mutation skips the write
Mutation = Callable[[StatementRecord], Optional[bool]]


@dataclass
class StageClaim:
    """Result of claiming a stage for one delivery."""

    record: StatementRecord
    already_completed: bool = False


class RecordStore(ABC):
    """
    Statement and transaction persistence.

    Subclasses implement the primitives; the stage helpers are shared.
    """

    # Attempts of one read-modify-write before giving up on contention
    max_write_attempts: int = 5

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_statement(self, statement_id: str) -> Optional[StatementRecord]:
        ...

    @abstractmethod
    async def create_statement(self, record: StatementRecord) -> StatementRecord:
        """Insert a statement. Returns the stored record if the id already exists."""

    @abstractmethod
    async def update_statement(
        self, record: StatementRecord, expected_version: int
    ) -> StatementRecord:
        """
        Replace a statement if its stored version equals expected_version.

        Returns:
            The stored record, with version incremented

        Raises:
            StatementNotFoundError: No such statement
            StaleRecordError: Stored version differs
        """

    @abstractmethod
    async def insert_transactions(self, records: Sequence[TransactionRecord]) -> int:
        """Insert transactions, skipping ids that already exist. Returns the number inserted."""

    @abstractmethod
    async def find_transactions(
        self,
        statement_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> List[TransactionRecord]:
        """Transactions of a statement, or with the given ids, in insertion order."""

    @abstractmethod
    async def find_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        ...

    @abstractmethod
    async def update_transaction(self, record: TransactionRecord) -> TransactionRecord:
        """
        Raises:
            TransactionNotFoundError: No such transaction
        """

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Release backend resources; the store is unusable afterwards."""

    async def get_statement(self, statement_id: str) -> StatementRecord:
        record = await self.find_statement(statement_id)
        if record is None:
            raise StatementNotFoundError(statement_id)
        return record

    async def get_transaction(self, transaction_id: str) -> TransactionRecord:
        record = await self.find_transaction(transaction_id)
        if record is None:
            raise TransactionNotFoundError(transaction_id)
        return record

    async def mutate_statement(self, statement_id: str, mutation: Mutation) -> StatementRecord:
        """Apply mutation to a fresh copy and write it back, retrying on conflict."""
        last_error: Optional[StaleRecordError] = None
        for attempt in range(1, self.max_write_attempts + 1):
            current = await self.get_statement(statement_id)
            draft = current.model_copy(deep=True)
            if mutation(draft) is False:
                return current
            try:
                return await self.update_statement(draft, expected_version=current.version)
            except StaleRecordError as e:
                last_error = e
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Write conflict, retrying",
                    statement_id=statement_id,
                    attempt=attempt,
                )
        raise last_error

    async def update_stage_status(
        self,
        statement_id: str,
        stage: Stage,
        status: StageStatus,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> StatementRecord:
        """Set a stage's status unconditionally, stamping the matching timestamp."""

        def apply(record: StatementRecord) -> None:
            stage_record = record.processing.stage(stage)
            now = utc_now()
            stage_record.status = status
            if status == StageStatus.PROCESSING and stage_record.started_at is None:
                stage_record.started_at = now
            elif status == StageStatus.COMPLETED:
                stage_record.completed_at = now
            elif status == StageStatus.FAILED:
                stage_record.failed_at = now
            if metadata:
                stage_record.metadata.update(metadata)
            if error is not None:
                stage_record.error = error

        return await self.mutate_statement(statement_id, apply)

    async def claim_stage(
        self,
        statement_id: str,
        stage: Stage,
        lease_token: str,
        lease_seconds: float,
        now: Optional[datetime] = None,
    ) -> StageClaim:
        """
        Take the lease on a stage for one delivery and mark it PROCESSING.

        A delivery may take over a stage held by another token only once
        that lease has expired. Re-claiming with the same token renews it.

        Returns:
            StageClaim; already_completed is set (and nothing is written)
            when the stage finished on an earlier delivery

        Raises:
            LeaseHeldError: Another delivery holds an unexpired lease
        """
        now = now or utc_now()
        outcome = {"completed": False}

        def apply(record: StatementRecord) -> Optional[bool]:
            stage_record = record.processing.stage(stage)
            if stage_record.status == StageStatus.COMPLETED:
                outcome["completed"] = True
                return False
            if (
                stage_record.status == StageStatus.PROCESSING
                and stage_record.lease_token
                and stage_record.lease_token != lease_token
                and stage_record.lease_expires_at is not None
                and stage_record.lease_expires_at > now
            ):
                raise LeaseHeldError(statement_id, stage.value, stage_record.lease_token)

            if stage_record.lease_token != lease_token:
                stage_record.attempts += 1
            stage_record.status = StageStatus.PROCESSING
            stage_record.started_at = stage_record.started_at or now
            stage_record.lease_token = lease_token
            stage_record.lease_expires_at = now + timedelta(seconds=lease_seconds)
            stage_record.error = None

            if record.processing.status == ProcessingStatus.PENDING:
                record.processing.status = ProcessingStatus.PROCESSING
            if record.processing.started_at is None:
                record.processing.started_at = now
            return None

        record = await self.mutate_statement(statement_id, apply)
        return StageClaim(record=record, already_completed=outcome["completed"])

    async def complete_stage(
        self,
        statement_id: str,
        stage: Stage,
        lease_token: str,
        metadata: Optional[Dict[str, Any]] = None,
        update: Optional[Callable[[StatementRecord], None]] = None,
    ) -> StatementRecord:
        """
        Mark a stage COMPLETED, releasing the lease.

        update may change other statement fields in the same write.

        Raises:
            LeaseHeldError: lease_token no longer owns the stage
        """

        def apply(record: StatementRecord) -> None:
            stage_record = record.processing.stage(stage)
            if stage_record.lease_token != lease_token:
                raise LeaseHeldError(statement_id, stage.value, stage_record.lease_token)
            stage_record.status = StageStatus.COMPLETED
            stage_record.completed_at = utc_now()
            stage_record.lease_token = None
            stage_record.lease_expires_at = None
            if metadata:
                stage_record.metadata.update(metadata)
            if update is not None:
                update(record)

        return await self.mutate_statement(statement_id, apply)

    async def fail_stage(
        self,
        statement_id: str,
        stage: Stage,
        error: str,
        lease_token: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StatementRecord:
        """
        Mark a stage FAILED with an error message, releasing the lease.

        Raises:
            LeaseHeldError: lease_token is given and no longer owns the stage
        """

        def apply(record: StatementRecord) -> None:
            stage_record = record.processing.stage(stage)
            if lease_token is not None and stage_record.lease_token not in (None, lease_token):
                raise LeaseHeldError(statement_id, stage.value, stage_record.lease_token)
            stage_record.status = StageStatus.FAILED
            stage_record.failed_at = utc_now()
            stage_record.error = error
            stage_record.lease_token = None
            stage_record.lease_expires_at = None
            if metadata:
                stage_record.metadata.update(metadata)

        return await self.mutate_statement(statement_id, apply)
