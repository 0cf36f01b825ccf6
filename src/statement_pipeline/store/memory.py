"""
In-process record store.

Keeps deep copies of every record so callers can never mutate stored state
without going through a versioned write.
"""

import asyncio
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from statement_pipeline.exceptions import (
    StaleRecordError,
    StatementNotFoundError,
    TransactionNotFoundError,
)
from statement_pipeline.schemas.records import StatementRecord, TransactionRecord
from statement_pipeline.store.base import RecordStore


class InMemoryRecordStore(RecordStore):
    """Record store backed by dictionaries, guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._statements: Dict[str, StatementRecord] = {}
        self._transactions: "OrderedDict[str, TransactionRecord]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def find_statement(self, statement_id: str) -> Optional[StatementRecord]:
        async with self._lock:
            record = self._statements.get(statement_id)
            return record.model_copy(deep=True) if record else None

    async def create_statement(self, record: StatementRecord) -> StatementRecord:
        async with self._lock:
            existing = self._statements.get(record.id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._statements[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    async def update_statement(
        self, record: StatementRecord, expected_version: int
    ) -> StatementRecord:
        async with self._lock:
            current = self._statements.get(record.id)
            if current is None:
                raise StatementNotFoundError(record.id)
            if current.version != expected_version:
                raise StaleRecordError(record.id, expected_version, current.version)
            stored = record.model_copy(deep=True, update={"version": expected_version + 1})
            self._statements[record.id] = stored
            return stored.model_copy(deep=True)

    async def insert_transactions(self, records: Sequence[TransactionRecord]) -> int:
        inserted = 0
        async with self._lock:
            for record in records:
                if record.id in self._transactions:
                    continue
                self._transactions[record.id] = record.model_copy(deep=True)
                inserted += 1
        return inserted

    async def find_transactions(
        self,
        statement_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> List[TransactionRecord]:
        async with self._lock:
            if ids is not None:
                found = [self._transactions[i] for i in ids if i in self._transactions]
            else:
                found = [
                    t
                    for t in self._transactions.values()
                    if statement_id is None or t.statement_id == statement_id
                ]
            return [t.model_copy(deep=True) for t in found]

    async def find_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        async with self._lock:
            record = self._transactions.get(transaction_id)
            return record.model_copy(deep=True) if record else None

    async def update_transaction(self, record: TransactionRecord) -> TransactionRecord:
        async with self._lock:
            if record.id not in self._transactions:
                raise TransactionNotFoundError(record.id)
            self._transactions[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)
