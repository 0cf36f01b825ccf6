"""
SQLite-backed record store.

Records are stored as JSON documents next to the columns needed for lookup
and version checks. The database file can be shared by several processes,
which is what clustered mode needs; WAL mode lets readers proceed while a
writer holds the lock.

Blocking sqlite3 calls run in a worker thread via asyncio.to_thread.
"""

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from core.logging import get_logger
from statement_pipeline.exceptions import (
    StaleRecordError,
    StatementNotFoundError,
    TransactionNotFoundError,
)
from statement_pipeline.schemas.records import StatementRecord, TransactionRecord
from statement_pipeline.store.base import RecordStore

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS statements (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    doc TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS transactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    statement_id TEXT NOT NULL,
    doc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_statement ON transactions (statement_id);
"""


class SqliteRecordStore(RecordStore):
    """Record store in a single SQLite database file."""

    def __init__(self, path: str, wal_mode: bool = True):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        self.conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=30.0)
        if wal_mode:
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        logger.info("Initialized SQLite record store", extra={"path": str(self.path)})

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                return fn(*args)

        return await asyncio.to_thread(locked)

    async def close(self) -> None:
        await self._run(self.conn.close)
        logger.debug("Closed SQLite record store", extra={"path": str(self.path)})

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _find_statement(self, statement_id: str) -> Optional[StatementRecord]:
        row = self.conn.execute(
            "SELECT doc FROM statements WHERE id = ?", (statement_id,)
        ).fetchone()
        return StatementRecord.model_validate_json(row[0]) if row else None

    async def find_statement(self, statement_id: str) -> Optional[StatementRecord]:
        return await self._run(self._find_statement, statement_id)

    def _create_statement(self, record: StatementRecord) -> StatementRecord:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO statements (id, version, doc) VALUES (?, ?, ?)",
                (record.id, record.version, record.model_dump_json()),
            )
        if cursor.rowcount == 0:
            existing = self._find_statement(record.id)
            if existing is not None:
                return existing
        return record.model_copy(deep=True)

    async def create_statement(self, record: StatementRecord) -> StatementRecord:
        return await self._run(self._create_statement, record)

    def _update_statement(self, record: StatementRecord, expected_version: int) -> StatementRecord:
        stored = record.model_copy(deep=True, update={"version": expected_version + 1})
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE statements SET version = ?, doc = ? WHERE id = ? AND version = ?",
                (stored.version, stored.model_dump_json(), record.id, expected_version),
            )
        if cursor.rowcount == 1:
            return stored

        row = self.conn.execute(
            "SELECT version FROM statements WHERE id = ?", (record.id,)
        ).fetchone()
        if row is None:
            raise StatementNotFoundError(record.id)
        raise StaleRecordError(record.id, expected_version, row[0])

    async def update_statement(
        self, record: StatementRecord, expected_version: int
    ) -> StatementRecord:
        return await self._run(self._update_statement, record, expected_version)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _insert_transactions(self, records: Sequence[TransactionRecord]) -> int:
        inserted = 0
        with self.conn:
            for record in records:
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO transactions (id, statement_id, doc) VALUES (?, ?, ?)",
                    (record.id, record.statement_id, record.model_dump_json()),
                )
                inserted += cursor.rowcount
        logger.debug(
            "Inserted transactions",
            extra={"inserted": inserted, "requested": len(records)},
        )
        return inserted

    async def insert_transactions(self, records: Sequence[TransactionRecord]) -> int:
        return await self._run(self._insert_transactions, list(records))

    def _find_transactions(
        self, statement_id: Optional[str], ids: Optional[Sequence[str]]
    ) -> List[TransactionRecord]:
        if ids is not None:
            by_id = {}
            for transaction_id in ids:
                row = self.conn.execute(
                    "SELECT doc FROM transactions WHERE id = ?", (transaction_id,)
                ).fetchone()
                if row:
                    by_id[transaction_id] = TransactionRecord.model_validate_json(row[0])
            return [by_id[i] for i in ids if i in by_id]

        if statement_id is None:
            rows = self.conn.execute("SELECT doc FROM transactions ORDER BY seq").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT doc FROM transactions WHERE statement_id = ? ORDER BY seq",
                (statement_id,),
            ).fetchall()
        return [TransactionRecord.model_validate_json(row[0]) for row in rows]

    async def find_transactions(
        self,
        statement_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> List[TransactionRecord]:
        return await self._run(
            self._find_transactions, statement_id, list(ids) if ids is not None else None
        )

    async def find_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        found = await self._run(self._find_transactions, None, [transaction_id])
        return found[0] if found else None

    def _update_transaction(self, record: TransactionRecord) -> TransactionRecord:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE transactions SET doc = ? WHERE id = ?",
                (record.model_dump_json(), record.id),
            )
        if cursor.rowcount == 0:
            raise TransactionNotFoundError(record.id)
        return record.model_copy(deep=True)

    async def update_transaction(self, record: TransactionRecord) -> TransactionRecord:
        return await self._run(self._update_transaction, record)
