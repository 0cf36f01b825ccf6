"""
Statement and transaction persistence.

Backends:
- InMemoryRecordStore: single process
- SqliteRecordStore: one database file, shareable between processes
"""

from statement_pipeline.config import RecordStoreBackend, RecordStoreConfig
from statement_pipeline.store.base import RecordStore, StageClaim
from statement_pipeline.store.memory import InMemoryRecordStore
from statement_pipeline.store.sqlite import SqliteRecordStore


def create_record_store(config: RecordStoreConfig) -> RecordStore:
    """Build the record store selected by config.backend."""
    if config.backend == RecordStoreBackend.SQLITE:
        return SqliteRecordStore(config.path, wal_mode=config.wal_mode)
    return InMemoryRecordStore()


__all__ = [
    "RecordStore",
    "StageClaim",
    "InMemoryRecordStore",
    "SqliteRecordStore",
    "create_record_store",
]
