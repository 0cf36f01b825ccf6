"""
Pytest fixtures for statement pipeline tests.

Provides:
- A pipeline configuration tuned for fast tests (short block timeouts,
  no restart backoff, monitoring loops effectively disabled)
- A connected in-memory work log with every consumer group created
- An in-memory record store
- Helpers to seed statements and drive workers until their stream is drained
"""

from pathlib import Path

import pytest

from statement_pipeline.config import PipelineConfig, RestartPolicy
from statement_pipeline.schemas.jobs import decode_job
from statement_pipeline.schemas.records import StatementRecord
from statement_pipeline.store import InMemoryRecordStore
from statement_pipeline.worklog import InMemoryWorkLog, StreamEntry


@pytest.fixture
def config() -> PipelineConfig:
    cfg = PipelineConfig()
    for settings in cfg.workers.values():
        settings.block_timeout_ms = 20
        settings.grace_period_seconds = 1.0
        settings.read_error_backoff_seconds = 0.01
    cfg.restart_policy = RestartPolicy(
        base_delay_seconds=0.0, max_delay_seconds=0.0, max_restarts=3, window_seconds=60.0
    )
    cfg.health_check_interval_seconds = 3600.0
    cfg.metrics_interval_seconds = 3600.0
    cfg.restart_pause_seconds = 0.0
    return cfg


@pytest.fixture
async def work_log(config):
    log = InMemoryWorkLog(reclaim_idle_ms=config.work_log.reclaim_idle_ms)
    await log.connect()
    for settings in config.workers.values():
        await log.create_consumer_group(settings.stream, settings.group)
    yield log
    await log.close()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def statement_file(tmp_path):
    """Factory writing statement content to a file and returning its path."""

    def write(content: str, name: str = "statement.csv") -> str:
        path = Path(tmp_path) / name
        path.write_text(content, encoding="utf-8")
        return str(path)

    return write


@pytest.fixture
def seed_statement(store):
    """Factory creating a PENDING statement record."""

    async def seed(statement_id: str = "st-1", user_id: str = "user-1", **fields):
        return await store.create_statement(
            StatementRecord(id=statement_id, user_id=user_id, **fields)
        )

    return seed


@pytest.fixture
def drain(work_log):
    """
    Drive workers until none of their streams has anything left to deliver.

    Returns the outcomes in processing order.
    """

    async def run(*workers, max_rounds: int = 200):
        outcomes = []
        for _ in range(max_rounds):
            progressed = False
            for worker in workers:
                entries = await work_log.read_group(
                    worker.settings.stream,
                    worker.settings.group,
                    worker.consumer_name,
                    batch_size=worker.settings.batch_size,
                    block_timeout_ms=1,
                )
                for entry in entries:
                    outcomes.append(await worker.process_entry(entry))
                    progressed = True
            if not progressed:
                return outcomes
        raise AssertionError("Workers did not go idle")

    return run


def jobs_on(work_log: InMemoryWorkLog, stream: str):
    """Decoded jobs appended to a stream, in order."""
    return [decode_job(entry.value) for entry in work_log.entries(stream)]


@pytest.fixture
def stream_jobs(work_log):
    """Factory returning decoded jobs on a stream."""

    def read(stream: str):
        return jobs_on(work_log, stream)

    return read


@pytest.fixture
def deliver(work_log):
    """
    Append a job to a worker's stream and process that one delivery.

    The stream must have no undelivered entries ahead of the job. Returns
    (entry, outcome); the entry can be handed to process_entry again to
    simulate a redelivery.
    """

    async def run(worker, job):
        message_id = await work_log.append(worker.settings.stream, job)
        entries = await work_log.read_group(
            worker.settings.stream,
            worker.settings.group,
            worker.consumer_name,
            batch_size=1,
            block_timeout_ms=1,
        )
        assert [e.message_id for e in entries] == [message_id]
        outcome = await worker.process_entry(entries[0])
        return entries[0], outcome

    return run


def redelivery(entry: StreamEntry, delivery_count: int = 2) -> StreamEntry:
    return StreamEntry(entry.message_id, entry.value, delivery_count)


@pytest.fixture
def redeliver():
    """Factory building a later delivery of an entry."""
    return redelivery
