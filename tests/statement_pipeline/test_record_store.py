"""Tests for record store backends and the shared stage lease helpers."""

import sqlite3
from datetime import timedelta

import pytest

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
    TransactionType,
    utc_now,
)
from statement_pipeline.store import InMemoryRecordStore, SqliteRecordStore


@pytest.fixture(params=["memory", "sqlite"])
async def record_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRecordStore()
        return
    sqlite_store = SqliteRecordStore(str(tmp_path / "records.db"))
    yield sqlite_store
    await sqlite_store.close()


def make_transaction(index: int, statement_id: str = "st-1", amount: float = -10.0):
    return TransactionRecord(
        id=f"{statement_id}-{index}",
        statement_id=statement_id,
        user_id="user-1",
        description=f"Purchase {index}",
        amount=amount,
        type=TransactionType.DEBIT if amount < 0 else TransactionType.CREDIT,
    )


@pytest.fixture
async def statement(record_store):
    return await record_store.create_statement(StatementRecord(id="st-1", user_id="user-1"))


@pytest.mark.asyncio
class TestStatementPrimitives:
    async def test_create_is_idempotent(self, record_store, statement):
        again = await record_store.create_statement(
            StatementRecord(id="st-1", user_id="someone-else")
        )

        assert again.user_id == "user-1"

    async def test_update_bumps_version(self, record_store, statement):
        statement.transaction_count = 3

        stored = await record_store.update_statement(statement, expected_version=0)

        assert stored.version == 1
        assert (await record_store.get_statement("st-1")).transaction_count == 3

    async def test_stale_update_is_rejected(self, record_store, statement):
        await record_store.update_statement(statement, expected_version=0)

        with pytest.raises(StaleRecordError) as exc_info:
            await record_store.update_statement(statement, expected_version=0)

        assert exc_info.value.actual_version == 1
        assert exc_info.value.is_retryable

    async def test_missing_statement(self, record_store):
        assert await record_store.find_statement("nope") is None
        with pytest.raises(StatementNotFoundError):
            await record_store.get_statement("nope")
        with pytest.raises(StatementNotFoundError):
            await record_store.update_statement(
                StatementRecord(id="nope", user_id="u"), expected_version=0
            )

    async def test_returned_records_are_copies(self, record_store, statement):
        found = await record_store.get_statement("st-1")
        found.risk_factors.append("mutated")

        assert (await record_store.get_statement("st-1")).risk_factors == []


@pytest.mark.asyncio
class TestMutateStatement:
    async def test_retries_on_conflict(self, record_store, statement, monkeypatch):
        original = record_store.update_statement
        calls = []

        async def flaky(record, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                raise StaleRecordError(record.id, expected_version, expected_version + 1)
            return await original(record, expected_version)

        monkeypatch.setattr(record_store, "update_statement", flaky)

        result = await record_store.mutate_statement(
            "st-1", lambda r: setattr(r, "risk_level", "LOW")
        )

        assert len(calls) == 2
        assert result.risk_level == "LOW"

    async def test_gives_up_after_max_attempts(self, record_store, statement, monkeypatch):
        async def always_stale(record, expected_version):
            raise StaleRecordError(record.id, expected_version, expected_version + 1)

        monkeypatch.setattr(record_store, "update_statement", always_stale)

        with pytest.raises(StaleRecordError):
            await record_store.mutate_statement("st-1", lambda r: None)

    async def test_returning_false_skips_write(self, record_store, statement):
        result = await record_store.mutate_statement("st-1", lambda r: False)

        assert result.version == 0
        assert (await record_store.get_statement("st-1")).version == 0


@pytest.mark.asyncio
class TestStageLeases:
    async def test_claim_marks_processing(self, record_store, statement):
        claim = await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        stage = claim.record.processing.parsing
        assert not claim.already_completed
        assert stage.status == StageStatus.PROCESSING
        assert stage.lease_token == "1-0#1"
        assert stage.attempts == 1
        assert stage.started_at is not None
        assert claim.record.processing.status == ProcessingStatus.PROCESSING

    async def test_live_lease_blocks_other_delivery(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        with pytest.raises(LeaseHeldError) as exc_info:
            await record_store.claim_stage("st-1", Stage.PARSING, "1-0#2", 60)

        assert exc_info.value.holder == "1-0#1"

    async def test_expired_lease_can_be_taken_over(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        later = utc_now() + timedelta(seconds=120)
        claim = await record_store.claim_stage("st-1", Stage.PARSING, "1-0#2", 60, now=later)

        assert claim.record.processing.parsing.lease_token == "1-0#2"
        assert claim.record.processing.parsing.attempts == 2

    async def test_same_token_renews(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)
        claim = await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        assert claim.record.processing.parsing.attempts == 1

    async def test_complete_requires_lease(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        with pytest.raises(LeaseHeldError):
            await record_store.complete_stage("st-1", Stage.PARSING, "1-0#2")

    async def test_complete_applies_metadata_and_update(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.EXTRACTION, "1-0#1", 60)

        record = await record_store.complete_stage(
            "st-1",
            Stage.EXTRACTION,
            "1-0#1",
            metadata={"extracted_transactions": 2},
            update=lambda r: setattr(r, "transaction_count", 2),
        )

        stage = record.processing.extraction
        assert stage.status == StageStatus.COMPLETED
        assert stage.lease_token is None
        assert stage.completed_at is not None
        assert stage.metadata == {"extracted_transactions": 2}
        assert record.transaction_count == 2

    async def test_claim_after_completion_writes_nothing(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.UPLOAD, "1-0#1", 60)
        completed = await record_store.complete_stage("st-1", Stage.UPLOAD, "1-0#1")

        claim = await record_store.claim_stage("st-1", Stage.UPLOAD, "1-0#2", 60)

        assert claim.already_completed
        assert claim.record.version == completed.version

    async def test_fail_stage(self, record_store, statement):
        await record_store.claim_stage("st-1", Stage.PARSING, "1-0#1", 60)

        with pytest.raises(LeaseHeldError):
            await record_store.fail_stage("st-1", Stage.PARSING, "boom", lease_token="1-0#9")

        record = await record_store.fail_stage(
            "st-1", Stage.PARSING, "File not found", lease_token="1-0#1"
        )

        assert record.processing.parsing.status == StageStatus.FAILED
        assert record.processing.parsing.error == "File not found"
        assert record.processing.parsing.failed_at is not None
        assert record.processing.parsing.lease_token is None

    async def test_update_stage_status(self, record_store, statement):
        record = await record_store.update_stage_status(
            "st-1", Stage.FINALIZE, StageStatus.COMPLETED, metadata={"notified": True}
        )

        assert record.processing.finalize.status == StageStatus.COMPLETED
        assert record.processing.finalize.metadata["notified"] is True


@pytest.mark.asyncio
class TestTransactions:
    async def test_insert_skips_existing_ids(self, record_store):
        assert await record_store.insert_transactions([make_transaction(0), make_transaction(1)]) == 2
        assert await record_store.insert_transactions([make_transaction(1), make_transaction(2)]) == 1

        found = await record_store.find_transactions(statement_id="st-1")
        assert [t.id for t in found] == ["st-1-0", "st-1-1", "st-1-2"]

    async def test_find_by_ids_keeps_requested_order(self, record_store):
        await record_store.insert_transactions([make_transaction(i) for i in range(3)])

        found = await record_store.find_transactions(ids=["st-1-2", "missing", "st-1-0"])

        assert [t.id for t in found] == ["st-1-2", "st-1-0"]

    async def test_find_by_statement_filters(self, record_store):
        await record_store.insert_transactions(
            [make_transaction(0), make_transaction(0, statement_id="st-2")]
        )

        found = await record_store.find_transactions(statement_id="st-2")

        assert [t.statement_id for t in found] == ["st-2"]

    async def test_update_transaction(self, record_store):
        await record_store.insert_transactions([make_transaction(0)])
        transaction = await record_store.get_transaction("st-1-0")
        transaction.category = "GROCERIES"

        await record_store.update_transaction(transaction)

        assert (await record_store.get_transaction("st-1-0")).category == "GROCERIES"

    async def test_missing_transaction(self, record_store):
        with pytest.raises(TransactionNotFoundError):
            await record_store.get_transaction("missing")
        with pytest.raises(TransactionNotFoundError):
            await record_store.update_transaction(make_transaction(9))


@pytest.mark.asyncio
class TestSqliteSharing:
    async def test_two_handles_see_the_same_records(self, tmp_path):
        path = str(tmp_path / "shared.db")
        first = SqliteRecordStore(path)
        second = SqliteRecordStore(path)
        try:
            await first.create_statement(StatementRecord(id="st-1", user_id="user-1"))
            await second.claim_stage("st-1", Stage.UPLOAD, "1-0#1", 60)

            with pytest.raises(LeaseHeldError):
                await first.claim_stage("st-1", Stage.UPLOAD, "1-0#2", 60)
        finally:
            await first.close()
            await second.close()

    async def test_close_releases_connection(self, tmp_path):
        sqlite_store = SqliteRecordStore(str(tmp_path / "closed.db"))

        await sqlite_store.close()

        with pytest.raises(sqlite3.ProgrammingError):
            await sqlite_store.find_statement("st-1")
