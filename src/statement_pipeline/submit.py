"""
Enqueue entry point.

Callers (an upload endpoint, the CLI) start a pipeline run by creating the
statement record and appending PROCESS_UPLOADED_STATEMENT. The run is
fire-and-forget: progress is observed through the record store or the
notifications stream.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from core.logging import get_logger, log_with_context
from statement_pipeline.config import StreamNames
from statement_pipeline.schemas.jobs import (
    ProcessUploadedStatementJob,
    ProcessUploadedStatementPayload,
)
from statement_pipeline.schemas.records import ProcessingStatus, StatementRecord
from statement_pipeline.store import RecordStore
from statement_pipeline.worklog import WorkLog

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset(
    {
        ProcessingStatus.COMPLETED,
        ProcessingStatus.COMPLETED_WITH_WARNINGS,
        ProcessingStatus.FAILED,
    }
)


async def submit_statement(
    work_log: WorkLog,
    store: RecordStore,
    statement_id: str,
    file_path: str,
    user_id: str,
    upload_metadata: Optional[Dict[str, Any]] = None,
    streams: Optional[StreamNames] = None,
    opening_balance: Optional[float] = None,
) -> str:
    """
    Create the statement record and enqueue its first job.

    Submitting the same statement_id twice keeps the existing record and
    appends a second job, which the upload stage treats as a duplicate once
    the first run has passed it.

    Returns:
        Message id of the appended job
    """
    streams = streams or StreamNames()
    await store.create_statement(
        StatementRecord(
            id=statement_id,
            user_id=user_id,
            file_path=file_path,
            opening_balance=opening_balance,
        )
    )
    job = ProcessUploadedStatementJob(
        correlation_id=statement_id,
        payload=ProcessUploadedStatementPayload(
            statement_id=statement_id,
            file_path=file_path,
            user_id=user_id,
            upload_metadata=upload_metadata or {},
        ),
    )
    message_id = await work_log.append(streams.statement_processing, job)
    log_with_context(
        logger,
        logging.INFO,
        "Statement submitted",
        statement_id=statement_id,
        user_id=user_id,
        message_id=message_id,
    )
    return message_id


async def wait_for_statement(
    store: RecordStore,
    statement_id: str,
    timeout_seconds: float = 60.0,
    poll_interval_seconds: float = 0.1,
) -> StatementRecord:
    """
    Poll the store until the statement reaches a terminal status.

    Raises:
        asyncio.TimeoutError: Still in flight after timeout_seconds
    """

    async def poll() -> StatementRecord:
        while True:
            record = await store.get_statement(statement_id)
            if record.processing.status in TERMINAL_STATUSES:
                return record
            await asyncio.sleep(poll_interval_seconds)

    return await asyncio.wait_for(poll(), timeout=timeout_seconds)
