"""
Entry point for running statement pipeline workers.

Usage:
    # Run the whole pool (single-process, or clustered with ENABLE_CLUSTERING=true)
    python -m statement_pipeline

    # Run one worker (what clustered mode starts per child process)
    python -m statement_pipeline --worker statementProcessing
    python -m statement_pipeline --worker transactionCategorization
    python -m statement_pipeline --worker riskAnalysis

    # Process one statement file end to end and exit
    python -m statement_pipeline --submit statement.csv --user-id user-1

    # Run with metrics server
    python -m statement_pipeline --metrics-port 8000

Signals:
    SIGINT/SIGTERM: graceful shutdown (second signal cancels everything)
    SIGHUP: restart the worker pool
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import uuid
from pathlib import Path
from typing import Optional

from prometheus_client import start_http_server

from core.logging.setup import get_logger, setup_logging, setup_multi_worker_logging
from statement_pipeline.config import PipelineConfig, WorkerType, get_pipeline_config
from statement_pipeline.manager import WorkerManager
from statement_pipeline.store import create_record_store
from statement_pipeline.submit import submit_statement, wait_for_statement
from statement_pipeline.workers import create_worker
from statement_pipeline.worklog import create_work_log

WORKER_STAGES = [t.value for t in WorkerType]

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

_shutdown_event: Optional[asyncio.Event] = None
_restart_event: Optional[asyncio.Event] = None


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def get_restart_event() -> asyncio.Event:
    global _restart_event
    if _restart_event is None:
        _restart_event = asyncio.Event()
    return _restart_event


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run statement pipeline workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run all workers
    python -m statement_pipeline

    # Run only the risk analysis worker
    python -m statement_pipeline --worker riskAnalysis

    # Process one file and print its final status
    python -m statement_pipeline --submit statement.csv
        """,
    )

    parser.add_argument(
        "--worker",
        choices=["all"] + WORKER_STAGES,
        default=os.getenv("WORKER_TYPE", "all"),
        help="Which worker(s) to run (default: all, or WORKER_TYPE)",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: src/config.yaml)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=0,
        help="Port for Prometheus metrics server (default: disabled)",
    )

    parser.add_argument(
        "--submit",
        type=str,
        default=None,
        metavar="FILE",
        help="Submit a statement file, wait for it to finish, then exit",
    )

    parser.add_argument(
        "--user-id",
        type=str,
        default="cli",
        help="User id recorded on a submitted statement (default: cli)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Seconds to wait for a submitted statement (default: 120)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    return parser.parse_args(argv)


async def run_single_worker(config: PipelineConfig, worker_type: WorkerType) -> None:
    """Run one worker until the shutdown event is set.

    Clustered mode starts one of these per child process; WORKER_INDEX
    disambiguates siblings of the same type.
    """
    work_log = create_work_log(config.work_log)
    store = create_record_store(config.record_store)
    settings = config.workers[worker_type]

    await work_log.connect()
    try:
        await work_log.create_consumer_group(settings.stream, settings.group)
        index = int(os.getenv("WORKER_INDEX", "0"))
        worker = create_worker(worker_type, work_log, store, config, index=index)
        worker_task = asyncio.create_task(worker.run(), name=worker.consumer_name)
        shutdown_task = asyncio.create_task(get_shutdown_event().wait())

        await asyncio.wait({worker_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        worker.request_shutdown()
        shutdown_task.cancel()

        done, _ = await asyncio.wait({worker_task}, timeout=settings.grace_period_seconds)
        if not done:
            logger.warning("Worker did not stop within grace period, cancelling")
            worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
        if worker_task.done() and not worker_task.cancelled() and worker_task.exception():
            raise worker_task.exception()
    finally:
        await work_log.close()
        await store.close()


async def run_pool(config: PipelineConfig) -> None:
    """Run the managed pool until shutdown; SIGHUP restarts it."""
    work_log = create_work_log(config.work_log)
    store = None if config.enable_clustering else create_record_store(config.record_store)
    manager = WorkerManager(config, work_log, store)

    shutdown = get_shutdown_event()
    restart = get_restart_event()

    await manager.start()
    try:
        while not shutdown.is_set():
            waiters = [
                asyncio.create_task(shutdown.wait()),
                asyncio.create_task(restart.wait()),
            ]
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in waiters:
                waiter.cancel()
            if restart.is_set() and not shutdown.is_set():
                restart.clear()
                await manager.restart()
    finally:
        await manager.stop()
        if store is not None:
            await store.close()


async def run_submit(config: PipelineConfig, file_path: str, user_id: str, timeout: float) -> int:
    """Start an in-process pool, push one statement through it, report, stop."""
    work_log = create_work_log(config.work_log)
    store = create_record_store(config.record_store)
    manager = WorkerManager(config, work_log, store)

    await manager.start()
    try:
        statement_id = uuid.uuid4().hex
        await submit_statement(
            work_log,
            store,
            statement_id=statement_id,
            file_path=str(Path(file_path).resolve()),
            user_id=user_id,
            upload_metadata={"source": "cli", "original_name": Path(file_path).name},
            streams=config.streams,
        )
        record = await wait_for_statement(store, statement_id, timeout_seconds=timeout)
    finally:
        await manager.stop()
        await store.close()

    stats = record.processing.final_stats
    logger.info(
        f"Statement {record.id} finished with status {record.processing.status.value}",
        extra={
            "statement_id": record.id,
            "status": record.processing.status.value,
            "total_transactions": stats.total_transactions if stats else 0,
            "warnings": record.processing.warnings,
            "risk_level": record.risk_level,
        },
    )
    for warning in record.processing.warnings:
        logger.warning(f"  {warning}")
    return 0 if record.processing.status.value != "FAILED" else 1


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown and restart.

    - First SIGINT/SIGTERM: sets the shutdown event; workers finish the job
      in hand and the manager drains within each type's grace period
    - Second SIGINT/SIGTERM: cancels all tasks immediately
    - SIGHUP: sets the restart event; the pool is stopped and started again

    Signal handlers are not supported on Windows, where KeyboardInterrupt is
    used instead.
    """

    def handle_shutdown(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    def handle_restart(sig):
        logger.info(f"Received signal {sig.name}, restarting worker pool...")
        get_restart_event().set()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))
    loop.add_signal_handler(signal.SIGHUP, lambda: handle_restart(signal.SIGHUP))


def main(argv=None) -> int:
    """Main entry point."""
    global logger
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level)

    # JSON_LOGS=false gives human-readable file logs during local development
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")

    # Log directory: CLI arg > env var > default ./logs
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))

    try:
        config = get_pipeline_config(Path(args.config) if args.config else None)
    except ValueError as e:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger(__name__).error(f"Configuration error: {e}")
        return 1

    if args.worker == "all":
        setup_multi_worker_logging(
            workers=WORKER_STAGES,
            domain=config.domain,
            log_dir=log_dir,
            json_format=json_logs,
            console_level=log_level,
        )
    else:
        setup_logging(
            name="statement_pipeline",
            stage=args.worker,
            domain=config.domain,
            log_dir=log_dir,
            json_format=json_logs,
            console_level=log_level,
            worker_id=os.getenv("WORKER_ID", f"{config.domain}-{args.worker}"),
        )

    # Re-get logger after setup to use new handlers
    logger = get_logger(__name__)

    if args.metrics_port:
        logger.info(f"Starting metrics server on port {args.metrics_port}")
        start_http_server(args.metrics_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    exit_code = 0
    try:
        if args.submit:
            exit_code = loop.run_until_complete(
                run_submit(config, args.submit, args.user_id, args.timeout)
            )
        elif args.worker == "all":
            loop.run_until_complete(run_pool(config))
        else:
            loop.run_until_complete(run_single_worker(config, WorkerType.parse(args.worker)))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Shutdown forced")
    except asyncio.TimeoutError:
        logger.error("Timed out waiting for the submitted statement")
        exit_code = 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        loop.close()
        logger.info("Pipeline shutdown complete")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
