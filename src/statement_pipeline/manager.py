"""
Worker manager - owns the worker pool and its lifecycle.

Modes:
- Single-process (default): every worker instance is an asyncio task in
  this process; supervision polls each worker's stats()
- Clustered (ENABLE_CLUSTERING=true): one OS process per worker instance,
  started through a ProcessLauncher; children that exit with a nonzero
  status while the manager is running are respawned with backoff

Startup order: connect work log -> create streams and consumer groups ->
spawn workers -> start health and metrics loops.

Shutdown order: stop restarting -> ask every worker to stop -> wait the
per-type grace period -> close the work log -> clear the registry.

Signal handling belongs to the hosting process (see __main__), which calls
stop() and restart() directly.
"""

import asyncio
import logging
import os
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from core.logging import get_logger, log_exception, log_with_context
from statement_pipeline.config import PipelineConfig, WorkerType
from statement_pipeline.metrics import (
    record_worker_restart,
    update_active_workers,
    update_connection_status,
)
from statement_pipeline.monitor import HealthMonitor
from statement_pipeline.store import RecordStore
from statement_pipeline.workers import StageWorker, create_worker
from statement_pipeline.worklog import WorkLog

logger = get_logger(__name__)


@runtime_checkable
class ProcessHandle(Protocol):
    """The parts of asyncio.subprocess.Process the manager relies on."""

    pid: int
    returncode: Optional[int]

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class ProcessLauncher(Protocol):
    async def launch(self, worker_type: WorkerType, env: Mapping[str, str]) -> ProcessHandle:
        ...


class SubprocessLauncher:
    """Starts `python -m statement_pipeline --worker <type>` children."""

    def __init__(self, extra_args: Optional[List[str]] = None):
        self.extra_args = list(extra_args or [])

    async def launch(self, worker_type: WorkerType, env: Mapping[str, str]) -> ProcessHandle:
        child_env = dict(os.environ)
        child_env.update(env)
        return await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "statement_pipeline",
            "--worker",
            worker_type.value,
            *self.extra_args,
            env=child_env,
        )


@dataclass
class WorkerEntry:
    """One slot in the worker pool."""

    identity: str
    worker_type: WorkerType
    start_time: float
    restart_count: int = 0
    abandoned: bool = False

    # Single-process mode
    worker: Optional[StageWorker] = None
    task: Optional["asyncio.Task[None]"] = None

    # Clustered mode
    process: Optional[ProcessHandle] = None
    watcher: Optional["asyncio.Task[None]"] = None
    restart_times: Deque[float] = field(default_factory=deque)

    def to_dict(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "id": self.identity,
            "type": self.worker_type.value,
            "start_time": self.start_time,
            "restart_count": self.restart_count,
        }
        if self.worker is not None:
            info["stats"] = self.worker.stats()
        if self.process is not None:
            info["pid"] = self.process.pid
            info["returncode"] = self.process.returncode
        if self.abandoned:
            info["abandoned"] = True
        return info


WorkerFactory = Callable[..., StageWorker]


class WorkerManager:
    """
    Runs the configured number of workers per type and keeps them alive.

    Usage:
        >>> manager = WorkerManager(config, work_log, store)
        >>> await manager.start()
        >>> manager.status()["workers"]
        >>> await manager.stop()
    """

    def __init__(
        self,
        config: PipelineConfig,
        work_log: WorkLog,
        store: Optional[RecordStore] = None,
        launcher: Optional[ProcessLauncher] = None,
        worker_factory: WorkerFactory = create_worker,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not config.enable_clustering and store is None:
            raise ValueError("Single-process mode needs a record store for the workers")
        self.config = config
        self.work_log = work_log
        self.store = store
        self.launcher: ProcessLauncher = launcher or SubprocessLauncher()
        self.worker_factory = worker_factory
        self.clock = clock

        self.monitor = HealthMonitor(self)
        self.workers: Dict[str, WorkerEntry] = {}
        self._running = False
        self._started_at: Optional[float] = None
        self._background: List["asyncio.Task[None]"] = []
        self._total_restarts = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(self.clock() - self._started_at, 0.0)

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, create groups, spawn the pool and start monitoring."""
        if self._running:
            logger.warning("Worker manager already running")
            return

        self.config.validate()
        log_with_context(
            logger,
            logging.INFO,
            "Starting worker manager",
            clustered=self.config.enable_clustering,
            worker_counts={t.value: n for t, n in self.config.worker_counts.items()},
        )

        await self.work_log.connect()
        update_connection_status(True)
        await self._create_consumer_groups()

        self._running = True
        self._started_at = self.clock()

        if self.config.enable_clustering:
            await self._spawn_processes()
        else:
            self._spawn_workers()
        self._update_active_gauges()

        self._background = [
            asyncio.create_task(
                self.monitor.run_health_checks(self.config.health_check_interval_seconds),
                name="health-check",
            ),
            asyncio.create_task(
                self.monitor.run_metrics_collection(self.config.metrics_interval_seconds),
                name="metrics-collection",
            ),
        ]
        log_with_context(
            logger,
            logging.INFO,
            "Worker manager started",
            worker_count=len(self.workers),
        )

    async def _create_consumer_groups(self) -> None:
        groups: Dict[str, str] = {
            settings.stream: settings.group for settings in self.config.workers.values()
        }
        for stream in self.config.streams.all():
            # Output-only streams get a group for their downstream consumers
            group = groups.get(stream, f"{stream}-consumers")
            await self.work_log.create_consumer_group(stream, group)
        logger.info(
            "Consumer groups ready",
            extra={"streams": self.config.streams.all()},
        )

    def _spawn_workers(self) -> None:
        for worker_type, count in self.config.worker_counts.items():
            for index in range(count):
                worker = self.worker_factory(
                    worker_type, self.work_log, self.store, self.config, index=index
                )
                entry = WorkerEntry(
                    identity=worker.consumer_name,
                    worker_type=worker_type,
                    start_time=self.clock(),
                    worker=worker,
                )
                entry.task = asyncio.create_task(worker.run(), name=entry.identity)
                entry.task.add_done_callback(self._on_worker_task_done)
                self.workers[entry.identity] = entry

    def _on_worker_task_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_exception(
                logger,
                exc,
                "Worker task exited with an error",
                worker=task.get_name(),
            )

    async def _spawn_processes(self) -> None:
        budget = self.config.max_workers
        for worker_type, count in self.config.worker_counts.items():
            for index in range(count):
                if budget <= 0:
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "MAX_WORKERS reached, not starting remaining workers",
                        max_workers=self.config.max_workers,
                        worker_type=worker_type.value,
                        skipped_index=index,
                    )
                    break
                budget -= 1
                identity = f"{worker_type.value}-{index}"
                entry = WorkerEntry(
                    identity=identity, worker_type=worker_type, start_time=self.clock()
                )
                entry.process = await self.launcher.launch(
                    worker_type, self._child_env(entry, index)
                )
                entry.watcher = asyncio.create_task(
                    self._watch_process(entry, index), name=f"watch-{identity}"
                )
                self.workers[identity] = entry
                log_with_context(
                    logger,
                    logging.INFO,
                    "Started worker process",
                    worker=identity,
                    pid=entry.process.pid,
                )

    def _child_env(self, entry: WorkerEntry, index: int) -> Dict[str, str]:
        return {
            "WORKER_TYPE": entry.worker_type.value,
            "WORKER_INDEX": str(index),
            "WORKER_ID": entry.identity,
        }

    async def _watch_process(self, entry: WorkerEntry, index: int) -> None:
        """Respawn entry's child after a crash, within the restart policy."""
        policy = self.config.restart_policy
        process = entry.process
        while process is not None:
            returncode = await process.wait()
            if not self._running:
                return
            if returncode == 0:
                log_with_context(
                    logger, logging.INFO, "Worker process exited cleanly", worker=entry.identity
                )
                return

            now = self.clock()
            while entry.restart_times and now - entry.restart_times[0] > policy.window_seconds:
                entry.restart_times.popleft()
            if len(entry.restart_times) >= policy.max_restarts:
                entry.abandoned = True
                log_with_context(
                    logger,
                    logging.ERROR,
                    "Worker process keeps crashing, giving up on it",
                    worker=entry.identity,
                    returncode=returncode,
                    restarts_in_window=len(entry.restart_times),
                )
                self._update_active_gauges()
                return

            delay = policy.delay_for(len(entry.restart_times))
            log_with_context(
                logger,
                logging.WARNING,
                "Worker process crashed, restarting",
                worker=entry.identity,
                returncode=returncode,
                delay_seconds=delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._running:
                return

            entry.restart_times.append(self.clock())
            process = await self._relaunch(entry, index)
            if process is None:
                return
            entry.process = process
            entry.restart_count += 1
            entry.start_time = self.clock()
            self._total_restarts += 1
            record_worker_restart(entry.worker_type.value)

    async def _relaunch(self, entry: WorkerEntry, index: int) -> Optional[ProcessHandle]:
        """Launch a replacement child; None if the manager stopped meanwhile.

        The launch is shielded so a stop that cancels the watcher mid-launch
        still gets to terminate the child once it exists.
        """
        launch = asyncio.ensure_future(
            self.launcher.launch(entry.worker_type, self._child_env(entry, index))
        )
        try:
            process = await asyncio.shield(launch)
        except asyncio.CancelledError:
            launch.add_done_callback(
                lambda task: self._terminate_orphan(entry, task)
            )
            raise

        if self._running:
            return process

        log_with_context(
            logger,
            logging.INFO,
            "Manager stopped during restart, terminating new worker process",
            worker=entry.identity,
            pid=process.pid,
        )
        grace = self.config.workers[entry.worker_type].grace_period_seconds
        await _terminate_process(process, grace)
        return None

    def _terminate_orphan(self, entry: WorkerEntry, task: "asyncio.Future[ProcessHandle]") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        process = task.result()
        log_with_context(
            logger,
            logging.INFO,
            "Terminating worker process launched during shutdown",
            worker=entry.identity,
            pid=process.pid,
        )
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """Drain workers within their grace periods and release resources."""
        if not self._running and not self.workers:
            return
        self._running = False
        logger.info("Stopping worker manager")

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

        entries = list(self.workers.values())
        for entry in entries:
            if entry.worker is not None:
                entry.worker.request_shutdown()
            elif entry.process is not None and entry.process.returncode is None:
                try:
                    entry.process.terminate()
                except ProcessLookupError:
                    pass

        await asyncio.gather(*(self._drain(entry) for entry in entries))

        await self.work_log.close()
        update_connection_status(False)
        self.workers.clear()
        self._update_active_gauges()
        logger.info("Worker manager stopped")

    async def _drain(self, entry: WorkerEntry) -> None:
        grace = self.config.workers[entry.worker_type].grace_period_seconds

        if entry.task is not None:
            done, _ = await asyncio.wait({entry.task}, timeout=grace)
            if not done:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Worker did not stop within grace period, cancelling",
                    worker=entry.identity,
                    grace_period_seconds=grace,
                )
                entry.task.cancel()
            await asyncio.gather(entry.task, return_exceptions=True)

        if entry.process is not None:
            try:
                await asyncio.wait_for(entry.process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Worker process did not exit within grace period, killing",
                    worker=entry.identity,
                    pid=entry.process.pid,
                )
                try:
                    entry.process.kill()
                except ProcessLookupError:
                    pass
                await entry.process.wait()

        if entry.watcher is not None:
            entry.watcher.cancel()
            await asyncio.gather(entry.watcher, return_exceptions=True)

    async def restart(self) -> None:
        """Stop the pool, pause, and start it again (SIGHUP)."""
        logger.info("Restarting worker manager")
        await self.stop()
        await asyncio.sleep(self.config.restart_pause_seconds)
        await self.start()

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def _update_active_gauges(self) -> None:
        for worker_type in WorkerType:
            count = sum(
                1
                for entry in self.workers.values()
                if entry.worker_type == worker_type and not entry.abandoned
            )
            update_active_workers(worker_type.value, count)

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot: running flag, pool entries and totals."""
        workers = {identity: entry.to_dict() for identity, entry in self.workers.items()}
        processed = 0
        errors = 0
        for entry in self.workers.values():
            if entry.worker is not None:
                processed += entry.worker.processed_count
                errors += entry.worker.error_count
        return {
            "is_running": self._running,
            "workers": workers,
            "stats": {
                "total_workers": len(self.workers),
                "processed_count": processed,
                "error_count": errors,
                "restart_count": self._total_restarts,
                "uptime_seconds": self.uptime_seconds,
                "clustered": self.config.enable_clustering,
                "health": (
                    self.monitor.last_report.status.value if self.monitor.last_report else None
                ),
            },
        }

    async def metrics(self) -> Dict[str, Any]:
        """Throughput and backlog snapshot. Never raises."""
        try:
            return await self.monitor.collect_metrics()
        except Exception as e:
            log_exception(logger, e, "Failed to collect metrics", level=logging.WARNING)
            return dict(self.monitor.last_metrics)


async def _terminate_process(process: ProcessHandle, grace: float) -> None:
    """SIGTERM, then SIGKILL if the child outlives the grace period."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
