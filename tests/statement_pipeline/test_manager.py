"""
Tests for WorkerManager.

Single-process mode runs real workers as tasks on the in-memory work log.
Clustered mode uses a fake ProcessLauncher whose processes exit on demand,
so crash/respawn, the MAX_WORKERS cap and the restart policy can be
exercised without spawning anything.
"""

import asyncio
import itertools
from collections import Counter

import pytest

from statement_pipeline.config import (
    RecordStoreBackend,
    RestartPolicy,
    WorkerType,
    WorkLogBackend,
)
from statement_pipeline.manager import WorkerManager
from statement_pipeline.monitor import HealthStatus
from statement_pipeline.worklog import InMemoryWorkLog

_pids = itertools.count(4000)


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self):
        self.pid = next(_pids)
        self.returncode = None
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    def terminate(self) -> None:
        if self.returncode is None:
            self.exit(-15)

    def kill(self) -> None:
        if self.returncode is None:
            self.exit(-9)


class FakeLauncher:
    def __init__(self):
        self.launched = []

    async def launch(self, worker_type, env):
        process = FakeProcess()
        self.launched.append((worker_type, dict(env), process))
        return process

    @property
    def processes(self):
        return [process for _, _, process in self.launched]


class GatedLauncher(FakeLauncher):
    """Holds every launch after the first until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = False

    async def launch(self, worker_type, env):
        if self.launched:
            self.waiting = True
            await self.gate.wait()
        return await super().launch(worker_type, env)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clustered_config(config):
    config.enable_clustering = True
    config.work_log.backend = WorkLogBackend.KAFKA
    config.record_store.backend = RecordStoreBackend.SQLITE
    config.max_workers = 16
    config.worker_counts = {
        WorkerType.STATEMENT_PROCESSING: 1,
        WorkerType.TRANSACTION_CATEGORIZATION: 0,
        WorkerType.RISK_ANALYSIS: 0,
    }
    return config


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
async def clustered_manager(clustered_config, launcher):
    manager = WorkerManager(clustered_config, InMemoryWorkLog(), launcher=launcher)
    yield manager
    await manager.stop()


@pytest.mark.asyncio
class TestSingleProcessMode:
    async def test_requires_record_store(self, config, work_log):
        with pytest.raises(ValueError, match="record store"):
            WorkerManager(config, work_log)

    async def test_spawns_configured_worker_counts(self, config, work_log, store):
        config.worker_counts = {
            WorkerType.STATEMENT_PROCESSING: 2,
            WorkerType.TRANSACTION_CATEGORIZATION: 3,
            WorkerType.RISK_ANALYSIS: 0,
        }
        manager = WorkerManager(config, work_log, store)

        await manager.start()
        try:
            await wait_until(
                lambda: all(e.worker.is_running for e in manager.workers.values())
            )
            types = Counter(e.worker_type for e in manager.workers.values())
            assert types == {
                WorkerType.STATEMENT_PROCESSING: 2,
                WorkerType.TRANSACTION_CATEGORIZATION: 3,
            }
            assert len({e.identity for e in manager.workers.values()}) == 5

            status = manager.status()
            assert status["is_running"] is True
            assert status["stats"]["total_workers"] == 5
            assert status["stats"]["clustered"] is False
            assert status["stats"]["processed_count"] == 0
            for info in status["workers"].values():
                assert info["stats"]["is_running"] is True
        finally:
            await manager.stop()

        assert manager.workers == {}
        assert manager.status()["is_running"] is False
        assert not work_log.is_connected

    async def test_creates_groups_for_output_only_streams(self, config, store):
        log = InMemoryWorkLog()
        config.worker_counts = {t: 0 for t in WorkerType}
        manager = WorkerManager(config, log, store)

        await manager.start()
        try:
            # Readable through the downstream group without raising
            assert await log.read_group(
                "notifications", "notifications-consumers", "reader", block_timeout_ms=1
            ) == []
            assert await log.read_group(
                "statement-processing", "statement-workers", "reader", block_timeout_ms=1
            ) == []
        finally:
            await manager.stop()

    async def test_start_twice_does_not_duplicate_workers(self, config, work_log, store):
        config.worker_counts = {
            WorkerType.STATEMENT_PROCESSING: 1,
            WorkerType.TRANSACTION_CATEGORIZATION: 1,
            WorkerType.RISK_ANALYSIS: 1,
        }
        manager = WorkerManager(config, work_log, store)

        await manager.start()
        await manager.start()
        try:
            assert len(manager.workers) == 3
        finally:
            await manager.stop()

    async def test_restart_brings_pool_back(self, config, work_log, store):
        config.worker_counts = {
            WorkerType.STATEMENT_PROCESSING: 1,
            WorkerType.TRANSACTION_CATEGORIZATION: 1,
            WorkerType.RISK_ANALYSIS: 1,
        }
        manager = WorkerManager(config, work_log, store)
        await manager.start()
        before = set(manager.workers)

        await manager.restart()
        try:
            assert manager.is_running
            assert work_log.is_connected
            assert len(manager.workers) == 3
            assert set(manager.workers) == before
        finally:
            await manager.stop()

    async def test_metrics_snapshot(self, config, work_log, store):
        config.worker_counts = {
            WorkerType.STATEMENT_PROCESSING: 2,
            WorkerType.TRANSACTION_CATEGORIZATION: 1,
            WorkerType.RISK_ANALYSIS: 0,
        }
        manager = WorkerManager(config, work_log, store)
        await manager.start()
        try:
            snapshot = await manager.metrics()
        finally:
            await manager.stop()

        assert snapshot["total_processed"] == 0
        assert snapshot["by_worker_type"]["statementProcessing"]["workers"] == 2
        assert snapshot["by_worker_type"]["transactionCategorization"]["workers"] == 1
        assert set(snapshot["stream_lengths"]) == set(config.streams.all())

    async def test_metrics_never_raise(self, config, work_log, store, monkeypatch):
        manager = WorkerManager(config, work_log, store)

        async def broken():
            raise RuntimeError("collector exploded")

        monkeypatch.setattr(manager.monitor, "collect_metrics", broken)

        assert await manager.metrics() == {}

    async def test_stop_when_not_started_is_noop(self, config, work_log, store):
        manager = WorkerManager(config, work_log, store)
        await manager.stop()
        assert work_log.is_connected


@pytest.mark.asyncio
class TestClusteredMode:
    async def test_launches_one_process_per_worker(self, clustered_manager, launcher):
        await clustered_manager.start()

        assert len(launcher.launched) == 1
        worker_type, env, process = launcher.launched[0]
        assert worker_type == WorkerType.STATEMENT_PROCESSING
        assert env == {
            "WORKER_TYPE": "statementProcessing",
            "WORKER_INDEX": "0",
            "WORKER_ID": "statementProcessing-0",
        }
        info = clustered_manager.status()["workers"]["statementProcessing-0"]
        assert info["pid"] == process.pid
        assert info["returncode"] is None

    async def test_crash_is_replaced_once(self, clustered_manager, launcher):
        await clustered_manager.start()

        launcher.processes[0].exit(1)
        await wait_until(lambda: len(launcher.launched) == 2)
        await asyncio.sleep(0.02)

        assert len(launcher.launched) == 2
        entry = clustered_manager.workers["statementProcessing-0"]
        assert entry.restart_count == 1
        assert entry.process is launcher.processes[1]
        assert clustered_manager.status()["stats"]["restart_count"] == 1

    async def test_clean_exit_is_not_restarted(self, clustered_manager, launcher):
        await clustered_manager.start()

        launcher.processes[0].exit(0)
        await asyncio.sleep(0.05)

        assert len(launcher.launched) == 1
        assert clustered_manager.workers["statementProcessing-0"].restart_count == 0

    async def test_exit_during_stop_is_not_restarted(self, clustered_manager, launcher):
        await clustered_manager.start()
        process = launcher.processes[0]

        await clustered_manager.stop()
        await asyncio.sleep(0.02)

        assert process.returncode == -15
        assert len(launcher.launched) == 1
        assert clustered_manager.workers == {}

    async def test_child_launched_during_stop_is_terminated(self, clustered_config):
        launcher = GatedLauncher()
        manager = WorkerManager(clustered_config, InMemoryWorkLog(), launcher=launcher)
        await manager.start()

        launcher.processes[0].exit(1)
        await wait_until(lambda: launcher.waiting)
        await manager.stop()
        launcher.gate.set()
        await wait_until(lambda: len(launcher.launched) == 2)
        replacement = launcher.processes[1]
        await wait_until(lambda: replacement.returncode is not None)

        assert replacement.returncode == -15
        assert manager.workers == {}

    async def test_max_workers_caps_processes(self, clustered_config, launcher):
        clustered_config.max_workers = 2
        clustered_config.worker_counts = {
            WorkerType.STATEMENT_PROCESSING: 2,
            WorkerType.TRANSACTION_CATEGORIZATION: 3,
            WorkerType.RISK_ANALYSIS: 2,
        }
        manager = WorkerManager(clustered_config, InMemoryWorkLog(), launcher=launcher)

        await manager.start()
        try:
            assert len(launcher.launched) == 2
            assert set(manager.workers) == {"statementProcessing-0", "statementProcessing-1"}
        finally:
            await manager.stop()

    async def test_slot_abandoned_after_too_many_restarts(
        self, clustered_config, launcher
    ):
        clustered_config.restart_policy = RestartPolicy(
            base_delay_seconds=0.0, max_delay_seconds=0.0, max_restarts=1, window_seconds=60.0
        )
        manager = WorkerManager(clustered_config, InMemoryWorkLog(), launcher=launcher)
        await manager.start()
        try:
            launcher.processes[0].exit(1)
            await wait_until(lambda: len(launcher.launched) == 2)
            entry = manager.workers["statementProcessing-0"]
            assert entry.process is launcher.processes[1]

            launcher.processes[1].exit(1)
            await wait_until(lambda: entry.abandoned)

            assert len(launcher.launched) == 2
            assert manager.status()["workers"]["statementProcessing-0"]["abandoned"] is True

            report = await manager.monitor.check_health()
            assert report.status == HealthStatus.DEGRADED
            assert "statementProcessing-0 abandoned after repeated crashes" in report.issues
        finally:
            await manager.stop()

    async def test_restart_window_expiry_allows_new_restarts(self, clustered_config, launcher):
        now = [1000.0]
        clustered_config.restart_policy = RestartPolicy(
            base_delay_seconds=0.0, max_delay_seconds=0.0, max_restarts=1, window_seconds=60.0
        )
        manager = WorkerManager(
            clustered_config, InMemoryWorkLog(), launcher=launcher, clock=lambda: now[0]
        )
        await manager.start()
        try:
            entry = manager.workers["statementProcessing-0"]
            launcher.processes[0].exit(1)
            await wait_until(lambda: len(launcher.launched) == 2)

            now[0] += 120.0
            launcher.processes[1].exit(1)
            await wait_until(lambda: len(launcher.launched) == 3)

            assert not entry.abandoned
            assert entry.restart_count == 2
        finally:
            await manager.stop()

    async def test_restart_delay_follows_policy(self):
        policy = RestartPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert RestartPolicy(base_delay_seconds=0.0).delay_for(3) == 0.0
