"""
Pipeline configuration from config.yaml and environment variables.

Configuration priority (highest to lowest):
    1. Environment variables
    2. config.yaml file
    3. Dataclass defaults

Worker pool:
    ENABLE_CLUSTERING: Run each worker instance as its own OS process (default: false)
    MAX_WORKERS: Upper bound on clustered child processes (default: CPU count)
    STATEMENT_WORKERS / CATEGORIZATION_WORKERS / RISK_WORKERS: Instances per type
    WORKER_TYPE: Worker type of a clustered child (set by the manager)

Work log:
    WORK_LOG_BACKEND: memory (default) or kafka
    KAFKA_BOOTSTRAP_SERVERS: Broker addresses for the kafka backend
    RECLAIM_IDLE_MS: Idle time before an unacknowledged job is redelivered
    MAX_DELIVERIES: Deliveries before a job is dead-lettered

Record store:
    RECORD_STORE_BACKEND: memory (default) or sqlite
    RECORD_STORE_PATH: SQLite database file shared by clustered workers
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Default config path: config.yaml in src/ directory
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


class WorkerType(str, Enum):
    """Kinds of stage worker the manager can run."""

    STATEMENT_PROCESSING = "statementProcessing"
    TRANSACTION_CATEGORIZATION = "transactionCategorization"
    RISK_ANALYSIS = "riskAnalysis"

    @classmethod
    def parse(cls, value: Any) -> "WorkerType":
        """Parse a worker type name, accepting short aliases."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        aliases = {
            "statement": cls.STATEMENT_PROCESSING,
            "statements": cls.STATEMENT_PROCESSING,
            "categorization": cls.TRANSACTION_CATEGORIZATION,
            "risk": cls.RISK_ANALYSIS,
        }
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Invalid worker type '{text}'. Must be one of: {valid}")


class WorkLogBackend(str, Enum):
    """Work log implementation."""

    MEMORY = "memory"
    KAFKA = "kafka"


@dataclass
class StreamNames:
    """Stream names used by the pipeline."""

    statement_processing: str = "statement-processing"
    transaction_categorization: str = "transaction-categorization"
    risk_analysis: str = "risk-analysis"
    notifications: str = "notifications"
    alerts: str = "alerts"
    audit_log: str = "audit-log"
    dead_letter: str = "error-jobs"

    def all(self) -> List[str]:
        return [
            self.statement_processing,
            self.transaction_categorization,
            self.risk_analysis,
            self.notifications,
            self.alerts,
            self.audit_log,
            self.dead_letter,
        ]


@dataclass
class WorkerSettings:
    """Per-worker-type consumption settings."""

    stream: str
    group: str
    consumer_prefix: str
    batch_size: int
    block_timeout_ms: int
    grace_period_seconds: float
    max_deliveries: int = 5
    read_error_backoff_seconds: float = 5.0


def default_worker_settings(
    streams: StreamNames, max_deliveries: int = 5
) -> Dict[WorkerType, WorkerSettings]:
    """Defaults per worker type.

    Statement processing reads one job at a time because each one holds a
    whole file; categorization calls are cheap and batch well.
    """
    return {
        WorkerType.STATEMENT_PROCESSING: WorkerSettings(
            stream=streams.statement_processing,
            group="statement-workers",
            consumer_prefix="statement-processor",
            batch_size=1,
            block_timeout_ms=5000,
            grace_period_seconds=10.0,
            max_deliveries=max_deliveries,
        ),
        WorkerType.TRANSACTION_CATEGORIZATION: WorkerSettings(
            stream=streams.transaction_categorization,
            group="categorization-workers",
            consumer_prefix="categorization-worker",
            batch_size=5,
            block_timeout_ms=2000,
            grace_period_seconds=5.0,
            max_deliveries=max_deliveries,
        ),
        WorkerType.RISK_ANALYSIS: WorkerSettings(
            stream=streams.risk_analysis,
            group="risk-workers",
            consumer_prefix="risk-analyzer",
            batch_size=3,
            block_timeout_ms=3000,
            grace_period_seconds=8.0,
            max_deliveries=max_deliveries,
        ),
    }


def default_worker_counts() -> Dict[WorkerType, int]:
    return {
        WorkerType.STATEMENT_PROCESSING: 2,
        WorkerType.TRANSACTION_CATEGORIZATION: 3,
        WorkerType.RISK_ANALYSIS: 2,
    }


@dataclass
class RestartPolicy:
    """Backoff and cap for respawning crashed clustered workers.

    The n-th restart of a worker slot inside the window waits
    base_delay_seconds * 2**n, capped at max_delay_seconds. Once a slot has
    been restarted max_restarts times inside window_seconds it is abandoned.
    """

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    max_restarts: int = 5
    window_seconds: float = 300.0

    def delay_for(self, restarts_in_window: int) -> float:
        if self.base_delay_seconds <= 0:
            return 0.0
        delay = self.base_delay_seconds * (2 ** restarts_in_window)
        return min(delay, self.max_delay_seconds)


@dataclass
class WorkLogConfig:
    """Work log connection and behavior configuration.

    All timing values in milliseconds unless otherwise noted.
    """

    backend: WorkLogBackend = WorkLogBackend.MEMORY

    # Kafka connection
    bootstrap_servers: str = "localhost:9092"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = ""
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""

    # Topic creation
    num_partitions: int = 3
    replication_factor: int = 1

    # Consumer behavior
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 30000
    max_poll_interval_ms: int = 300000
    request_timeout_ms: int = 30000

    # Unacknowledged jobs become eligible for redelivery after this idle time.
    # Also the lease length a delivery holds on the stage it works on.
    reclaim_idle_ms: int = 60000

    @property
    def stage_lease_seconds(self) -> float:
        return self.reclaim_idle_ms / 1000.0


class RecordStoreBackend(str, Enum):
    """Record store implementation."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass
class RecordStoreConfig:
    backend: RecordStoreBackend = RecordStoreBackend.MEMORY
    path: str = "data/statements.db"
    wal_mode: bool = True


@dataclass
class PipelineConfig:
    """Complete pipeline configuration."""

    work_log: WorkLogConfig = field(default_factory=WorkLogConfig)
    record_store: RecordStoreConfig = field(default_factory=RecordStoreConfig)
    streams: StreamNames = field(default_factory=StreamNames)
    workers: Dict[WorkerType, WorkerSettings] = field(default_factory=dict)
    worker_counts: Dict[WorkerType, int] = field(default_factory=default_worker_counts)

    enable_clustering: bool = False
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)

    health_check_interval_seconds: float = 30.0
    metrics_interval_seconds: float = 60.0
    # Pause between stop and start when the manager is restarted (SIGHUP)
    restart_pause_seconds: float = 2.0

    domain: str = "statements"

    def __post_init__(self) -> None:
        if not self.workers:
            self.workers = default_worker_settings(self.streams)

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot work."""
        for worker_type, count in self.worker_counts.items():
            if count < 0:
                raise ValueError(
                    f"Worker count for {worker_type.value} must be >= 0, got {count}"
                )
        if self.max_workers < 1:
            raise ValueError(f"MAX_WORKERS must be >= 1, got {self.max_workers}")
        for worker_type, settings in self.workers.items():
            if settings.batch_size < 1:
                raise ValueError(
                    f"Batch size for {worker_type.value} must be >= 1, "
                    f"got {settings.batch_size}"
                )
            if settings.block_timeout_ms <= 0:
                raise ValueError(
                    f"Block timeout for {worker_type.value} must be > 0 "
                    "(reads must never block forever)"
                )
        if self.enable_clustering and self.work_log.backend == WorkLogBackend.MEMORY:
            raise ValueError(
                "ENABLE_CLUSTERING=true requires WORK_LOG_BACKEND=kafka; "
                "the in-memory work log cannot be shared between processes"
            )
        if (
            self.enable_clustering
            and self.record_store.backend == RecordStoreBackend.MEMORY
        ):
            raise ValueError(
                "ENABLE_CLUSTERING=true requires RECORD_STORE_BACKEND=sqlite; "
                "the in-memory record store cannot be shared between processes"
            )
        if self.work_log.backend == WorkLogBackend.KAFKA and not self.work_log.bootstrap_servers:
            raise ValueError(
                "KAFKA_BOOTSTRAP_SERVERS is required when WORK_LOG_BACKEND=kafka"
            )

    @property
    def total_workers(self) -> int:
        return sum(self.worker_counts.values())

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables and defaults only."""
        return cls._build({})

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "PipelineConfig":
        """Load configuration from config.yaml and environment variables.

        Raises:
            ValueError: If a value is malformed or the combination is invalid
        """
        config_path = config_path or DEFAULT_CONFIG_PATH

        yaml_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                yaml_data = yaml.safe_load(f) or {}

        return cls._build(yaml_data)

    @classmethod
    def _build(cls, yaml_data: Dict[str, Any]) -> "PipelineConfig":
        work_log_data = yaml_data.get("work_log", {})
        workers_data = yaml_data.get("workers", {})
        restart_data = yaml_data.get("restart_policy", {})
        streams_data = yaml_data.get("streams", {})

        backend_str = os.getenv(
            "WORK_LOG_BACKEND", work_log_data.get("backend", "memory")
        ).lower()
        try:
            backend = WorkLogBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid WORK_LOG_BACKEND '{backend_str}'. Must be 'memory' or 'kafka'"
            )

        work_log = WorkLogConfig(
            backend=backend,
            bootstrap_servers=os.getenv(
                "KAFKA_BOOTSTRAP_SERVERS",
                work_log_data.get("bootstrap_servers", "localhost:9092"),
            ),
            security_protocol=os.getenv(
                "KAFKA_SECURITY_PROTOCOL",
                work_log_data.get("security_protocol", "PLAINTEXT"),
            ),
            sasl_mechanism=os.getenv(
                "KAFKA_SASL_MECHANISM", work_log_data.get("sasl_mechanism", "")
            ),
            sasl_plain_username=os.getenv(
                "KAFKA_SASL_USERNAME", work_log_data.get("sasl_plain_username", "")
            ),
            sasl_plain_password=os.getenv(
                "KAFKA_SASL_PASSWORD", work_log_data.get("sasl_plain_password", "")
            ),
            num_partitions=_env_int(
                "KAFKA_NUM_PARTITIONS", work_log_data.get("num_partitions", 3)
            ),
            replication_factor=_env_int(
                "KAFKA_REPLICATION_FACTOR", work_log_data.get("replication_factor", 1)
            ),
            reclaim_idle_ms=_env_int(
                "RECLAIM_IDLE_MS", work_log_data.get("reclaim_idle_ms", 60000)
            ),
        )

        store_data = yaml_data.get("record_store", {})
        store_backend_str = os.getenv(
            "RECORD_STORE_BACKEND", store_data.get("backend", "memory")
        ).lower()
        try:
            store_backend = RecordStoreBackend(store_backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid RECORD_STORE_BACKEND '{store_backend_str}'. Must be 'memory' or 'sqlite'"
            )
        record_store = RecordStoreConfig(
            backend=store_backend,
            path=os.getenv("RECORD_STORE_PATH", store_data.get("path", "data/statements.db")),
            wal_mode=bool(store_data.get("wal_mode", True)),
        )

        streams = StreamNames(**streams_data)
        max_deliveries = _env_int("MAX_DELIVERIES", yaml_data.get("max_deliveries", 5))
        workers = default_worker_settings(streams, max_deliveries=max_deliveries)
        for name, overrides in (workers_data.get("settings") or {}).items():
            settings = workers[WorkerType.parse(name)]
            for key, value in overrides.items():
                if not hasattr(settings, key):
                    raise ValueError(f"Unknown worker setting '{key}' for {name}")
                setattr(settings, key, value)

        yaml_counts = {
            WorkerType.parse(name): int(count)
            for name, count in (workers_data.get("counts") or {}).items()
        }
        counts = default_worker_counts()
        counts.update(yaml_counts)
        counts[WorkerType.STATEMENT_PROCESSING] = _env_int(
            "STATEMENT_WORKERS", counts[WorkerType.STATEMENT_PROCESSING]
        )
        counts[WorkerType.TRANSACTION_CATEGORIZATION] = _env_int(
            "CATEGORIZATION_WORKERS", counts[WorkerType.TRANSACTION_CATEGORIZATION]
        )
        counts[WorkerType.RISK_ANALYSIS] = _env_int(
            "RISK_WORKERS", counts[WorkerType.RISK_ANALYSIS]
        )

        restart_policy = RestartPolicy(
            base_delay_seconds=_env_float(
                "RESTART_BASE_DELAY_SECONDS", restart_data.get("base_delay_seconds", 1.0)
            ),
            max_delay_seconds=_env_float(
                "RESTART_MAX_DELAY_SECONDS", restart_data.get("max_delay_seconds", 30.0)
            ),
            max_restarts=_env_int("MAX_RESTARTS", restart_data.get("max_restarts", 5)),
            window_seconds=_env_float(
                "RESTART_WINDOW_SECONDS", restart_data.get("window_seconds", 300.0)
            ),
        )

        config = cls(
            work_log=work_log,
            record_store=record_store,
            streams=streams,
            workers=workers,
            worker_counts=counts,
            enable_clustering=_env_bool(
                "ENABLE_CLUSTERING", workers_data.get("enable_clustering", False)
            ),
            max_workers=_env_int(
                "MAX_WORKERS", workers_data.get("max_workers", os.cpu_count() or 1)
            ),
            restart_policy=restart_policy,
            health_check_interval_seconds=_env_float(
                "HEALTH_CHECK_INTERVAL_SECONDS",
                yaml_data.get("health_check_interval_seconds", 30.0),
            ),
            metrics_interval_seconds=_env_float(
                "METRICS_INTERVAL_SECONDS",
                yaml_data.get("metrics_interval_seconds", 60.0),
            ),
            restart_pause_seconds=_env_float(
                "RESTART_PAUSE_SECONDS", yaml_data.get("restart_pause_seconds", 2.0)
            ),
            domain=os.getenv("PIPELINE_DOMAIN", yaml_data.get("domain", "statements")),
        )
        config.validate()
        return config


def get_pipeline_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """Get pipeline configuration from config.yaml and environment.

    This is the main entry point for loading configuration.
    """
    return PipelineConfig.load_config(config_path)


def _env_int(name: str, default: Any) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return int(default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: Any) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")


def _env_bool(name: str, default: Any) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return bool(default)
    return raw.lower() in ("true", "1", "yes")
