"""
Prometheus metrics for statement pipeline monitoring.

Provides instrumentation for:
- Jobs processed per worker type and outcome
- Work log appends and read failures
- Dead-lettered jobs
- Job processing time histograms
- Worker pool size and restarts
- Circuit breaker state for external services
"""

from prometheus_client import Counter, Gauge, Histogram

# Job consumption metrics
jobs_processed_total = Counter(
    "pipeline_jobs_processed_total",
    "Total number of jobs dispatched to a handler",
    ["worker_type", "job_type", "outcome"],  # outcome: success, error, duplicate, superseded
)

job_processing_duration_seconds = Histogram(
    "pipeline_job_processing_duration_seconds",
    "Time spent processing individual jobs",
    ["worker_type", "job_type"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        60.0,
    ),  # From 5ms to 60s
)

jobs_dead_lettered_total = Counter(
    "pipeline_jobs_dead_lettered_total",
    "Total number of jobs moved to the dead-letter stream",
    ["stream", "reason"],  # reason: decode_error, max_deliveries
)

# Categorization metrics
categorizations_total = Counter(
    "pipeline_categorizations_total",
    "Total number of transactions categorized",
    ["source"],  # source: cache, classifier, fallback, fallback_error, ...
)

# Work log metrics
work_log_appends_total = Counter(
    "pipeline_work_log_appends_total",
    "Total number of jobs appended to work streams",
    ["stream", "status"],  # status: success, error
)

work_log_read_errors_total = Counter(
    "pipeline_work_log_read_errors_total",
    "Total number of failed reads from work streams",
    ["stream", "consumer_group"],
)

stream_length = Gauge(
    "pipeline_stream_length",
    "Number of entries in a work stream",
    ["stream"],
)

work_log_connection_status = Gauge(
    "pipeline_work_log_connection_status",
    "Work log connection status (1=connected, 0=disconnected)",
)

# Worker pool metrics
active_workers = Gauge(
    "pipeline_active_workers",
    "Number of live workers per type",
    ["worker_type"],
)

worker_restarts_total = Counter(
    "pipeline_worker_restarts_total",
    "Total number of clustered worker respawns",
    ["worker_type"],
)

pipeline_health_status = Gauge(
    "pipeline_health_status",
    "Overall health (0=healthy, 1=degraded, 2=unhealthy)",
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "pipeline_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["component"],  # component: classifier, risk_scorer
)

_HEALTH_VALUES = {"healthy": 0, "degraded": 1, "unhealthy": 2}
_CIRCUIT_VALUES = {"closed": 0, "open": 1, "half_open": 2}


def record_job_processed(
    worker_type: str, job_type: str, outcome: str, duration: float
) -> None:
    """
    Record a dispatched job.

    Args:
        worker_type: Worker type name
        job_type: Job type name
        outcome: success, error, duplicate or superseded
        duration: Handler time in seconds
    """
    jobs_processed_total.labels(
        worker_type=worker_type, job_type=job_type, outcome=outcome
    ).inc()
    job_processing_duration_seconds.labels(
        worker_type=worker_type, job_type=job_type
    ).observe(duration)


def record_dead_letter(stream: str, reason: str) -> None:
    jobs_dead_lettered_total.labels(stream=stream, reason=reason).inc()


def record_categorizations(sources) -> None:
    """Count categorized transactions by result source."""
    for source in sources:
        categorizations_total.labels(source=source).inc()


def record_append(stream: str, success: bool = True) -> None:
    status = "success" if success else "error"
    work_log_appends_total.labels(stream=stream, status=status).inc()


def record_read_error(stream: str, consumer_group: str) -> None:
    work_log_read_errors_total.labels(stream=stream, consumer_group=consumer_group).inc()


def update_stream_length(stream: str, length: int) -> None:
    stream_length.labels(stream=stream).set(length)


def update_connection_status(connected: bool) -> None:
    work_log_connection_status.set(1 if connected else 0)


def update_active_workers(worker_type: str, count: int) -> None:
    active_workers.labels(worker_type=worker_type).set(count)


def record_worker_restart(worker_type: str) -> None:
    worker_restarts_total.labels(worker_type=worker_type).inc()


def update_health_status(health: str) -> None:
    pipeline_health_status.set(_HEALTH_VALUES.get(health, 2))


def update_circuit_breaker_state(component: str, state: str) -> None:
    """
    Update circuit breaker state gauge.

    Args:
        component: Component name
        state: closed, open or half_open
    """
    circuit_breaker_state.labels(component=component).set(_CIRCUIT_VALUES.get(state, 0))


__all__ = [
    "jobs_processed_total",
    "job_processing_duration_seconds",
    "jobs_dead_lettered_total",
    "categorizations_total",
    "work_log_appends_total",
    "work_log_read_errors_total",
    "stream_length",
    "work_log_connection_status",
    "active_workers",
    "worker_restarts_total",
    "pipeline_health_status",
    "circuit_breaker_state",
    "record_job_processed",
    "record_dead_letter",
    "record_categorizations",
    "record_append",
    "record_read_error",
    "update_stream_length",
    "update_connection_status",
    "update_active_workers",
    "record_worker_restart",
    "update_health_status",
    "update_circuit_breaker_state",
]
