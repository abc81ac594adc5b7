"""Prometheus metrics definitions for the control plane."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets (optimized by latency category)
# =============================================================================
# Scale: logarithmic with SLO boundaries (200ms, 1s, 5s)

# FAST: DB queries, Redis operations (0.5ms ~ 5s)
_BUCKETS_FAST = (
    0.0005, 0.001, 0.002, 0.005, 0.01,
    0.02, 0.05, 0.1, 0.2, 0.5,
    1, 2, 5,
)  # 13 buckets

# MEDIUM: health probes, external APIs, loop ticks (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)  # 14 buckets

# SLOW: provisioning steps and whole pipeline runs (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.39, 0.77, 1.5,
    3, 6, 12, 23, 46,
    91, 180,
)  # 12 buckets

# =============================================================================
# Coordinator Metrics
# =============================================================================

COORDINATOR_TICK_TOTAL = Counter(
    "tenanthub_coordinator_tick_total",
    "Total number of coordinator ticks executed",
    ["coordinator"],
)

COORDINATOR_TICK_DURATION = Histogram(
    "tenanthub_coordinator_tick_duration_seconds",
    "Duration of coordinator tick execution",
    ["coordinator"],
    buckets=_BUCKETS_MEDIUM,
)

COORDINATOR_TICK_ERRORS_TOTAL = Counter(
    "tenanthub_coordinator_tick_errors_total",
    "Coordinator ticks that raised",
    ["coordinator"],
)

# =============================================================================
# Provisioning / Destruction Metrics
# =============================================================================

PROVISIONING_RUNS_TOTAL = Counter(
    "tenanthub_provisioning_runs_total",
    "Provisioning pipeline runs by outcome",
    ["result"],  # succeeded, failed, skipped
)

PROVISIONING_RUN_DURATION = Histogram(
    "tenanthub_provisioning_run_duration_seconds",
    "Duration of a full provisioning pipeline run",
    buckets=_BUCKETS_SLOW,
)

PIPELINE_STEP_DURATION = Histogram(
    "tenanthub_pipeline_step_duration_seconds",
    "Duration of individual pipeline steps",
    ["phase", "step"],
    buckets=_BUCKETS_SLOW,
)

PIPELINE_STEP_FAILURES_TOTAL = Counter(
    "tenanthub_pipeline_step_failures_total",
    "Pipeline step failures",
    ["phase", "step"],
)

DESTRUCTIONS_TOTAL = Counter(
    "tenanthub_destructions_total",
    "Instance destructions by outcome",
    ["result"],  # clean, partial
)

CAS_FAILURES_TOTAL = Counter(
    "tenanthub_cas_failures_total",
    "Version-checked status writes that lost a race",
)

QUEUE_MESSAGES_TOTAL = Counter(
    "tenanthub_queue_messages_total",
    "Provisioning queue messages handled",
    ["source"],  # new, reclaimed
)

# =============================================================================
# Fleet Metrics
# =============================================================================

INSTANCES_BY_STATUS = Gauge(
    "tenanthub_instances",
    "Non-destroyed instances by status",
    ["status"],
)

WORKER_IDS = Gauge(
    "tenanthub_worker_ids",
    "Worker id registry rows by state",
    ["state"],  # free, live, tombstoned
)

# =============================================================================
# Health / Reconciler Metrics
# =============================================================================

HEALTH_CHECKS_TOTAL = Counter(
    "tenanthub_health_checks_total",
    "Health probes by result",
    ["result"],  # healthy, unhealthy
)

CONTAINER_RESTARTS_TOTAL = Counter(
    "tenanthub_container_restarts_total",
    "Containers restarted after repeated failed health checks",
    ["result"],  # succeeded, failed
)

HEALTH_CHECK_DURATION = Histogram(
    "tenanthub_health_check_duration_seconds",
    "Latency of instance health probes",
    buckets=_BUCKETS_MEDIUM,
)

RECONCILER_FINDINGS_TOTAL = Counter(
    "tenanthub_reconciler_findings_total",
    "Inconsistencies found by the reconciler",
    ["kind"],  # unhealthy, orphan, stuck, missing_infrastructure, drift
)

ORPHANED_INFRASTRUCTURE = Gauge(
    "tenanthub_orphaned_infrastructure",
    "Infrastructure rows holding handles whose instance is gone",
)

ALERTS_SENT_TOTAL = Counter(
    "tenanthub_alerts_sent_total",
    "Operator alerts sent",
    ["severity"],
)

# =============================================================================
# Circuit Breaker Metrics
# =============================================================================

CIRCUIT_BREAKER_STATE = Gauge(
    "tenanthub_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["circuit"],
)

CIRCUIT_BREAKER_CALLS_TOTAL = Counter(
    "tenanthub_circuit_breaker_calls_total",
    "Total circuit breaker calls",
    ["circuit", "result"],  # result: success, failure
)

CIRCUIT_BREAKER_REJECTIONS_TOTAL = Counter(
    "tenanthub_circuit_breaker_rejections_total",
    "Total requests rejected due to open circuit",
    ["circuit"],
)

# =============================================================================
# External Call Metrics
# =============================================================================

EXTERNAL_CALL_ERRORS_TOTAL = Counter(
    "tenanthub_external_call_errors_total",
    "Total external call errors by type",
    ["error_type"],  # retryable, permanent, unknown, circuit_open
)


# =============================================================================
# Metric Initialization (ensure labels appear before first use)
# =============================================================================


def _init_metrics() -> None:
    """Initialize labeled metrics with zero values.

    Labeled metrics don't appear in output until first use, which shows up
    as "nodata" in dashboards.
    """
    CIRCUIT_BREAKER_STATE.labels(circuit="external").set(0)  # 0 = closed
    CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit="external", result="success")
    CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit="external", result="failure")
    CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(circuit="external")

    for error_type in ["retryable", "permanent", "unknown", "circuit_open"]:
        EXTERNAL_CALL_ERRORS_TOTAL.labels(error_type=error_type)

    for result in ["succeeded", "failed", "skipped"]:
        PROVISIONING_RUNS_TOTAL.labels(result=result)
    for result in ["clean", "partial"]:
        DESTRUCTIONS_TOTAL.labels(result=result)
    for source in ["new", "reclaimed"]:
        QUEUE_MESSAGES_TOTAL.labels(source=source)
    for result in ["healthy", "unhealthy"]:
        HEALTH_CHECKS_TOTAL.labels(result=result)
    for result in ["succeeded", "failed"]:
        CONTAINER_RESTARTS_TOTAL.labels(result=result)
    for kind in ["unhealthy", "orphan", "stuck", "missing_infrastructure", "drift"]:
        RECONCILER_FINDINGS_TOTAL.labels(kind=kind)
    for state in ["free", "live", "tombstoned"]:
        WORKER_IDS.labels(state=state)


_init_metrics()
