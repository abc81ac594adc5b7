"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (tenanthub-control-plane)
- event: Event type (step_failed, instance_destroyed, etc.)
- trace_id: Trace ID for one tick or operation

High cardinality fields (OK in logs, NOT in metric labels):
- instance_id: Instance ID
- domain: Instance domain
- worker_id: Snowflake worker ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Coordinator events
    TICK_COMPLETE = "tick_complete"
    TICK_SLOW = "tick_slow"
    OPERATION_FAILED = "operation_failed"

    # Provisioning events
    INSTANCE_CREATED = "instance_created"
    INSTANCE_ENQUEUED = "instance_enqueued"
    PROVISIONING_CLAIMED = "provisioning_claimed"
    PROVISIONING_SKIPPED = "provisioning_skipped"
    PROVISIONING_COMPLETE = "provisioning_complete"
    PROVISIONING_FAILED = "provisioning_failed"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"

    # Lifecycle events
    STATE_CHANGED = "state_changed"
    INSTANCE_DESTROYED = "instance_destroyed"
    INSTANCE_SUSPENDED = "instance_suspended"
    INSTANCE_RESUMED = "instance_resumed"
    CONCURRENT_MODIFICATION = "concurrent_modification"

    # Worker id registry
    WORKER_ID_ALLOCATED = "worker_id_allocated"
    WORKER_ID_TOMBSTONED = "worker_id_tombstoned"
    WORKER_ID_LOW = "worker_id_low"

    # Health / reconciliation
    HEALTH_CHECK_FAILED = "health_check_failed"
    UNHEALTHY_ESCALATED = "unhealthy_escalated"
    ORPHAN_DETECTED = "orphan_detected"
    STUCK_PROVISIONING = "stuck_provisioning"
    DRIFT_DETECTED = "drift_detected"
    ALERT_SENT = "alert_sent"

    # Infrastructure
    CONTAINER_STARTED = "container_started"
    CONTAINER_STOPPED = "container_stopped"
    CONTAINER_RESTARTED = "container_restarted"
    NOTIFY_FAILED = "notify_failed"
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"
    REDIS_CONNECTED = "redis_connected"
    REDIS_CONNECTION_ERROR = "redis_connection_error"

    # Process lifecycle
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
