"""Worker id registry, provisioning audit log and health records."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, String, Text, text
from sqlmodel import Field, SQLModel

from tenanthub.core.domain.instance import ProvisioningPhase, StepStatus
from tenanthub.core.models.base import utc_now


class WorkerIdRegistry(SQLModel, table=True):
    """One row per Snowflake worker id in [0, 1023].

    A tombstoned row is never assigned again.
    """

    __tablename__ = "worker_id_registry"

    worker_id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    assigned_instance_id: int | None = Field(default=None, sa_column=Column(BigInteger))
    is_tombstoned: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false"))
    )
    allocated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    released_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )

    __table_args__ = (
        # At most one live id per instance
        Index(
            "uq_worker_id_registry_live_instance",
            "assigned_instance_id",
            unique=True,
            postgresql_where=text("assigned_instance_id IS NOT NULL AND NOT is_tombstoned"),
            sqlite_where=text("assigned_instance_id IS NOT NULL AND NOT is_tombstoned"),
        ),
        # Free id lookup
        Index(
            "idx_worker_id_registry_free",
            "worker_id",
            postgresql_where=text("assigned_instance_id IS NULL AND NOT is_tombstoned"),
            sqlite_where=text("assigned_instance_id IS NULL AND NOT is_tombstoned"),
        ),
    )


class ProvisioningEvent(SQLModel, table=True):
    """Append-only audit row. Never updated after insert."""

    __tablename__ = "provisioning_events"

    id: int | None = Field(default=None, primary_key=True)
    instance_id: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    phase: ProvisioningPhase = Field(sa_type=String)
    step_name: str = Field(max_length=64)
    status: StepStatus = Field(sa_type=String)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class InstanceHealth(SQLModel, table=True):
    """Latest health observation of one instance (written by the health monitor)."""

    __tablename__ = "instance_health"

    instance_id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    is_healthy: bool = Field(default=False)
    consecutive_failures: int = Field(default=0)
    last_check_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    response_time_ms: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
