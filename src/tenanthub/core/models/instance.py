"""Managed instance and its 1:1 infrastructure record."""

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String, Text, text
from sqlmodel import Field, SQLModel

from tenanthub.core.domain.instance import InstanceStatus, InstanceTier
from tenanthub.core.models.base import generate_ulid, utc_now


class ManagedInstance(SQLModel, table=True):
    """One tenant's deployment.

    ``version`` is the optimistic-concurrency token: every status write is
    ``UPDATE ... WHERE version = :expected`` and increments it.
    """

    __tablename__ = "managed_instances"

    id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    owner_id: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    domain: str = Field(max_length=255)
    display_name: str = Field(max_length=255)
    tier: InstanceTier = Field(default=InstanceTier.TIER_10, sa_type=String)
    status: InstanceStatus = Field(default=InstanceStatus.PENDING, sa_type=String)
    worker_id: int | None = Field(default=None)
    version: int = Field(default=0)
    provisioning_started_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    deleted_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )

    __table_args__ = (
        # Domain is unique among non-destroyed instances
        Index(
            "uq_managed_instances_domain_live",
            "domain",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        # Coordinator polling by status
        Index(
            "idx_managed_instances_status",
            "status",
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )


class InstanceInfrastructure(SQLModel, table=True):
    """Resource handles and encrypted secrets of one instance.

    Written field by field as provisioning steps succeed; destruction steps
    clear the handle they released, so a row still holding handles after
    its instance is destroyed marks leaked resources.
    """

    __tablename__ = "instance_infrastructure"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("managed_instances.id"), unique=True, nullable=False
        )
    )

    network_id: str | None = None
    container_id: str | None = None
    database_name: str | None = None
    database_password_encrypted: str | None = Field(default=None, sa_column=Column(Text))
    storage_bucket: str | None = None
    storage_access_key: str | None = None
    storage_secret_key_encrypted: str | None = Field(default=None, sa_column=Column(Text))
    wrapped_dek: str | None = Field(default=None, sa_column=Column(Text))
    bootstrap_token_hash: str | None = None
    dns_record_id: str | None = None
    proxy_route_id: str | None = None

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    def live_handles(self) -> dict[str, str]:
        """Handles of resources that still exist outside the database."""
        handles = {
            "container_id": self.container_id,
            "network_id": self.network_id,
            "storage_bucket": self.storage_bucket,
            "dns_record_id": self.dns_record_id,
            "proxy_route_id": self.proxy_route_id,
        }
        return {name: value for name, value in handles.items() if value}


# Columns a step may write; the store rejects anything else
INFRASTRUCTURE_FIELDS = frozenset({
    "network_id",
    "container_id",
    "database_name",
    "database_password_encrypted",
    "storage_bucket",
    "storage_access_key",
    "storage_secret_key_encrypted",
    "wrapped_dek",
    "bootstrap_token_hash",
    "dns_record_id",
    "proxy_route_id",
})
