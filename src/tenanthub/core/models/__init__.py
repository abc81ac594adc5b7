"""Database models for tenanthub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
Relationships are plain id columns; the store loads aggregates explicitly.
"""

from dataclasses import dataclass

from tenanthub.core.models.base import generate_ulid, utc_now
from tenanthub.core.models.instance import (
    INFRASTRUCTURE_FIELDS,
    InstanceInfrastructure,
    ManagedInstance,
)
from tenanthub.core.models.registry import (
    InstanceHealth,
    ProvisioningEvent,
    WorkerIdRegistry,
)


@dataclass
class InstanceAggregate:
    """Instance with its 1:1 records, loaded in one query."""

    instance: ManagedInstance
    infrastructure: InstanceInfrastructure | None = None
    health: InstanceHealth | None = None


__all__ = [
    "ManagedInstance",
    "InstanceInfrastructure",
    "INFRASTRUCTURE_FIELDS",
    "WorkerIdRegistry",
    "ProvisioningEvent",
    "InstanceHealth",
    "InstanceAggregate",
    "generate_ulid",
    "utc_now",
]
