"""Instance store interface (durable state shared by all loops)."""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from tenanthub.core.domain import InstanceStatus
from tenanthub.core.models import (
    InstanceAggregate,
    InstanceHealth,
    InstanceInfrastructure,
    ManagedInstance,
    ProvisioningEvent,
)


@dataclass(frozen=True)
class WorkerIdCounts:
    free: int
    live: int
    tombstoned: int

    @property
    def total(self) -> int:
        return self.free + self.live + self.tombstoned


class InstanceStore(ABC):
    """Persistence for instances and their owned records.

    Coordination between loops and replicas happens only through this
    store: status writes are version-checked and worker-id claims are
    single conditional updates.

    Implementations: SQLAlchemyInstanceStore
    """

    # -- instances -----------------------------------------------------------

    @abstractmethod
    async def add_instance(self, instance: ManagedInstance) -> None:
        """Insert a new instance.

        Raises:
            ConflictError: SUBDOMAIN_TAKEN if a live instance owns the domain
        """
        ...

    @abstractmethod
    async def get_aggregate(self, instance_id: int) -> InstanceAggregate | None:
        """Load instance, infrastructure and health in one query."""
        ...

    @abstractmethod
    async def domain_taken(self, domain: str, exclude_instance_id: int | None = None) -> bool:
        ...

    @abstractmethod
    async def count_owner_instances(self, owner_id: int) -> int:
        """Count the owner's non-destroyed instances."""
        ...

    @abstractmethod
    async def list_instances(self, statuses: Iterable[InstanceStatus]) -> list[ManagedInstance]:
        """List non-destroyed instances in the given statuses, oldest first."""
        ...

    @abstractmethod
    async def list_stuck_provisioning(self, cutoff: datetime) -> list[ManagedInstance]:
        """Provisioning instances whose current run started before cutoff."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[InstanceStatus, int]:
        """Non-destroyed instances per status (absent statuses are omitted)."""
        ...

    @abstractmethod
    async def list_stale_pending(self, cutoff: datetime) -> list[ManagedInstance]:
        """Pending instances created before cutoff (their enqueue may have been lost)."""
        ...

    @abstractmethod
    async def list_running_without_infrastructure(self) -> list[ManagedInstance]:
        ...

    @abstractmethod
    async def update_status(
        self,
        instance_id: int,
        expected_version: int,
        status: InstanceStatus,
        deleted_at: datetime | None = None,
    ) -> bool:
        """Version-checked status write.

        Returns:
            False if the row's version no longer matches (lost the race)
        """
        ...

    @abstractmethod
    async def claim_for_provisioning(self, instance_id: int, lease_cutoff: datetime) -> bool:
        """Atomically move Pending (or an expired Provisioning lease) to Provisioning.

        Returns:
            True if this caller now owns the provisioning run
        """
        ...

    @abstractmethod
    async def renew_provisioning_lease(self, instance_id: int, expected_version: int) -> bool:
        """Restart the lease clock of a run that still holds it.

        Leaves the version untouched so the run's final status write still
        matches. False means another claim or a status write got there first.
        """
        ...

    @abstractmethod
    async def set_worker_id(self, instance_id: int, worker_id: int) -> None:
        ...

    # -- infrastructure ------------------------------------------------------

    @abstractmethod
    async def save_infrastructure(self, instance_id: int, **fields: str) -> InstanceInfrastructure:
        """Create the record if missing and write only the given fields."""
        ...

    @abstractmethod
    async def clear_infrastructure(self, instance_id: int, *fields: str) -> None:
        ...

    @abstractmethod
    async def list_orphaned_infrastructure(self) -> list[InstanceInfrastructure]:
        """Rows still holding resource handles whose instance is gone or destroyed."""
        ...

    # -- audit ---------------------------------------------------------------

    @abstractmethod
    async def append_event(self, event: ProvisioningEvent) -> None:
        ...

    @abstractmethod
    async def list_events(self, instance_id: int) -> list[ProvisioningEvent]:
        ...

    # -- health --------------------------------------------------------------

    @abstractmethod
    async def get_health(self, instance_id: int) -> InstanceHealth | None:
        ...

    @abstractmethod
    async def save_health(self, health: InstanceHealth) -> None:
        ...

    @abstractmethod
    async def list_unhealthy(self, threshold: int) -> list[InstanceAggregate]:
        """Running instances whose consecutive failures exceed threshold."""
        ...

    # -- worker ids ----------------------------------------------------------

    @abstractmethod
    async def seed_worker_ids(self, size: int, reserved: Iterable[int] = ()) -> int:
        """Insert missing registry rows [0, size); reserved ids start tombstoned.

        Returns:
            Number of rows inserted
        """
        ...

    @abstractmethod
    async def find_live_worker_id(self, instance_id: int) -> int | None:
        ...

    @abstractmethod
    async def claim_free_worker_id(self, instance_id: int, now: datetime) -> int | None:
        """Claim the lowest free, untombstoned id with one conditional update.

        Returns:
            The claimed id, or None if no row was claimed
        """
        ...

    @abstractmethod
    async def tombstone_worker_id(self, worker_id: int, now: datetime) -> bool:
        """Permanently retire an id. Returns False if it was already tombstoned."""
        ...

    @abstractmethod
    async def count_worker_ids(self) -> WorkerIdCounts:
        ...
