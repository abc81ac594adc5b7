"""Instance lifecycle use cases.

Business logic for create, destroy, suspend and resume. Status writes are
version-checked, so concurrent callers (or control-plane replicas) race
safely: the loser gets ConflictError(CONCURRENT_MODIFICATION).
"""

import asyncio
import logging

from tenanthub.app.config import ProvisioningConfig, SuspendConfig
from tenanthub.app.metrics.collector import CAS_FAILURES_TOTAL
from tenanthub.core.domain import InstanceStatus, InstanceTier, subdomain_error
from tenanthub.core.domain.instance import DISPLAY_NAME_MAX_LENGTH
from tenanthub.core.errors import (
    ConflictError,
    ErrorCode,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from tenanthub.core.interfaces import (
    ContainerRuntime,
    DatabaseManager,
    InstanceNotifier,
    InstanceStore,
    ProvisioningQueue,
)
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import InstanceAggregate, ManagedInstance, ProvisioningEvent, utc_now
from tenanthub.core.snowflake import SnowflakeGenerator
from tenanthub.destruction import DestructionPipeline, DestructionReport
from tenanthub.services.worker_ids import WorkerIdAllocator

logger = logging.getLogger(__name__)


class InstanceService:
    def __init__(
        self,
        store: InstanceStore,
        generator: SnowflakeGenerator,
        queue: ProvisioningQueue,
        allocator: WorkerIdAllocator,
        destruction: DestructionPipeline,
        runtime: ContainerRuntime,
        notifier: InstanceNotifier,
        databases: DatabaseManager,
        config: ProvisioningConfig,
        suspend: SuspendConfig,
    ) -> None:
        self._store = store
        self._generator = generator
        self._queue = queue
        self._allocator = allocator
        self._destruction = destruction
        self._runtime = runtime
        self._notifier = notifier
        self._databases = databases
        self._config = config
        self._suspend = suspend

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, instance_id: int) -> InstanceAggregate:
        aggregate = await self._store.get_aggregate(instance_id)
        if aggregate is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return aggregate

    async def events(self, instance_id: int) -> list[ProvisioningEvent]:
        """Audit trail of every step attempt, oldest first."""
        await self.get(instance_id)
        return await self._store.list_events(instance_id)

    async def _get_live(self, instance_id: int) -> InstanceAggregate:
        aggregate = await self.get(instance_id)
        if aggregate.instance.status == InstanceStatus.DESTROYED:
            raise NotFoundError(f"Instance {instance_id} not found")
        return aggregate

    # =========================================================================
    # Create
    # =========================================================================

    async def create(
        self,
        owner_id: int,
        subdomain: str,
        display_name: str,
        tier: InstanceTier | str = InstanceTier.TIER_10,
    ) -> ManagedInstance:
        """Persist a Pending instance and enqueue it for provisioning.

        Raises:
            ValidationError: Bad subdomain, display name or tier
            ConflictError: SUBDOMAIN_TAKEN if a live instance owns the domain
        """
        subdomain = subdomain.strip().lower()
        error = subdomain_error(subdomain)
        if error:
            raise ValidationError(error, ErrorCode.INVALID_SUBDOMAIN)

        display_name = display_name.strip()
        if not display_name or len(display_name) > DISPLAY_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Display name must be 1-{DISPLAY_NAME_MAX_LENGTH} characters",
                ErrorCode.INVALID_DISPLAY_NAME,
            )

        try:
            tier = InstanceTier(tier)
        except ValueError:
            raise ValidationError(f"Unknown tier: {tier}") from None

        domain = f"{subdomain}.{self._config.base_domain}"
        if await self._store.domain_taken(domain):
            raise ConflictError(ErrorCode.SUBDOMAIN_TAKEN, f"Domain {domain} is already taken")

        instance = ManagedInstance(
            id=self._generator.next_id(),
            owner_id=owner_id,
            domain=domain,
            display_name=display_name,
            tier=tier,
            status=InstanceStatus.PENDING,
        )
        await self._store.add_instance(instance)
        logger.info(
            "Instance created",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": instance.id,
                "domain": domain,
                "tier": str(tier),
            },
        )

        try:
            await self._queue.enqueue(instance.id)
        except Exception as e:
            # The instance is durable; the reconciler re-enqueues stale Pending rows
            logger.warning(
                "Enqueue failed, leaving instance Pending for the sweep: %s",
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
            )
        else:
            logger.info(
                "Instance enqueued",
                extra={"event": LogEvent.INSTANCE_ENQUEUED, "instance_id": instance.id},
            )
        return instance

    # =========================================================================
    # Destroy
    # =========================================================================

    async def destroy(self, instance_id: int) -> DestructionReport:
        """Tear down infrastructure, retire the worker id, mark Destroyed.

        Raises:
            NotFoundError: Instance missing or already destroyed
            ConflictError: CONCURRENT_MODIFICATION if the instance changed
                while tearing down (e.g. a concurrent destroy won)
        """
        aggregate = await self._get_live(instance_id)
        instance = aggregate.instance
        expected_version = instance.version

        report = await self._destruction.run(aggregate)

        # Only after teardown, so a still-running container never shares
        # its id with anything allocated later
        worker_id = instance.worker_id
        if worker_id is None:
            worker_id = await self._store.find_live_worker_id(instance_id)
        if worker_id is not None:
            await self._allocator.tombstone(worker_id)

        updated = await self._store.update_status(
            instance_id, expected_version, InstanceStatus.DESTROYED, deleted_at=utc_now()
        )
        if not updated:
            CAS_FAILURES_TOTAL.inc()
            logger.warning(
                "Concurrent modification during destroy",
                extra={"event": LogEvent.CONCURRENT_MODIFICATION, "instance_id": instance_id},
            )
            raise ConflictError(ErrorCode.CONCURRENT_MODIFICATION)

        logger.info(
            "Instance destroyed",
            extra={
                "event": LogEvent.INSTANCE_DESTROYED,
                "instance_id": instance_id,
                "failed_steps": report.failed_steps,
            },
        )
        return report

    async def drop_database(self, instance_id: int) -> None:
        """Drop a destroyed instance's database. Destroy itself retains it."""
        aggregate = await self.get(instance_id)
        if aggregate.instance.status != InstanceStatus.DESTROYED:
            raise ConflictError(
                ErrorCode.INVALID_STATE, "Database can only be dropped after destroy"
            )
        infra = aggregate.infrastructure
        if infra is None or not infra.database_name:
            return
        try:
            await asyncio.wait_for(
                self._databases.drop_database(infra.database_name), self._config.step_timeout_s
            )
        except Exception as e:
            raise InfrastructureError("DropDatabase", f"{type(e).__name__}: {e}") from e
        await self._store.clear_infrastructure(instance_id, "database_name")
        logger.info("Dropped database %s", infra.database_name, extra={"instance_id": instance_id})

    # =========================================================================
    # Suspend / Resume
    # =========================================================================

    async def suspend(self, instance_id: int, reason: str = "Suspended by operator") -> None:
        """Notify the tenant, wait the grace period, stop its container.

        Raises:
            ConflictError: INVALID_STATE unless Running
        """
        aggregate = await self._get_live(instance_id)
        instance = aggregate.instance
        if instance.status != InstanceStatus.RUNNING:
            raise ConflictError(
                ErrorCode.INVALID_STATE, f"Cannot suspend instance in status {instance.status}"
            )

        await self._notifier.notify_shutting_down(instance.domain, reason)
        # Lets the tenant broadcast the notice to its own clients
        await asyncio.sleep(self._suspend.grace_period_s)

        infra = aggregate.infrastructure
        if infra is not None and infra.container_id:
            await self._container_call(
                "SuspendInstance", self._runtime.stop_container(infra.container_id)
            )

        await self._write_status(instance, InstanceStatus.SUSPENDED)
        logger.info(
            "Instance suspended",
            extra={
                "event": LogEvent.INSTANCE_SUSPENDED,
                "instance_id": instance_id,
                "reason": reason,
            },
        )

    async def resume(self, instance_id: int) -> None:
        """Raises ConflictError(INVALID_STATE) unless Suspended."""
        aggregate = await self._get_live(instance_id)
        instance = aggregate.instance
        if instance.status != InstanceStatus.SUSPENDED:
            raise ConflictError(
                ErrorCode.INVALID_STATE, f"Cannot resume instance in status {instance.status}"
            )

        infra = aggregate.infrastructure
        if infra is None or not infra.container_id:
            raise InfrastructureError("ResumeInstance", "container_id is missing")
        await self._container_call(
            "ResumeInstance", self._runtime.start_existing_container(infra.container_id)
        )

        await self._write_status(instance, InstanceStatus.RUNNING)
        logger.info(
            "Instance resumed",
            extra={"event": LogEvent.INSTANCE_RESUMED, "instance_id": instance_id},
        )

    async def _container_call(self, operation: str, awaitable) -> None:
        try:
            await asyncio.wait_for(awaitable, self._config.step_timeout_s)
        except Exception as e:
            raise InfrastructureError(operation, f"{type(e).__name__}: {e}") from e

    async def _write_status(self, instance: ManagedInstance, status: InstanceStatus) -> None:
        if not await self._store.update_status(instance.id, instance.version, status):
            CAS_FAILURES_TOTAL.inc()
            raise ConflictError(ErrorCode.CONCURRENT_MODIFICATION)
        instance.version += 1
        instance.status = status
