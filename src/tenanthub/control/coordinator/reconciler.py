"""Instance Reconciler - compares recorded state with reality and escalates.

Each duty runs independently within a tick: one failing duty is logged and
the rest still run.

Duties:
- escalate instances whose health probes keep failing
- flag infrastructure left behind by missing or destroyed instances
- re-enqueue Provisioning runs past their lease and Pending rows never picked up
- fail Running instances without infrastructure, without their network or
  with a dead container; report Running instances whose proxy route is gone
- report worker-id capacity and instance counts
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from tenanthub.app.config import ProvisioningConfig, ReconcilerConfig
from tenanthub.app.metrics.collector import (
    CAS_FAILURES_TOTAL,
    INSTANCES_BY_STATUS,
    ORPHANED_INFRASTRUCTURE,
    RECONCILER_FINDINGS_TOTAL,
)
from tenanthub.control.coordinator.base import CoordinatorBase, CoordinatorType
from tenanthub.core.domain import InstanceStatus
from tenanthub.core.errors import TenantHubError
from tenanthub.core.interfaces import (
    Alert,
    AlertService,
    AlertSeverity,
    ContainerRuntime,
    InstanceStore,
    ProvisioningQueue,
    ProxyManager,
)
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import ManagedInstance, utc_now
from tenanthub.services.instances import InstanceService
from tenanthub.services.worker_ids import WorkerIdAllocator

logger = logging.getLogger(__name__)


class InstanceReconciler(CoordinatorBase):
    COORDINATOR_TYPE = CoordinatorType.RECONCILER

    def __init__(
        self,
        store: InstanceStore,
        queue: ProvisioningQueue,
        runtime: ContainerRuntime,
        proxy: ProxyManager,
        alerts: AlertService,
        service: InstanceService,
        allocator: WorkerIdAllocator,
        config: ReconcilerConfig,
        provisioning: ProvisioningConfig,
    ) -> None:
        super().__init__(interval=config.interval_s)
        self._store = store
        self._queue = queue
        self._runtime = runtime
        self._proxy = proxy
        self._alerts = alerts
        self._service = service
        self._allocator = allocator
        self._config = config
        self._call_timeout = provisioning.step_timeout_s
        # Alert once per incident, not once per tick
        self._escalated: set[int] = set()
        self._known_orphans: set[int] = set()
        self._missing_routes: set[int] = set()
        self._capacity_alerted = False

    async def tick(self) -> None:
        duties: tuple[Callable[[], Awaitable[object]], ...] = (
            self.escalate_unhealthy,
            self.detect_orphans,
            self.requeue_stuck,
            self.fail_missing_infrastructure,
            self.verify_resources,
            self.report_capacity,
            self.update_status_gauge,
        )
        for duty in duties:
            try:
                await duty()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Reconciler duty %s failed: %s",
                    duty.__name__,
                    e,
                    extra={"event": LogEvent.OPERATION_FAILED},
                )

    # =========================================================================
    # Health escalation
    # =========================================================================

    async def escalate_unhealthy(self) -> list[int]:
        """Alert on (and optionally suspend) instances over the failure threshold."""
        unhealthy = await self._store.list_unhealthy(self._config.failure_threshold)
        current = {aggregate.instance.id for aggregate in unhealthy}
        # Recovered instances may escalate again later
        self._escalated &= current

        escalated = []
        for aggregate in unhealthy:
            instance = aggregate.instance
            if instance.id in self._escalated:
                continue
            self._escalated.add(instance.id)
            escalated.append(instance.id)
            RECONCILER_FINDINGS_TOTAL.labels(kind="unhealthy").inc()

            failures = aggregate.health.consecutive_failures if aggregate.health else 0
            logger.warning(
                "Instance %s failed %d consecutive health checks",
                instance.id,
                failures,
                extra={"event": LogEvent.UNHEALTHY_ESCALATED, "instance_id": instance.id},
            )
            await self._alert(
                Alert(
                    title="Instance unhealthy",
                    message=f"{instance.domain} failed {failures} consecutive health checks",
                    severity=AlertSeverity.CRITICAL,
                    instance_id=instance.id,
                    details={
                        "domain": instance.domain,
                        "error": (aggregate.health.error_message or "") if aggregate.health else "",
                    },
                )
            )
            if self._config.suspend_unhealthy:
                await self._suspend(instance)
        return escalated

    async def _suspend(self, instance: ManagedInstance) -> None:
        try:
            await self._service.suspend(
                instance.id, reason="Suspended after repeated health check failures"
            )
        except TenantHubError as e:
            logger.warning(
                "Could not suspend unhealthy instance %s: %s",
                instance.id,
                e.message,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
            )

    # =========================================================================
    # Orphans
    # =========================================================================

    async def detect_orphans(self) -> list[int]:
        """Flag infrastructure whose instance is gone. Never deletes anything."""
        orphans = await self._store.list_orphaned_infrastructure()
        ORPHANED_INFRASTRUCTURE.set(len(orphans))
        current = {infra.instance_id for infra in orphans}
        self._known_orphans &= current

        for infra in orphans:
            if infra.instance_id in self._known_orphans:
                continue
            self._known_orphans.add(infra.instance_id)
            RECONCILER_FINDINGS_TOTAL.labels(kind="orphan").inc()
            handles = infra.live_handles()
            logger.warning(
                "Orphaned infrastructure for instance %s: %s",
                infra.instance_id,
                ", ".join(sorted(handles)),
                extra={"event": LogEvent.ORPHAN_DETECTED, "instance_id": infra.instance_id},
            )
            await self._alert(
                Alert(
                    title="Orphaned infrastructure",
                    message=f"Instance {infra.instance_id} is gone but still holds resources",
                    instance_id=infra.instance_id,
                    details=handles,
                )
            )
        return sorted(current)

    # =========================================================================
    # Stuck provisioning
    # =========================================================================

    async def requeue_stuck(self) -> list[int]:
        """Re-enqueue runs past their lease; the consumer's claim takes them over."""
        cutoff = utc_now() - timedelta(seconds=self._config.stuck_timeout_s)
        stuck = await self._store.list_stuck_provisioning(cutoff)
        stale = await self._store.list_stale_pending(cutoff)

        requeued = []
        for instance in [*stuck, *stale]:
            RECONCILER_FINDINGS_TOTAL.labels(kind="stuck").inc()
            logger.warning(
                "Instance %s stuck in %s, re-enqueueing",
                instance.id,
                instance.status,
                extra={"event": LogEvent.STUCK_PROVISIONING, "instance_id": instance.id},
            )
            await self._queue.enqueue(instance.id)
            requeued.append(instance.id)
        return requeued

    # =========================================================================
    # Drift
    # =========================================================================

    async def fail_missing_infrastructure(self) -> list[int]:
        instances = await self._store.list_running_without_infrastructure()
        failed = []
        for instance in instances:
            RECONCILER_FINDINGS_TOTAL.labels(kind="missing_infrastructure").inc()
            if await self._mark_failed(instance, "Running without infrastructure"):
                failed.append(instance.id)
        return failed

    async def verify_resources(self) -> list[int]:
        """Check the network, container and proxy route of every Running instance.

        A missing network or a stopped container fails the instance. A
        missing proxy route is alerted once per incident and leaves the
        status alone.

        Returns:
            Ids of instances marked Failed
        """
        if not self._config.verify_resources:
            return []

        failed = []
        missing_routes: set[int] = set()
        for instance in await self._store.list_instances([InstanceStatus.RUNNING]):
            aggregate = await self._store.get_aggregate(instance.id)
            if aggregate is None or aggregate.infrastructure is None:
                # fail_missing_infrastructure owns this case
                continue
            infra = aggregate.infrastructure

            issues = []
            if await self._verify(
                instance, "network", self._runtime.verify_network_exists, infra.network_id
            ) is False:
                issues.append("network missing")
            if await self._verify(
                instance, "container", self._runtime.verify_container_running, infra.container_id
            ) is False:
                issues.append("container not running")
            if await self._verify(
                instance, "proxy route", self._proxy.verify_route, infra.proxy_route_id
            ) is False:
                missing_routes.add(instance.id)
                if instance.id not in self._missing_routes:
                    await self._report_missing_route(instance)

            if not issues:
                continue
            RECONCILER_FINDINGS_TOTAL.labels(kind="drift").inc()
            reason = ", ".join(issues)
            if await self._mark_failed(aggregate.instance, reason.capitalize()):
                failed.append(instance.id)
                await self._alert(
                    Alert(
                        title="Instance infrastructure lost",
                        message=f"{instance.domain} was Running but: {reason}",
                        severity=AlertSeverity.CRITICAL,
                        instance_id=instance.id,
                        details={"issues": reason},
                    )
                )
        self._missing_routes = missing_routes
        return failed

    async def _verify(
        self,
        instance: ManagedInstance,
        resource: str,
        check: Callable[[str], Awaitable[bool]],
        handle: str | None,
    ) -> bool | None:
        """False when the resource is gone, None when it could not be checked."""
        if not handle:
            return False
        try:
            return await asyncio.wait_for(check(handle), self._call_timeout)
        except Exception as e:
            # An unreachable API is not evidence the resource is gone
            logger.warning(
                "Could not verify %s of %s: %s",
                resource,
                instance.id,
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
            )
            return None

    async def _report_missing_route(self, instance: ManagedInstance) -> None:
        RECONCILER_FINDINGS_TOTAL.labels(kind="drift").inc()
        logger.warning(
            "Instance %s has no proxy route",
            instance.id,
            extra={"event": LogEvent.DRIFT_DETECTED, "instance_id": instance.id},
        )
        await self._alert(
            Alert(
                title="Proxy route missing",
                message=f"{instance.domain} is Running but the proxy no longer routes to it",
                instance_id=instance.id,
            )
        )

    async def _mark_failed(self, instance: ManagedInstance, reason: str) -> bool:
        updated = await self._store.update_status(
            instance.id, instance.version, InstanceStatus.FAILED
        )
        if not updated:
            CAS_FAILURES_TOTAL.inc()
            logger.info(
                "Instance %s changed concurrently, not marking Failed",
                instance.id,
                extra={"event": LogEvent.CONCURRENT_MODIFICATION, "instance_id": instance.id},
            )
            return False
        logger.warning(
            "Instance %s marked Failed: %s",
            instance.id,
            reason,
            extra={"event": LogEvent.DRIFT_DETECTED, "instance_id": instance.id},
        )
        return True

    # =========================================================================
    # Capacity / fleet gauges
    # =========================================================================

    async def report_capacity(self) -> int:
        """Returns the number of free worker ids."""
        counts = await self._allocator.capacity()
        logger.info(
            "Worker ids: %d free, %d live, %d tombstoned",
            counts.free,
            counts.live,
            counts.tombstoned,
        )
        if counts.free >= self._config.worker_id_low_watermark:
            self._capacity_alerted = False
            return counts.free

        logger.warning(
            "Only %d worker ids left",
            counts.free,
            extra={"event": LogEvent.WORKER_ID_LOW, "free": counts.free},
        )
        if not self._capacity_alerted:
            self._capacity_alerted = True
            await self._alert(
                Alert(
                    title="Worker ids running low",
                    message=(
                        f"{counts.free} of {counts.total} worker ids remain; "
                        "tombstoned ids are never reused"
                    ),
                    severity=AlertSeverity.CRITICAL if counts.free == 0 else AlertSeverity.WARNING,
                )
            )
        return counts.free

    async def update_status_gauge(self) -> None:
        counts = await self._store.count_by_status()
        for status in InstanceStatus:
            if status != InstanceStatus.DESTROYED:
                INSTANCES_BY_STATUS.labels(status=str(status)).set(counts.get(status, 0))

    async def _alert(self, alert: Alert) -> None:
        try:
            await self._alerts.send(alert)
        except Exception as e:
            logger.error(
                "Failed to send alert %s: %s",
                alert.title,
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": alert.instance_id},
            )
