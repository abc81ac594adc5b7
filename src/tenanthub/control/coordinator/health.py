"""Health Monitor - periodic probes of Running instances.

Writes InstanceHealth, and restarts a container once when its consecutive
failures reach the restart threshold. Escalating past that is the
reconciler's job.
"""

import asyncio
import logging
import time

from tenanthub.app.config import HealthConfig, ProvisioningConfig
from tenanthub.app.metrics.collector import (
    CONTAINER_RESTARTS_TOTAL,
    HEALTH_CHECK_DURATION,
    HEALTH_CHECKS_TOTAL,
)
from tenanthub.control.coordinator.base import CoordinatorBase, CoordinatorType
from tenanthub.core.domain import InstanceStatus, ResourceNames
from tenanthub.core.interfaces import ContainerRuntime, HealthCheckVerifier, InstanceStore
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import InstanceHealth, ManagedInstance, utc_now

logger = logging.getLogger(__name__)


class HealthMonitor(CoordinatorBase):
    COORDINATOR_TYPE = CoordinatorType.HEALTH

    def __init__(
        self,
        store: InstanceStore,
        verifier: HealthCheckVerifier,
        runtime: ContainerRuntime,
        config: HealthConfig,
        provisioning: ProvisioningConfig,
    ) -> None:
        super().__init__(interval=config.interval_s)
        self._store = store
        self._verifier = verifier
        self._runtime = runtime
        self._config = config
        self._provisioning = provisioning
        self._semaphore = asyncio.Semaphore(config.concurrency)

    def health_url(self, instance: ManagedInstance) -> str:
        names = ResourceNames(
            instance.id,
            instance.domain,
            self._provisioning.resource_prefix,
            self._provisioning.database_prefix,
        )
        return f"http://{names.container}:{self._provisioning.instance_port}{self._config.path}"

    async def tick(self) -> None:
        instances = await self._store.list_instances([InstanceStatus.RUNNING])
        if not instances:
            return
        await asyncio.gather(*(self._check_guarded(instance) for instance in instances))

    async def _check_guarded(self, instance: ManagedInstance) -> None:
        try:
            async with self._semaphore:
                await self.check(instance)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Health check of %s errored: %s",
                instance.id,
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
            )

    async def check(self, instance: ManagedInstance) -> InstanceHealth:
        """Probe one instance and persist the observation."""
        start = time.perf_counter()
        result = await self._verifier.probe(self.health_url(instance))
        HEALTH_CHECK_DURATION.observe(time.perf_counter() - start)

        previous = await self._store.get_health(instance.id)
        failures = previous.consecutive_failures if previous else 0

        if result.healthy:
            HEALTH_CHECKS_TOTAL.labels(result="healthy").inc()
            health = InstanceHealth(
                instance_id=instance.id,
                is_healthy=True,
                consecutive_failures=0,
                last_check_at=utc_now(),
                response_time_ms=result.latency_ms,
                error_message=None,
            )
        else:
            HEALTH_CHECKS_TOTAL.labels(result="unhealthy").inc()
            health = InstanceHealth(
                instance_id=instance.id,
                is_healthy=False,
                consecutive_failures=failures + 1,
                last_check_at=utc_now(),
                response_time_ms=result.latency_ms,
                error_message=result.error,
            )
            logger.info(
                "Instance %s unhealthy (%d consecutive): %s",
                instance.id,
                failures + 1,
                result.error,
                extra={"event": LogEvent.HEALTH_CHECK_FAILED, "instance_id": instance.id},
            )

        await self._store.save_health(health)
        if not health.is_healthy and health.consecutive_failures == self._config.restart_threshold:
            await self._restart(instance)
        return health

    async def _restart(self, instance: ManagedInstance) -> None:
        aggregate = await self._store.get_aggregate(instance.id)
        infra = aggregate.infrastructure if aggregate else None
        if infra is None or infra.container_id is None:
            return
        try:
            await self._runtime.restart_container(infra.container_id)
        except Exception as e:
            CONTAINER_RESTARTS_TOTAL.labels(result="failed").inc()
            logger.warning(
                "Restart of unhealthy instance %s failed: %s",
                instance.id,
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
            )
            return
        CONTAINER_RESTARTS_TOTAL.labels(result="succeeded").inc()
        logger.warning(
            "Restarted instance %s after %d consecutive failed checks",
            instance.id,
            self._config.restart_threshold,
            extra={"event": LogEvent.CONTAINER_RESTARTED, "instance_id": instance.id},
        )
