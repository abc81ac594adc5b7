"""Control Plane - composition root and coordinator runner.

Builds every singleton (generator, allocator, key ring, adapters) once and
injects it; nothing below this module reaches for globals.

Coordinators:
- ProvisioningConsumer: queue -> provisioning pipeline
- HealthMonitor: probes Running instances
- InstanceReconciler: escalation, orphans, stuck runs, drift, capacity
"""

import asyncio
import logging
from dataclasses import dataclass, field

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.adapters import (
    CaddyProxyManager,
    CloudflareDnsProvider,
    DockerContainerRuntime,
    HttpHealthCheckVerifier,
    HttpInstanceNotifier,
    PostgresDatabaseManager,
    S3BucketProvisioner,
    build_alert_service,
)
from tenanthub.app.config import Settings, get_settings
from tenanthub.control.coordinator import (
    CoordinatorBase,
    HealthMonitor,
    InstanceReconciler,
    ProvisioningConsumer,
)
from tenanthub.core.envelope import KeyRing
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.snowflake import SnowflakeGenerator
from tenanthub.destruction import DestructionPipeline, build_destruction_steps
from tenanthub.infra import RedisProvisioningQueue, SQLAlchemyInstanceStore
from tenanthub.infra.docker import close_docker
from tenanthub.infra.s3 import close_storage
from tenanthub.provisioning import ProvisioningPipeline, build_provisioning_steps
from tenanthub.services import InstanceService, WorkerIdAllocator

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    """Everything run_control_plane wires together."""

    service: InstanceService
    queue: RedisProvisioningQueue
    allocator: WorkerIdAllocator
    coordinators: list[CoordinatorBase]
    closeables: list = field(default_factory=list)

    async def close(self) -> None:
        for resource in self.closeables:
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", type(resource).__name__, e)
        await close_docker()
        await close_storage()


async def build_control_plane(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    settings: Settings | None = None,
) -> ControlPlane:
    settings = settings or get_settings()

    keyring = KeyRing.from_config(settings.encryption.kek_file, settings.encryption.kek)
    generator = SnowflakeGenerator(
        settings.snowflake.worker_id, max_clock_drift_ms=settings.snowflake.max_clock_drift_ms
    )

    store = SQLAlchemyInstanceStore(session_factory)
    allocator = WorkerIdAllocator(store, space=settings.snowflake.worker_id_space)
    # The control plane's own generator id must never be handed to a tenant
    await allocator.ensure_registry(reserved={settings.snowflake.worker_id})

    queue = RedisProvisioningQueue(
        redis_client,
        stream_key=settings.redis.stream_key,
        group=settings.redis.consumer_group,
        consumer=settings.consumer.name,
        maxlen=settings.redis.stream_maxlen,
    )
    await queue.ensure_group()

    # Adapters
    runtime = DockerContainerRuntime()
    dns = CloudflareDnsProvider(settings.dns)
    proxy = CaddyProxyManager(settings.proxy)
    databases = PostgresDatabaseManager()
    storage = S3BucketProvisioner()
    notifier = HttpInstanceNotifier(settings.notifier)
    verifier = HttpHealthCheckVerifier(timeout=settings.health.timeout_s)
    alerts = build_alert_service(settings.alerts)

    provisioning = ProvisioningPipeline(
        store,
        build_provisioning_steps(
            store=store,
            allocator=allocator,
            keyring=keyring,
            runtime=runtime,
            databases=databases,
            storage=storage,
            dns=dns,
            proxy=proxy,
            tiers=settings.tiers,
            config=settings.provisioning,
        ),
        settings.provisioning,
    )
    destruction = DestructionPipeline(
        store,
        build_destruction_steps(
            store=store,
            runtime=runtime,
            dns=dns,
            proxy=proxy,
            storage=storage,
            timeout_s=settings.provisioning.step_timeout_s,
        ),
    )

    service = InstanceService(
        store=store,
        generator=generator,
        queue=queue,
        allocator=allocator,
        destruction=destruction,
        runtime=runtime,
        notifier=notifier,
        databases=databases,
        config=settings.provisioning,
        suspend=settings.suspend,
    )

    coordinators: list[CoordinatorBase] = [
        ProvisioningConsumer(
            store, queue, provisioning, service, settings.consumer, settings.provisioning
        ),
        HealthMonitor(store, verifier, runtime, settings.health, settings.provisioning),
        InstanceReconciler(
            store,
            queue,
            runtime,
            proxy,
            alerts,
            service,
            allocator,
            settings.reconciler,
            settings.provisioning,
        ),
    ]

    closeables = [dns, proxy, databases, notifier, verifier]
    if hasattr(alerts, "close"):
        closeables.append(alerts)

    return ControlPlane(
        service=service,
        queue=queue,
        allocator=allocator,
        coordinators=coordinators,
        closeables=closeables,
    )


async def run_control_plane(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
) -> None:
    """Run every coordinator until cancelled.

    Args:
        session_factory: Session factory of the control-plane database
        redis_client: Redis client (provisioning stream)
    """
    plane = await build_control_plane(session_factory, redis_client)

    try:
        await asyncio.gather(*(coordinator.run() for coordinator in plane.coordinators))
    except asyncio.CancelledError:
        logger.info("Control plane cancelled", extra={"event": LogEvent.APP_STOPPED})
        raise
    finally:
        await plane.close()


__all__ = ["ControlPlane", "build_control_plane", "run_control_plane"]
