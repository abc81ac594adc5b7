"""Provisioning queue consumer.

Reads instance ids from the provisioning queue, claims each instance with a
version-checked lease and runs the provisioning pipeline. A message is acked
only after it has been handled; a crash mid-run leaves it pending, and some
consumer reclaims it once it has been idle long enough.
"""

import logging
from datetime import timedelta

from tenanthub.app.config import ConsumerConfig, ProvisioningConfig
from tenanthub.app.logging import set_instance_context
from tenanthub.app.metrics.collector import PROVISIONING_RUNS_TOTAL, QUEUE_MESSAGES_TOTAL
from tenanthub.control.coordinator.base import CoordinatorBase, CoordinatorType
from tenanthub.core.domain import InstanceStatus
from tenanthub.core.errors import ErrorCode, TenantHubError
from tenanthub.core.interfaces import InstanceStore, ProvisioningQueue, QueueMessage
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import utc_now
from tenanthub.provisioning import ProvisioningPipeline
from tenanthub.services.instances import InstanceService

logger = logging.getLogger(__name__)


class ProvisioningConsumer(CoordinatorBase):
    """Drives queued instances through the provisioning pipeline.

    Short-circuits (message acked, nothing run):
    - instance missing or Destroyed
    - instance already Running
    - claim lost: another run holds an unexpired lease, or the status moved on
    """

    COORDINATOR_TYPE = CoordinatorType.CONSUMER

    def __init__(
        self,
        store: InstanceStore,
        queue: ProvisioningQueue,
        pipeline: ProvisioningPipeline,
        service: InstanceService,
        config: ConsumerConfig,
        provisioning: ProvisioningConfig,
    ) -> None:
        if config.lease_seconds <= provisioning.step_timeout_s:
            raise ValueError(
                f"lease_seconds ({config.lease_seconds:g}) must exceed "
                f"step_timeout_s ({provisioning.step_timeout_s:g})"
            )
        # read() blocks for block_ms, so no extra sleep between ticks
        super().__init__(interval=0.0)
        self._store = store
        self._queue = queue
        self._pipeline = pipeline
        self._service = service
        self._config = config
        self._failure_policy = provisioning.failure_policy

    async def setup(self) -> None:
        await self.sweep_pending()

    async def sweep_pending(self) -> int:
        """Enqueue every Pending instance (recovers enqueues lost at create)."""
        pending = await self._store.list_instances([InstanceStatus.PENDING])
        for instance in pending:
            await self._queue.enqueue(instance.id)
        if pending:
            logger.info(
                "Re-enqueued %d pending instances",
                len(pending),
                extra={"event": LogEvent.INSTANCE_ENQUEUED, "count": len(pending)},
            )
        return len(pending)

    async def tick(self) -> None:
        reclaimed = await self._queue.claim_stale(
            self._config.reclaim_idle_ms, self._config.batch_size
        )
        if reclaimed:
            QUEUE_MESSAGES_TOTAL.labels(source="reclaimed").inc(len(reclaimed))
            logger.info("Reclaimed %d stale messages", len(reclaimed))

        fresh = await self._queue.read(self._config.batch_size, self._config.block_ms)
        if fresh:
            QUEUE_MESSAGES_TOTAL.labels(source="new").inc(len(fresh))

        for message in [*reclaimed, *fresh]:
            await self.handle(message)

    async def handle(self, message: QueueMessage) -> bool:
        """Process one message. Returns True if it was acked."""
        set_instance_context(message.instance_id)
        try:
            await self.process(message.instance_id)
        except Exception as e:
            # Unacked: redelivered through claim_stale
            logger.exception(
                "Failed to process instance %s: %s",
                message.instance_id,
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": message.instance_id},
            )
            return False
        finally:
            set_instance_context(None)

        await self._queue.ack(message.message_id)
        return True

    async def process(self, instance_id: int) -> None:
        aggregate = await self._store.get_aggregate(instance_id)
        if aggregate is None or aggregate.instance.status == InstanceStatus.DESTROYED:
            self._skip(instance_id, "instance missing or destroyed")
            return
        if aggregate.instance.status == InstanceStatus.RUNNING:
            self._skip(instance_id, "already running")
            return

        lease_cutoff = utc_now() - timedelta(seconds=self._config.lease_seconds)
        if not await self._store.claim_for_provisioning(instance_id, lease_cutoff):
            self._skip(instance_id, f"not claimable in status {aggregate.instance.status}")
            return

        logger.info(
            "Claimed instance for provisioning",
            extra={"event": LogEvent.PROVISIONING_CLAIMED, "instance_id": instance_id},
        )
        result = await self._pipeline.run(instance_id)
        if result.is_ok or self._failure_policy != "destroy":
            return

        # Conflicts mean someone else moved the instance on; nothing to release
        if result.error.code == ErrorCode.CONCURRENT_MODIFICATION:
            return
        await self._release_failed(instance_id)

    async def _release_failed(self, instance_id: int) -> None:
        try:
            report = await self._service.destroy(instance_id)
        except TenantHubError as e:
            logger.warning(
                "Could not release failed instance %s: %s",
                instance_id,
                e.message,
                extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance_id},
            )
            return
        logger.info(
            "Released infrastructure of failed instance",
            extra={
                "event": LogEvent.INSTANCE_DESTROYED,
                "instance_id": instance_id,
                "failed_steps": report.failed_steps,
            },
        )

    def _skip(self, instance_id: int, reason: str) -> None:
        PROVISIONING_RUNS_TOTAL.labels(result="skipped").inc()
        logger.info(
            "Skipping instance %s: %s",
            instance_id,
            reason,
            extra={"event": LogEvent.PROVISIONING_SKIPPED, "instance_id": instance_id},
        )
