"""Provisioning pipeline: one attempt at driving an instance to Running."""

import asyncio
import logging
import time
from collections.abc import Sequence

from tenanthub.app.config import ProvisioningConfig
from tenanthub.app.logging import set_instance_context
from tenanthub.app.metrics.collector import (
    CAS_FAILURES_TOTAL,
    PIPELINE_STEP_DURATION,
    PIPELINE_STEP_FAILURES_TOTAL,
    PROVISIONING_RUN_DURATION,
    PROVISIONING_RUNS_TOTAL,
)
from tenanthub.core.domain import InstanceStatus, ProvisioningPhase, ResourceNames, StepStatus
from tenanthub.core.errors import ConflictError, ErrorCode, InfrastructureError, NotFoundError
from tenanthub.core.interfaces import InstanceStore
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import ProvisioningEvent, utc_now
from tenanthub.core.result import Err, Ok, Result
from tenanthub.provisioning.steps import ProvisioningStep, StepContext

logger = logging.getLogger(__name__)

_PHASE = str(ProvisioningPhase.PROVISION)


class ProvisioningPipeline:
    """Runs the provisioning steps in order and records every attempt.

    The first failing step stops the run and marks the instance Failed;
    the pipeline never retries and never triggers destruction itself.
    Cancellation propagates, leaving the handles persisted so far.

    Each step is bounded by step_timeout_s as a whole, and the lease is
    renewed before every step, so a run holds its lease as long as the
    lease outlasts one step.
    """

    def __init__(
        self,
        store: InstanceStore,
        steps: Sequence[ProvisioningStep],
        config: ProvisioningConfig,
    ) -> None:
        self._store = store
        self._steps = tuple(steps)
        self._config = config

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self._steps)

    async def run(self, instance_id: int) -> Result[None]:
        aggregate = await self._store.get_aggregate(instance_id)
        if aggregate is None or aggregate.instance.status == InstanceStatus.DESTROYED:
            return Err(NotFoundError(f"Instance {instance_id} not found"))

        instance = aggregate.instance
        set_instance_context(instance.id)
        ctx = StepContext(
            aggregate=aggregate,
            store=self._store,
            names=ResourceNames(
                instance.id,
                instance.domain,
                self._config.resource_prefix,
                self._config.database_prefix,
            ),
        )

        run_start = time.perf_counter()
        for step in self._steps:
            if not await self._renew_lease(ctx, step.name):
                return Err(
                    ConflictError(
                        ErrorCode.CONCURRENT_MODIFICATION,
                        f"Instance {instance.id} lost its provisioning lease",
                    )
                )
            result = await self._run_step(step, ctx)
            if not result.is_ok:
                await self._finish(ctx, InstanceStatus.FAILED)
                PROVISIONING_RUNS_TOTAL.labels(result="failed").inc()
                logger.warning(
                    "Provisioning failed at %s: %s",
                    step.name,
                    result.error.message,
                    extra={
                        "event": LogEvent.PROVISIONING_FAILED,
                        "instance_id": instance.id,
                        "step": step.name,
                        "error_code": result.error.code.value,
                    },
                )
                return result

        if not await self._finish(ctx, InstanceStatus.RUNNING):
            return Err(
                ConflictError(
                    ErrorCode.CONCURRENT_MODIFICATION,
                    f"Instance {instance.id} changed while provisioning",
                )
            )

        duration = time.perf_counter() - run_start
        PROVISIONING_RUN_DURATION.observe(duration)
        PROVISIONING_RUNS_TOTAL.labels(result="succeeded").inc()
        logger.info(
            "Provisioning complete",
            extra={
                "event": LogEvent.PROVISIONING_COMPLETE,
                "instance_id": instance.id,
                "domain": instance.domain,
                "worker_id": instance.worker_id,
                "duration_ms": round(duration * 1000, 1),
            },
        )
        return Ok()

    async def _run_step(self, step: ProvisioningStep, ctx: StepContext) -> Result[None]:
        instance_id = ctx.instance.id
        started_at = utc_now()
        await self._store.append_event(
            ProvisioningEvent(
                instance_id=instance_id,
                phase=_PHASE,
                step_name=step.name,
                status=str(StepStatus.STARTED),
                started_at=started_at,
            )
        )

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(step.execute(ctx), self._config.step_timeout_s)
        except asyncio.TimeoutError:
            result = Err(
                InfrastructureError(
                    step.name, f"timed out after {self._config.step_timeout_s:g}s"
                )
            )
        PIPELINE_STEP_DURATION.labels(phase=_PHASE, step=step.name).observe(
            time.perf_counter() - start
        )

        if result.is_ok:
            status, error_message = StepStatus.SUCCEEDED, None
            logger.debug(
                "Step %s succeeded",
                step.name,
                extra={"event": LogEvent.STEP_SUCCEEDED, "instance_id": instance_id},
            )
        else:
            status, error_message = StepStatus.FAILED, result.error.message
            PIPELINE_STEP_FAILURES_TOTAL.labels(phase=_PHASE, step=step.name).inc()
            logger.warning(
                "Step %s failed: %s",
                step.name,
                error_message,
                extra={"event": LogEvent.STEP_FAILED, "instance_id": instance_id},
            )

        await self._store.append_event(
            ProvisioningEvent(
                instance_id=instance_id,
                phase=_PHASE,
                step_name=step.name,
                status=str(status),
                error_message=error_message,
                started_at=started_at,
                completed_at=utc_now(),
            )
        )
        return result

    async def _renew_lease(self, ctx: StepContext, step_name: str) -> bool:
        instance = ctx.instance
        if await self._store.renew_provisioning_lease(instance.id, instance.version):
            return True
        CAS_FAILURES_TOTAL.inc()
        logger.warning(
            "Provisioning lease lost before %s, abandoning run",
            step_name,
            extra={
                "event": LogEvent.CONCURRENT_MODIFICATION,
                "instance_id": instance.id,
                "expected_version": instance.version,
                "step": step_name,
            },
        )
        return False

    async def _finish(self, ctx: StepContext, status: InstanceStatus) -> bool:
        """Version-checked final status write."""
        instance = ctx.instance
        updated = await self._store.update_status(instance.id, instance.version, status)
        if not updated:
            CAS_FAILURES_TOTAL.inc()
            logger.warning(
                "Instance changed concurrently, not marking %s",
                status,
                extra={
                    "event": LogEvent.CONCURRENT_MODIFICATION,
                    "instance_id": instance.id,
                    "expected_version": instance.version,
                },
            )
            return False
        instance.version += 1
        instance.status = status
        logger.info(
            "Instance %s -> %s",
            instance.id,
            status,
            extra={"event": LogEvent.STATE_CHANGED, "instance_id": instance.id, "status": str(status)},
        )
        return True
