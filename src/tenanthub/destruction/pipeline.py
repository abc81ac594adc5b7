"""Best-effort teardown of an instance's infrastructure.

This is the one place step failures are caught: each is recorded as a
Failed event and the pipeline moves on, so a stuck resource never blocks
release of the others. Failed event writes are logged and skipped as well.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from tenanthub.app.metrics.collector import (
    DESTRUCTIONS_TOTAL,
    PIPELINE_STEP_DURATION,
    PIPELINE_STEP_FAILURES_TOTAL,
)
from tenanthub.core.domain import ProvisioningPhase, StepStatus
from tenanthub.core.interfaces import InstanceStore
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import InstanceAggregate, ProvisioningEvent, utc_now
from tenanthub.destruction.steps import DestructionStep

logger = logging.getLogger(__name__)

_PHASE = str(ProvisioningPhase.DESTROY)
SKIPPED_NOTE = "skipped: no handle recorded"


@dataclass(frozen=True)
class StepOutcome:
    step: str
    status: StepStatus
    skipped: bool = False
    error: str | None = None


@dataclass
class DestructionReport:
    instance_id: int
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[str]:
        return [o.step for o in self.outcomes if o.status == StepStatus.FAILED]

    @property
    def clean(self) -> bool:
        return not self.failed_steps


class DestructionPipeline:
    def __init__(self, store: InstanceStore, steps: Sequence[DestructionStep]) -> None:
        self._store = store
        self._steps = tuple(steps)

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self._steps)

    async def run(self, aggregate: InstanceAggregate) -> DestructionReport:
        """Run every step. Never raises for step failures."""
        instance_id = aggregate.instance.id
        infra = aggregate.infrastructure
        report = DestructionReport(instance_id=instance_id)

        for step in self._steps:
            started_at = utc_now()
            if not step.applies_to(infra):
                await self._record(
                    instance_id, step.name, StepStatus.SUCCEEDED, started_at, SKIPPED_NOTE
                )
                report.outcomes.append(StepOutcome(step.name, StepStatus.SUCCEEDED, skipped=True))
                continue

            await self._record(instance_id, step.name, StepStatus.STARTED, started_at)
            start = time.perf_counter()
            try:
                await step.run(infra)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                PIPELINE_STEP_FAILURES_TOTAL.labels(phase=_PHASE, step=step.name).inc()
                logger.warning(
                    "Destruction step %s failed: %s",
                    step.name,
                    error,
                    extra={"event": LogEvent.STEP_FAILED, "instance_id": instance_id},
                )
                await self._record(instance_id, step.name, StepStatus.FAILED, started_at, error)
                report.outcomes.append(StepOutcome(step.name, StepStatus.FAILED, error=error))
                continue
            finally:
                PIPELINE_STEP_DURATION.labels(phase=_PHASE, step=step.name).observe(
                    time.perf_counter() - start
                )

            await self._record(instance_id, step.name, StepStatus.SUCCEEDED, started_at)
            report.outcomes.append(StepOutcome(step.name, StepStatus.SUCCEEDED))

        DESTRUCTIONS_TOTAL.labels(result="clean" if report.clean else "partial").inc()
        return report

    async def _record(
        self,
        instance_id: int,
        step_name: str,
        status: StepStatus,
        started_at,
        message: str | None = None,
    ) -> None:
        try:
            await self._store.append_event(
                ProvisioningEvent(
                    instance_id=instance_id,
                    phase=_PHASE,
                    step_name=step_name,
                    status=str(status),
                    error_message=message,
                    started_at=started_at,
                    completed_at=None if status == StepStatus.STARTED else utc_now(),
                )
            )
        except Exception as e:
            logger.error(
                "Could not record %s event for %s: %s",
                status,
                step_name,
                e,
                extra={
                    "event": LogEvent.OPERATION_FAILED,
                    "instance_id": instance_id,
                    "step": step_name,
                },
            )
