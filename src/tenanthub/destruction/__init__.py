"""Instance teardown: ordered best-effort steps and their pipeline."""

from tenanthub.destruction.pipeline import DestructionPipeline, DestructionReport, StepOutcome
from tenanthub.destruction.steps import (
    DESTRUCTION_STEP_NAMES,
    DestructionStep,
    build_destruction_steps,
)

__all__ = [
    "DestructionPipeline",
    "DestructionReport",
    "StepOutcome",
    "DestructionStep",
    "DESTRUCTION_STEP_NAMES",
    "build_destruction_steps",
]
