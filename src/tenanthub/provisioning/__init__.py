"""Instance provisioning: ordered steps and the pipeline that runs them."""

from tenanthub.provisioning.pipeline import ProvisioningPipeline
from tenanthub.provisioning.steps import (
    PROVISIONING_STEP_NAMES,
    ProvisioningStep,
    StepContext,
    build_provisioning_steps,
)

__all__ = [
    "ProvisioningPipeline",
    "ProvisioningStep",
    "StepContext",
    "PROVISIONING_STEP_NAMES",
    "build_provisioning_steps",
]
