"""Instance domain types."""

from tenanthub.core.domain.instance import (
    InstanceStatus,
    InstanceTier,
    ProvisioningPhase,
    ResourceNames,
    StepStatus,
    subdomain_error,
    subdomain_of,
)

__all__ = [
    "InstanceStatus",
    "InstanceTier",
    "ProvisioningPhase",
    "StepStatus",
    "ResourceNames",
    "subdomain_error",
    "subdomain_of",
]
