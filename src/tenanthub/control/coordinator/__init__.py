"""Coordinator module - background loops of the control plane."""

from tenanthub.control.coordinator.base import CoordinatorBase, CoordinatorType
from tenanthub.control.coordinator.consumer import ProvisioningConsumer
from tenanthub.control.coordinator.health import HealthMonitor
from tenanthub.control.coordinator.reconciler import InstanceReconciler

__all__ = [
    "CoordinatorBase",
    "CoordinatorType",
    "ProvisioningConsumer",
    "HealthMonitor",
    "InstanceReconciler",
]
