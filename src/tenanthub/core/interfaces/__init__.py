"""Collaborator interfaces consumed by the orchestrator."""

from tenanthub.core.interfaces.edge import DnsProvider, ProxyManager
from tenanthub.core.interfaces.monitoring import (
    Alert,
    AlertService,
    AlertSeverity,
    HealthCheckVerifier,
    InstanceNotifier,
    ProbeResult,
)
from tenanthub.core.interfaces.queue import ProvisioningQueue, QueueMessage
from tenanthub.core.interfaces.runtime import ContainerRuntime, ContainerSpec
from tenanthub.core.interfaces.storage import DatabaseManager, ObjectStorageProvisioner
from tenanthub.core.interfaces.store import InstanceStore, WorkerIdCounts

__all__ = [
    # Store
    "InstanceStore",
    "WorkerIdCounts",
    # Infrastructure clients
    "ContainerRuntime",
    "ContainerSpec",
    "DnsProvider",
    "ProxyManager",
    "DatabaseManager",
    "ObjectStorageProvisioner",
    # Monitoring
    "HealthCheckVerifier",
    "ProbeResult",
    "InstanceNotifier",
    "AlertService",
    "Alert",
    "AlertSeverity",
    # Queue
    "ProvisioningQueue",
    "QueueMessage",
]
