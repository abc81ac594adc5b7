"""Fixtures for coordinator unit tests."""

from unittest.mock import AsyncMock

import pytest

from tenanthub.core.interfaces import (
    AlertService,
    ContainerRuntime,
    HealthCheckVerifier,
    InstanceStore,
    ProvisioningQueue,
    ProxyManager,
)
from tenanthub.provisioning import ProvisioningPipeline
from tenanthub.services import InstanceService, WorkerIdAllocator


@pytest.fixture
def mock_store() -> AsyncMock:
    """InstanceStore mock. Claims and CAS writes succeed by default."""
    store = AsyncMock(spec=InstanceStore)
    store.claim_for_provisioning = AsyncMock(return_value=True)
    store.update_status = AsyncMock(return_value=True)
    store.list_instances = AsyncMock(return_value=[])
    store.list_unhealthy = AsyncMock(return_value=[])
    store.list_orphaned_infrastructure = AsyncMock(return_value=[])
    store.list_stuck_provisioning = AsyncMock(return_value=[])
    store.list_stale_pending = AsyncMock(return_value=[])
    store.list_running_without_infrastructure = AsyncMock(return_value=[])
    store.count_by_status = AsyncMock(return_value={})
    store.get_health = AsyncMock(return_value=None)
    return store


@pytest.fixture
def mock_queue() -> AsyncMock:
    queue = AsyncMock(spec=ProvisioningQueue)
    queue.claim_stale = AsyncMock(return_value=[])
    queue.read = AsyncMock(return_value=[])
    return queue


@pytest.fixture
def mock_pipeline() -> AsyncMock:
    return AsyncMock(spec=ProvisioningPipeline)


@pytest.fixture
def mock_service() -> AsyncMock:
    return AsyncMock(spec=InstanceService)


@pytest.fixture
def mock_runtime() -> AsyncMock:
    runtime = AsyncMock(spec=ContainerRuntime)
    runtime.verify_container_running = AsyncMock(return_value=True)
    runtime.verify_network_exists = AsyncMock(return_value=True)
    return runtime


@pytest.fixture
def mock_proxy() -> AsyncMock:
    proxy = AsyncMock(spec=ProxyManager)
    proxy.verify_route = AsyncMock(return_value=True)
    return proxy


@pytest.fixture
def mock_alerts() -> AsyncMock:
    return AsyncMock(spec=AlertService)


@pytest.fixture
def mock_verifier() -> AsyncMock:
    return AsyncMock(spec=HealthCheckVerifier)


@pytest.fixture
def mock_allocator() -> AsyncMock:
    return AsyncMock(spec=WorkerIdAllocator)
