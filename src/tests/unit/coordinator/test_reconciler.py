"""Tests for InstanceReconciler duties."""

from unittest.mock import AsyncMock

import pytest

from tenanthub.app.config import ProvisioningConfig, ReconcilerConfig
from tenanthub.control.coordinator.reconciler import InstanceReconciler
from tenanthub.core.domain import InstanceStatus
from tenanthub.core.errors import ConflictError, ErrorCode
from tenanthub.core.interfaces import AlertSeverity, WorkerIdCounts
from tenanthub.core.models import (
    InstanceAggregate,
    InstanceHealth,
    InstanceInfrastructure,
    ManagedInstance,
)


def make_instance(
    id: int = 1001, status: InstanceStatus = InstanceStatus.RUNNING, version: int = 3
) -> ManagedInstance:
    return ManagedInstance(
        id=id,
        owner_id=42,
        domain=f"t{id}.tenanthub.local",
        display_name="Tenant",
        status=status,
        version=version,
    )


def unhealthy(id: int, failures: int = 6) -> InstanceAggregate:
    return InstanceAggregate(
        instance=make_instance(id),
        health=InstanceHealth(instance_id=id, consecutive_failures=failures, error_message="HTTP 502"),
    )


@pytest.fixture
def make_reconciler(
    mock_store, mock_queue, mock_runtime, mock_proxy, mock_alerts, mock_service, mock_allocator
):
    def _make(**overrides) -> InstanceReconciler:
        config = ReconcilerConfig(
            interval_s=60,
            failure_threshold=5,
            stuck_timeout_s=300,
            worker_id_low_watermark=50,
            **overrides,
        )
        return InstanceReconciler(
            mock_store,
            mock_queue,
            mock_runtime,
            mock_proxy,
            mock_alerts,
            mock_service,
            mock_allocator,
            config,
            ProvisioningConfig(step_timeout_s=5.0),
        )

    return _make


@pytest.fixture
def reconciler(make_reconciler) -> InstanceReconciler:
    return make_reconciler()


class TestEscalateUnhealthy:
    async def test_alerts_once_per_incident(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_alerts: AsyncMock
    ) -> None:
        mock_store.list_unhealthy.return_value = [unhealthy(1)]

        assert await reconciler.escalate_unhealthy() == [1]
        assert await reconciler.escalate_unhealthy() == []

        mock_store.list_unhealthy.assert_awaited_with(5)
        mock_alerts.send.assert_awaited_once()
        alert = mock_alerts.send.await_args.args[0]
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.instance_id == 1
        assert alert.details["error"] == "HTTP 502"

    async def test_recovery_rearms_alert(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_alerts: AsyncMock
    ) -> None:
        mock_store.list_unhealthy.side_effect = [[unhealthy(1)], [], [unhealthy(1)]]

        for _ in range(3):
            await reconciler.escalate_unhealthy()

        assert mock_alerts.send.await_count == 2

    async def test_no_suspend_by_default(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_service: AsyncMock
    ) -> None:
        mock_store.list_unhealthy.return_value = [unhealthy(1)]

        await reconciler.escalate_unhealthy()

        mock_service.suspend.assert_not_awaited()

    async def test_suspends_when_enabled(
        self, make_reconciler, mock_store: AsyncMock, mock_service: AsyncMock
    ) -> None:
        reconciler = make_reconciler(suspend_unhealthy=True)
        mock_store.list_unhealthy.return_value = [unhealthy(1), unhealthy(2)]
        mock_service.suspend.side_effect = [ConflictError(ErrorCode.INVALID_STATE), None]

        assert await reconciler.escalate_unhealthy() == [1, 2]

        assert [c.args[0] for c in mock_service.suspend.await_args_list] == [1, 2]

    async def test_alert_failure_is_contained(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_alerts: AsyncMock
    ) -> None:
        mock_store.list_unhealthy.return_value = [unhealthy(1)]
        mock_alerts.send.side_effect = RuntimeError("webhook down")

        assert await reconciler.escalate_unhealthy() == [1]


class TestDetectOrphans:
    async def test_flags_without_deleting(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_alerts: AsyncMock,
        mock_runtime: AsyncMock,
    ) -> None:
        mock_store.list_orphaned_infrastructure.return_value = [
            InstanceInfrastructure(instance_id=7, container_id="ctr-7", network_id="net-7"),
        ]

        assert await reconciler.detect_orphans() == [7]
        assert await reconciler.detect_orphans() == [7]

        mock_alerts.send.assert_awaited_once()
        assert mock_alerts.send.await_args.args[0].details == {
            "container_id": "ctr-7",
            "network_id": "net-7",
        }
        mock_runtime.remove_container.assert_not_awaited()
        mock_store.clear_infrastructure.assert_not_awaited()


class TestRequeueStuck:
    async def test_requeues_stuck_and_stale(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_queue: AsyncMock
    ) -> None:
        mock_store.list_stuck_provisioning.return_value = [
            make_instance(1, InstanceStatus.PROVISIONING)
        ]
        mock_store.list_stale_pending.return_value = [make_instance(2, InstanceStatus.PENDING)]

        assert await reconciler.requeue_stuck() == [1, 2]

        assert [c.args[0] for c in mock_queue.enqueue.await_args_list] == [1, 2]

    async def test_nothing_stuck(
        self, reconciler: InstanceReconciler, mock_queue: AsyncMock
    ) -> None:
        assert await reconciler.requeue_stuck() == []
        mock_queue.enqueue.assert_not_awaited()


class TestDrift:
    async def test_running_without_infrastructure_fails(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock
    ) -> None:
        mock_store.list_running_without_infrastructure.return_value = [make_instance(1)]

        assert await reconciler.fail_missing_infrastructure() == [1]

        mock_store.update_status.assert_awaited_once_with(1, 3, InstanceStatus.FAILED)

    async def test_lost_cas_is_not_reported(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock
    ) -> None:
        mock_store.list_running_without_infrastructure.return_value = [make_instance(1)]
        mock_store.update_status.return_value = False

        assert await reconciler.fail_missing_infrastructure() == []


def running_with(**handles: str) -> InstanceAggregate:
    return InstanceAggregate(
        instance=make_instance(1),
        infrastructure=InstanceInfrastructure(instance_id=1, **handles),
    )


FULL_HANDLES = {"network_id": "net-1", "container_id": "ctr-1", "proxy_route_id": "route-1"}


class TestVerifyResources:
    """Network, container and proxy route of Running instances."""

    @pytest.fixture(autouse=True)
    def running(self, mock_store: AsyncMock) -> None:
        mock_store.list_instances.return_value = [make_instance(1)]
        mock_store.get_aggregate.return_value = running_with(**FULL_HANDLES)

    async def test_everything_present_is_left_alone(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_runtime: AsyncMock,
        mock_proxy: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        assert await reconciler.verify_resources() == []

        mock_runtime.verify_network_exists.assert_awaited_once_with("net-1")
        mock_runtime.verify_container_running.assert_awaited_once_with("ctr-1")
        mock_proxy.verify_route.assert_awaited_once_with("route-1")
        mock_store.update_status.assert_not_awaited()
        mock_alerts.send.assert_not_awaited()

    async def test_dead_container_fails_and_alerts(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_runtime: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_runtime.verify_container_running.return_value = False

        assert await reconciler.verify_resources() == [1]

        mock_store.update_status.assert_awaited_once_with(1, 3, InstanceStatus.FAILED)
        alert = mock_alerts.send.await_args.args[0]
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.details == {"issues": "container not running"}

    async def test_missing_network_fails(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_runtime: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_runtime.verify_network_exists.return_value = False

        assert await reconciler.verify_resources() == [1]

        mock_store.update_status.assert_awaited_once_with(1, 3, InstanceStatus.FAILED)
        assert mock_alerts.send.await_args.args[0].details == {"issues": "network missing"}

    async def test_both_issues_in_one_alert(
        self,
        reconciler: InstanceReconciler,
        mock_runtime: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_runtime.verify_network_exists.return_value = False
        mock_runtime.verify_container_running.return_value = False

        await reconciler.verify_resources()

        mock_alerts.send.assert_awaited_once()
        assert mock_alerts.send.await_args.args[0].details == {
            "issues": "network missing, container not running"
        }

    async def test_missing_container_handle_fails(
        self, reconciler: InstanceReconciler, mock_store: AsyncMock, mock_runtime: AsyncMock
    ) -> None:
        mock_store.get_aggregate.return_value = running_with(
            network_id="net-1", proxy_route_id="route-1"
        )

        assert await reconciler.verify_resources() == [1]
        mock_runtime.verify_container_running.assert_not_awaited()

    async def test_missing_route_alerts_without_failing(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_proxy: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_proxy.verify_route.return_value = False

        assert await reconciler.verify_resources() == []

        mock_store.update_status.assert_not_awaited()
        alert = mock_alerts.send.await_args.args[0]
        assert alert.title == "Proxy route missing"
        assert alert.severity == AlertSeverity.WARNING

    async def test_missing_route_alerts_once_per_incident(
        self,
        reconciler: InstanceReconciler,
        mock_proxy: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_proxy.verify_route.side_effect = [False, False, True, False]

        for _ in range(4):
            await reconciler.verify_resources()

        # Missing, still missing, restored, missing again
        assert mock_alerts.send.await_count == 2

    @pytest.mark.parametrize("check", ["network", "container", "route"])
    async def test_unreachable_api_is_not_drift(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_runtime: AsyncMock,
        mock_proxy: AsyncMock,
        mock_alerts: AsyncMock,
        check: str,
    ) -> None:
        failing = {
            "network": mock_runtime.verify_network_exists,
            "container": mock_runtime.verify_container_running,
            "route": mock_proxy.verify_route,
        }[check]
        failing.side_effect = ConnectionError("api down")

        assert await reconciler.verify_resources() == []
        mock_store.update_status.assert_not_awaited()
        mock_alerts.send.assert_not_awaited()

    async def test_lost_cas_is_not_alerted(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_runtime: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_runtime.verify_container_running.return_value = False
        mock_store.update_status.return_value = False

        assert await reconciler.verify_resources() == []
        mock_alerts.send.assert_not_awaited()

    async def test_verification_disabled(self, make_reconciler, mock_store: AsyncMock) -> None:
        reconciler = make_reconciler(verify_resources=False)

        assert await reconciler.verify_resources() == []
        mock_store.list_instances.assert_not_awaited()


class TestCapacity:
    async def test_low_watermark_alerts_once(
        self,
        reconciler: InstanceReconciler,
        mock_allocator: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_allocator.capacity.return_value = WorkerIdCounts(free=10, live=900, tombstoned=114)

        assert await reconciler.report_capacity() == 10
        await reconciler.report_capacity()

        mock_alerts.send.assert_awaited_once()
        assert mock_alerts.send.await_args.args[0].severity == AlertSeverity.WARNING

    async def test_exhausted_is_critical(
        self,
        reconciler: InstanceReconciler,
        mock_allocator: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_allocator.capacity.return_value = WorkerIdCounts(free=0, live=1000, tombstoned=24)

        await reconciler.report_capacity()

        assert mock_alerts.send.await_args.args[0].severity == AlertSeverity.CRITICAL

    async def test_healthy_capacity_is_quiet(
        self,
        reconciler: InstanceReconciler,
        mock_allocator: AsyncMock,
        mock_alerts: AsyncMock,
    ) -> None:
        mock_allocator.capacity.return_value = WorkerIdCounts(free=900, live=100, tombstoned=24)

        assert await reconciler.report_capacity() == 900
        mock_alerts.send.assert_not_awaited()


class TestTick:
    async def test_failing_duty_does_not_block_others(
        self,
        reconciler: InstanceReconciler,
        mock_store: AsyncMock,
        mock_allocator: AsyncMock,
    ) -> None:
        mock_store.list_unhealthy.side_effect = RuntimeError("db down")
        mock_allocator.capacity.return_value = WorkerIdCounts(free=900, live=100, tombstoned=24)

        await reconciler.tick()

        mock_store.list_orphaned_infrastructure.assert_awaited_once()
        mock_store.list_stuck_provisioning.assert_awaited_once()
        mock_store.count_by_status.assert_awaited_once()
