"""Tests for ProvisioningPipeline and its steps.

The store is real (SQLite); every infrastructure collaborator is a mock.
"""

import asyncio
import os
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tenanthub.app.config import ProvisioningConfig, TierConfig
from tenanthub.core.domain import InstanceStatus, StepStatus
from tenanthub.core.envelope import KeyRing
from tenanthub.core.errors import (
    ConflictError,
    ErrorCode,
    InfrastructureError,
    QuotaExceededError,
    ValidationError,
)
from tenanthub.core.interfaces import (
    ContainerRuntime,
    ContainerSpec,
    DatabaseManager,
    DnsProvider,
    ObjectStorageProvisioner,
    ProxyManager,
)
from tenanthub.core.models import utc_now
from tenanthub.infra.store import SQLAlchemyInstanceStore
from tenanthub.provisioning import (
    PROVISIONING_STEP_NAMES,
    ProvisioningPipeline,
    build_provisioning_steps,
)
from tenanthub.provisioning.steps import hash_token
from tenanthub.services.worker_ids import WorkerIdAllocator


@pytest.fixture
def runtime() -> AsyncMock:
    runtime = AsyncMock(spec=ContainerRuntime)
    runtime.create_network.return_value = "net-1"
    runtime.start_container.return_value = "ctr-1"
    runtime.verify_container_running.return_value = True
    return runtime


@pytest.fixture
def databases() -> AsyncMock:
    databases = AsyncMock(spec=DatabaseManager)
    databases.verify_database_exists.return_value = True
    return databases


@pytest.fixture
def storage() -> AsyncMock:
    return AsyncMock(spec=ObjectStorageProvisioner)


@pytest.fixture
def dns() -> AsyncMock:
    dns = AsyncMock(spec=DnsProvider)
    dns.create_a_record.return_value = "dns-1"
    return dns


@pytest.fixture
def proxy() -> AsyncMock:
    proxy = AsyncMock(spec=ProxyManager)
    proxy.create_route.return_value = "route-1"
    return proxy


@pytest.fixture
def keyring() -> KeyRing:
    return KeyRing(os.urandom(32))


@pytest.fixture
def config() -> ProvisioningConfig:
    return ProvisioningConfig(
        base_domain="tenanthub.local", public_ip="203.0.113.10", step_timeout_s=5.0
    )


@pytest.fixture
async def allocator(store: SQLAlchemyInstanceStore) -> WorkerIdAllocator:
    allocator = WorkerIdAllocator(store, space=16)
    await allocator.ensure_registry(reserved={0})
    return allocator


@pytest.fixture
def make_pipeline(store, allocator, keyring, runtime, databases, storage, dns, proxy):
    def _make(config: ProvisioningConfig) -> ProvisioningPipeline:
        steps = build_provisioning_steps(
            store=store,
            allocator=allocator,
            keyring=keyring,
            runtime=runtime,
            databases=databases,
            storage=storage,
            dns=dns,
            proxy=proxy,
            tiers=TierConfig(),
            config=config,
        )
        return ProvisioningPipeline(store, steps, config)

    return _make


@pytest.fixture
def pipeline(make_pipeline, config: ProvisioningConfig) -> ProvisioningPipeline:
    return make_pipeline(config)


@pytest.fixture
async def claimed(store: SQLAlchemyInstanceStore, make_instance) -> int:
    """A Pending instance claimed for provisioning."""
    await store.add_instance(make_instance())
    assert await store.claim_for_provisioning(1001, utc_now())
    return 1001


async def _step_events(store: SQLAlchemyInstanceStore, instance_id: int) -> list[tuple[str, str]]:
    return [(e.step_name, e.status) for e in await store.list_events(instance_id)]


class TestStepOrder:
    def test_order_is_fixed(self, pipeline: ProvisioningPipeline) -> None:
        assert pipeline.step_names == PROVISIONING_STEP_NAMES
        assert PROVISIONING_STEP_NAMES == (
            "ValidateSubdomain",
            "EnforceTierQuota",
            "GenerateSecrets",
            "AllocateWorkerId",
            "CreateNetwork",
            "ProvisionDatabase",
            "ProvisionStorageBucket",
            "StartContainer",
            "ConfigureDnsAndProxy",
        )


class TestSuccessfulRun:
    """A clean run ends Running with every handle recorded."""

    async def test_reaches_running(
        self, pipeline: ProvisioningPipeline, store: SQLAlchemyInstanceStore, claimed: int
    ) -> None:
        result = await pipeline.run(claimed)

        assert result.is_ok
        aggregate = await store.get_aggregate(claimed)
        assert aggregate.instance.status == InstanceStatus.RUNNING
        assert aggregate.instance.worker_id == 1
        infra = aggregate.infrastructure
        assert infra.network_id == "net-1"
        assert infra.database_name == "tenant_1001"
        assert infra.storage_bucket == "tenant-1001"
        assert infra.container_id == "ctr-1"
        assert infra.dns_record_id == "dns-1"
        assert infra.proxy_route_id == "route-1"

    async def test_events_started_then_succeeded(
        self, pipeline: ProvisioningPipeline, store: SQLAlchemyInstanceStore, claimed: int
    ) -> None:
        await pipeline.run(claimed)

        expected = []
        for name in PROVISIONING_STEP_NAMES:
            expected += [(name, StepStatus.STARTED), (name, StepStatus.SUCCEEDED)]
        assert await _step_events(store, claimed) == expected

    async def test_secrets_are_encrypted_at_rest(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        keyring: KeyRing,
        runtime: AsyncMock,
        claimed: int,
    ) -> None:
        await pipeline.run(claimed)

        infra = (await store.get_aggregate(claimed)).infrastructure
        spec: ContainerSpec = runtime.start_container.await_args.args[0]
        password = keyring.decrypt(infra.wrapped_dek, infra.database_password_encrypted)
        assert len(password) == 32
        assert password not in infra.database_password_encrypted
        assert spec.env["DATABASE_PASSWORD"] == password
        assert spec.env["STORAGE_SECRET_KEY"] == keyring.decrypt(
            infra.wrapped_dek, infra.storage_secret_key_encrypted
        )
        assert len(infra.bootstrap_token_hash) == 64

    async def test_container_spec(
        self, pipeline: ProvisioningPipeline, runtime: AsyncMock, claimed: int
    ) -> None:
        await pipeline.run(claimed)

        spec: ContainerSpec = runtime.start_container.await_args.args[0]
        assert spec.name == "tenant-acme-api"
        assert spec.network == "net-1"
        assert spec.memory_mb == 256
        assert spec.cpu_percent == 25
        assert spec.env["SNOWFLAKE_WORKER_ID"] == "1"
        assert spec.env["INSTANCE_DOMAIN"] == "acme.tenanthub.local"
        assert spec.labels["tenanthub.instance_id"] == "1001"

    async def test_dns_and_proxy_published_last(
        self, pipeline: ProvisioningPipeline, dns: AsyncMock, proxy: AsyncMock, claimed: int
    ) -> None:
        await pipeline.run(claimed)

        dns.create_a_record.assert_awaited_once_with("acme.tenanthub.local", "203.0.113.10")
        proxy.create_route.assert_awaited_once_with("acme.tenanthub.local", "tenant-acme-api:80")


class TestFailureStopsRun:
    """The first failing step marks the instance Failed; later steps never run."""

    @pytest.mark.parametrize(
        "step,mock_name,method",
        [
            ("CreateNetwork", "runtime", "create_network"),
            ("ProvisionDatabase", "databases", "create_database"),
            ("ProvisionStorageBucket", "storage", "create_bucket"),
            ("StartContainer", "runtime", "start_container"),
            ("ConfigureDnsAndProxy", "dns", "create_a_record"),
        ],
    )
    async def test_fault_at_step(
        self,
        request: pytest.FixtureRequest,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        claimed: int,
        step: str,
        mock_name: str,
        method: str,
    ) -> None:
        getattr(request.getfixturevalue(mock_name), method).side_effect = RuntimeError("boom")

        result = await pipeline.run(claimed)

        assert not result.is_ok
        assert isinstance(result.error, InfrastructureError)
        assert result.error.step == step
        assert "RuntimeError: boom" in result.error.message

        events = await _step_events(store, claimed)
        position = PROVISIONING_STEP_NAMES.index(step)
        assert [name for name, _ in events[::2]] == list(PROVISIONING_STEP_NAMES[: position + 1])
        assert events[-1] == (step, StepStatus.FAILED)
        assert (await store.get_aggregate(claimed)).instance.status == InstanceStatus.FAILED

    async def test_handles_before_failure_are_kept(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        runtime: AsyncMock,
        claimed: int,
    ) -> None:
        runtime.start_container.side_effect = RuntimeError("image pull failed")

        await pipeline.run(claimed)

        aggregate = await store.get_aggregate(claimed)
        assert aggregate.instance.worker_id is not None
        assert aggregate.infrastructure.network_id == "net-1"
        assert aggregate.infrastructure.storage_bucket == "tenant-1001"
        assert aggregate.infrastructure.container_id is None

    async def test_invalid_subdomain(
        self, pipeline: ProvisioningPipeline, store: SQLAlchemyInstanceStore, make_instance
    ) -> None:
        await store.add_instance(make_instance(domain="-bad-.tenanthub.local"))
        assert await store.claim_for_provisioning(1001, utc_now())

        result = await pipeline.run(1001)

        assert isinstance(result.error, ValidationError)
        assert result.error.code == ErrorCode.INVALID_SUBDOMAIN

    async def test_tier_quota(
        self, pipeline: ProvisioningPipeline, store: SQLAlchemyInstanceStore, make_instance
    ) -> None:
        """tier_10 allows one instance per owner."""
        await store.add_instance(make_instance(id=1, domain="first.tenanthub.local"))
        await store.add_instance(make_instance(id=2, domain="second.tenanthub.local"))
        assert await store.claim_for_provisioning(2, utc_now())

        result = await pipeline.run(2)

        assert isinstance(result.error, QuotaExceededError)
        assert result.error.code == ErrorCode.TIER_LIMIT_EXCEEDED

    async def test_database_owned_by_another_instance(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        databases: AsyncMock,
        claimed: int,
    ) -> None:
        databases.create_database.side_effect = ConflictError(
            ErrorCode.RESOURCE_OWNED_ELSEWHERE, "Database tenant_1001 exists"
        )

        result = await pipeline.run(claimed)

        assert result.error.code == ErrorCode.RESOURCE_OWNED_ELSEWHERE
        databases.create_database.assert_awaited_once_with("tenant_1001", "tenanthub-instance-1001")
        aggregate = await store.get_aggregate(claimed)
        # Never recorded, so destroy will not touch it
        assert aggregate.infrastructure.database_name is None
        assert aggregate.instance.status == InstanceStatus.FAILED

    async def test_database_verify_failure(
        self, pipeline: ProvisioningPipeline, databases: AsyncMock, claimed: int
    ) -> None:
        databases.verify_database_exists.return_value = False

        result = await pipeline.run(claimed)

        assert result.error.step == "ProvisionDatabase"

    async def test_container_not_running(
        self, pipeline: ProvisioningPipeline, runtime: AsyncMock, claimed: int
    ) -> None:
        runtime.verify_container_running.return_value = False

        result = await pipeline.run(claimed)

        assert result.error.step == "StartContainer"
        assert "not running" in result.error.message

    async def test_step_timeout(
        self, make_pipeline, runtime: AsyncMock, store: SQLAlchemyInstanceStore, claimed: int
    ) -> None:
        async def hang(name: str) -> str:
            await asyncio.sleep(10)
            return "net-1"

        runtime.create_network.side_effect = hang
        pipeline = make_pipeline(ProvisioningConfig(step_timeout_s=0.05))

        result = await pipeline.run(claimed)

        assert result.error.step == "CreateNetwork"
        assert "timed out" in result.error.message

    async def test_timeout_bounds_the_whole_step(
        self, make_pipeline, runtime: AsyncMock, claimed: int
    ) -> None:
        """Each call fits the budget on its own; together they do not."""

        async def slow_start(spec: ContainerSpec) -> str:
            await asyncio.sleep(0.07)
            return "ctr-1"

        async def slow_verify(container_id: str) -> bool:
            await asyncio.sleep(0.07)
            return True

        runtime.start_container.side_effect = slow_start
        runtime.verify_container_running.side_effect = slow_verify
        pipeline = make_pipeline(ProvisioningConfig(step_timeout_s=0.1))

        result = await pipeline.run(claimed)

        assert result.error.step == "StartContainer"
        assert "timed out" in result.error.message

    async def test_missing_instance(self, pipeline: ProvisioningPipeline) -> None:
        result = await pipeline.run(404)

        assert result.error.code == ErrorCode.INSTANCE_NOT_FOUND


class TestRerun:
    """A resumed run reuses recorded handles."""

    async def test_recorded_handles_are_not_recreated(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        runtime: AsyncMock,
        databases: AsyncMock,
        claimed: int,
    ) -> None:
        runtime.start_container.side_effect = [RuntimeError("transient"), "ctr-1"]
        await pipeline.run(claimed)
        failed = (await store.get_aggregate(claimed)).instance
        assert await store.update_status(claimed, failed.version, InstanceStatus.PROVISIONING)

        result = await pipeline.run(claimed)

        assert result.is_ok
        assert runtime.create_network.await_count == 1
        assert databases.create_database.await_count == 1
        aggregate = await store.get_aggregate(claimed)
        assert aggregate.instance.worker_id == failed.worker_id
        assert aggregate.infrastructure.container_id == "ctr-1"

    async def test_secrets_generated_once(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        dns: AsyncMock,
        claimed: int,
    ) -> None:
        dns.create_a_record.side_effect = [RuntimeError("api down"), "dns-1"]
        await pipeline.run(claimed)
        first = (await store.get_aggregate(claimed)).infrastructure.wrapped_dek
        instance = (await store.get_aggregate(claimed)).instance
        await store.update_status(claimed, instance.version, InstanceStatus.PROVISIONING)

        await pipeline.run(claimed)

        assert (await store.get_aggregate(claimed)).infrastructure.wrapped_dek == first


class TestConcurrentModification:
    async def test_lost_final_write(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        proxy: AsyncMock,
        claimed: int,
    ) -> None:
        """A status write that lands mid-run makes the final CAS fail."""

        async def interfere(domain: str, upstream: str) -> str:
            instance = (await store.get_aggregate(claimed)).instance
            await store.update_status(claimed, instance.version, InstanceStatus.FAILED)
            return "route-1"

        proxy.create_route.side_effect = interfere

        result = await pipeline.run(claimed)

        assert isinstance(result.error, ConflictError)
        assert result.error.code == ErrorCode.CONCURRENT_MODIFICATION
        assert (await store.get_aggregate(claimed)).instance.status == InstanceStatus.FAILED


class TestLease:
    """The run renews its lease before every step and stops once it is lost."""

    async def test_lease_is_renewed_during_run(
        self, pipeline: ProvisioningPipeline, store: SQLAlchemyInstanceStore, claimed: int
    ) -> None:
        claimed_at = (await store.get_aggregate(claimed)).instance.provisioning_started_at

        result = await pipeline.run(claimed)

        assert result.is_ok
        renewed_at = (await store.get_aggregate(claimed)).instance.provisioning_started_at
        assert renewed_at > claimed_at

    async def test_renewal_keeps_long_run_from_being_reclaimed(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        databases: AsyncMock,
        claimed: int,
    ) -> None:
        reclaimed = []

        async def other_consumer_tries(name: str, owner_tag: str) -> None:
            # Cutoff taken when the run started: only a renewed lease survives it
            reclaimed.append(await store.claim_for_provisioning(claimed, cutoff))

        cutoff = utc_now()
        databases.create_database.side_effect = other_consumer_tries

        result = await pipeline.run(claimed)

        assert reclaimed == [False]
        assert result.is_ok

    async def test_lost_lease_stops_run(
        self,
        pipeline: ProvisioningPipeline,
        store: SQLAlchemyInstanceStore,
        runtime: AsyncMock,
        databases: AsyncMock,
        claimed: int,
    ) -> None:
        async def taken_over(name: str) -> str:
            assert await store.claim_for_provisioning(claimed, utc_now() + timedelta(seconds=1))
            return "net-1"

        runtime.create_network.side_effect = taken_over

        result = await pipeline.run(claimed)

        assert isinstance(result.error, ConflictError)
        assert result.error.code == ErrorCode.CONCURRENT_MODIFICATION
        databases.create_database.assert_not_awaited()
        # The new owner keeps the instance; this run writes no Failed status
        assert (await store.get_aggregate(claimed)).instance.status == InstanceStatus.PROVISIONING
        assert (await _step_events(store, claimed))[-1] == ("CreateNetwork", StepStatus.SUCCEEDED)


def test_hash_token_is_sha256_hex() -> None:
    assert hash_token("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
