"""Provisioning steps.

Each step owns exactly one resource and persists the resource's handle on
the infrastructure record before returning, so a later failure never loses
what was already created. Steps report failures as ``Err`` values; only
unexpected exceptions from collaborators are converted here, into
``InfrastructureError`` tagged with the step name.

Steps are safe to re-run on a resumed provisioning run: a step whose
handle is already recorded skips its external call.
"""

import asyncio
import hashlib
import logging
import secrets
import string
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import ClassVar, TypeVar

from tenanthub.app.config import ProvisioningConfig, TierConfig
from tenanthub.core.domain import ResourceNames, subdomain_error, subdomain_of
from tenanthub.core.envelope import KeyRing, decrypt_field, encrypt_field
from tenanthub.core.errors import (
    ConflictError,
    ErrorCode,
    InfrastructureError,
    QuotaExceededError,
    TenantHubError,
    ValidationError,
)
from tenanthub.core.interfaces import (
    ContainerRuntime,
    ContainerSpec,
    DatabaseManager,
    DnsProvider,
    InstanceStore,
    ObjectStorageProvisioner,
    ProxyManager,
)
from tenanthub.core.models import InstanceAggregate, InstanceInfrastructure, ManagedInstance
from tenanthub.core.result import Err, Ok, Result
from tenanthub.services.worker_ids import WorkerIdAllocator

logger = logging.getLogger(__name__)

T = TypeVar("T")

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
ACCESS_KEY_ALPHABET = string.ascii_uppercase + string.digits
DATABASE_PASSWORD_LENGTH = 32
ACCESS_KEY_LENGTH = 20
SECRET_KEY_LENGTH = 40
BOOTSTRAP_TOKEN_BYTES = 32


def random_string(length: int, alphabet: str) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class StepContext:
    """State shared by the steps of one pipeline run."""

    aggregate: InstanceAggregate
    store: InstanceStore
    names: ResourceNames

    @property
    def instance(self) -> ManagedInstance:
        return self.aggregate.instance

    @property
    def infrastructure(self) -> InstanceInfrastructure | None:
        return self.aggregate.infrastructure

    def handle(self, name: str) -> str | None:
        infra = self.aggregate.infrastructure
        return getattr(infra, name) if infra is not None else None

    async def save(self, **fields: str) -> None:
        """Persist handles immediately and keep the in-memory aggregate current."""
        self.aggregate.infrastructure = await self.store.save_infrastructure(
            self.instance.id, **fields
        )


class ProvisioningStep(ABC):
    """One unit of infrastructure creation."""

    name: ClassVar[str]

    def __init__(self, timeout_s: float = 120.0) -> None:
        self._timeout_s = timeout_s

    async def execute(self, ctx: StepContext) -> Result[None]:
        try:
            result = await self._run(ctx)
            if result.is_ok:
                result = await self._verify(ctx)
            return result
        except TenantHubError as e:
            return Err(e)
        except asyncio.TimeoutError:
            return Err(InfrastructureError(self.name, f"timed out after {self._timeout_s:g}s"))
        except Exception as e:
            logger.exception("Step %s raised", self.name)
            return Err(InfrastructureError(self.name, f"{type(e).__name__}: {e}"))

    @abstractmethod
    async def _run(self, ctx: StepContext) -> Result[None]:
        ...

    async def _verify(self, ctx: StepContext) -> Result[None]:
        """Post-condition check after a successful run."""
        return Ok()

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Bound an external call by the step timeout."""
        return await asyncio.wait_for(awaitable, self._timeout_s)

    def _missing(self, what: str) -> Err:
        return Err(InfrastructureError(self.name, f"{what} is missing"))


# =============================================================================
# Steps, in provisioning order
# =============================================================================


class ValidateSubdomain(ProvisioningStep):
    name = "ValidateSubdomain"

    def __init__(self, store: InstanceStore, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._store = store

    async def _run(self, ctx: StepContext) -> Result[None]:
        domain = ctx.instance.domain
        error = subdomain_error(subdomain_of(domain))
        if error:
            return Err(ValidationError(error, ErrorCode.INVALID_SUBDOMAIN))
        if await self._store.domain_taken(domain, exclude_instance_id=ctx.instance.id):
            return Err(ConflictError(ErrorCode.SUBDOMAIN_TAKEN, f"Domain {domain} is already taken"))
        return Ok()


class EnforceTierQuota(ProvisioningStep):
    name = "EnforceTierQuota"

    def __init__(self, store: InstanceStore, tiers: TierConfig, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._store = store
        self._tiers = tiers

    async def _run(self, ctx: StepContext) -> Result[None]:
        limits = self._tiers.limits_for(ctx.instance.tier)
        if limits.max_instances < 0:
            return Ok()
        # Includes this instance
        count = await self._store.count_owner_instances(ctx.instance.owner_id)
        if count > limits.max_instances:
            return Err(
                QuotaExceededError(
                    f"Tier {ctx.instance.tier} allows {limits.max_instances} instance(s), "
                    f"owner has {count}"
                )
            )
        return Ok()


class GenerateSecrets(ProvisioningStep):
    name = "GenerateSecrets"

    def __init__(self, keyring: KeyRing, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._keyring = keyring

    async def _run(self, ctx: StepContext) -> Result[None]:
        if ctx.handle("wrapped_dek"):
            return Ok()

        dek, wrapped_dek = self._keyring.new_wrapped_dek()
        bootstrap_token = secrets.token_urlsafe(BOOTSTRAP_TOKEN_BYTES)

        await ctx.save(
            wrapped_dek=wrapped_dek,
            database_password_encrypted=encrypt_field(
                random_string(DATABASE_PASSWORD_LENGTH, PASSWORD_ALPHABET), dek
            ),
            storage_access_key=random_string(ACCESS_KEY_LENGTH, ACCESS_KEY_ALPHABET),
            storage_secret_key_encrypted=encrypt_field(
                random_string(SECRET_KEY_LENGTH, PASSWORD_ALPHABET), dek
            ),
            bootstrap_token_hash=hash_token(bootstrap_token),
        )
        return Ok()

    async def _verify(self, ctx: StepContext) -> Result[None]:
        for name in ("wrapped_dek", "database_password_encrypted", "storage_secret_key_encrypted"):
            if not ctx.handle(name):
                return self._missing(name)
        return Ok()


class AllocateWorkerId(ProvisioningStep):
    name = "AllocateWorkerId"

    def __init__(
        self, allocator: WorkerIdAllocator, store: InstanceStore, timeout_s: float = 120.0
    ) -> None:
        super().__init__(timeout_s)
        self._allocator = allocator
        self._store = store

    async def _run(self, ctx: StepContext) -> Result[None]:
        worker_id = await self._allocator.allocate(ctx.instance.id)
        if ctx.instance.worker_id != worker_id:
            await self._store.set_worker_id(ctx.instance.id, worker_id)
            ctx.instance.worker_id = worker_id
        return Ok()


class CreateNetwork(ProvisioningStep):
    name = "CreateNetwork"

    def __init__(self, runtime: ContainerRuntime, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._runtime = runtime

    async def _run(self, ctx: StepContext) -> Result[None]:
        if ctx.handle("network_id"):
            return Ok()
        network_id = await self._call(self._runtime.create_network(ctx.names.network))
        await ctx.save(network_id=network_id)
        return Ok()


class ProvisionDatabase(ProvisioningStep):
    name = "ProvisionDatabase"

    def __init__(self, databases: DatabaseManager, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._databases = databases

    async def _run(self, ctx: StepContext) -> Result[None]:
        if ctx.handle("database_name"):
            return Ok()
        name = ctx.names.database
        await self._call(self._databases.create_database(name, ctx.names.owner_tag))
        await ctx.save(database_name=name)
        return Ok()

    async def _verify(self, ctx: StepContext) -> Result[None]:
        name = ctx.handle("database_name")
        if not await self._call(self._databases.verify_database_exists(name)):
            return Err(InfrastructureError(self.name, f"database {name} does not exist"))
        return Ok()


class ProvisionStorageBucket(ProvisioningStep):
    name = "ProvisionStorageBucket"

    def __init__(self, storage: ObjectStorageProvisioner, timeout_s: float = 120.0) -> None:
        super().__init__(timeout_s)
        self._storage = storage

    async def _run(self, ctx: StepContext) -> Result[None]:
        if ctx.handle("storage_bucket"):
            return Ok()
        bucket = ctx.names.bucket
        await self._call(self._storage.create_bucket(bucket))
        await ctx.save(storage_bucket=bucket)
        return Ok()


class StartContainer(ProvisioningStep):
    """Start the tenant API container with secrets and tier limits."""

    name = "StartContainer"

    def __init__(
        self,
        runtime: ContainerRuntime,
        keyring: KeyRing,
        tiers: TierConfig,
        config: ProvisioningConfig,
        timeout_s: float = 120.0,
    ) -> None:
        super().__init__(timeout_s)
        self._runtime = runtime
        self._keyring = keyring
        self._tiers = tiers
        self._config = config

    async def _run(self, ctx: StepContext) -> Result[None]:
        infra = ctx.infrastructure
        instance = ctx.instance
        for name in ("wrapped_dek", "network_id", "database_name", "storage_bucket"):
            if not ctx.handle(name):
                return self._missing(name)
        if instance.worker_id is None:
            return self._missing("worker_id")

        dek = self._keyring.unwrap(infra.wrapped_dek)
        limits = self._tiers.limits_for(instance.tier)
        spec = ContainerSpec(
            name=ctx.names.container,
            image=self._config.instance_image,
            network=infra.network_id,
            env=self._environment(ctx, dek),
            labels={
                "tenanthub.instance_id": str(instance.id),
                "tenanthub.domain": instance.domain,
            },
            memory_mb=limits.memory_mb,
            cpu_percent=limits.cpu_percent,
        )
        container_id = await self._call(self._runtime.start_container(spec))
        if container_id != infra.container_id:
            await ctx.save(container_id=container_id)
        return Ok()

    def _environment(self, ctx: StepContext, dek: bytes) -> dict[str, str]:
        infra = ctx.infrastructure
        instance = ctx.instance
        return {
            "INSTANCE_ID": str(instance.id),
            "INSTANCE_DOMAIN": instance.domain,
            "INSTANCE_PORT": str(self._config.instance_port),
            "SNOWFLAKE_WORKER_ID": str(instance.worker_id),
            "DATABASE_NAME": infra.database_name,
            "DATABASE_PASSWORD": decrypt_field(infra.database_password_encrypted, dek),
            "STORAGE_BUCKET": infra.storage_bucket,
            "STORAGE_ACCESS_KEY": infra.storage_access_key or "",
            "STORAGE_SECRET_KEY": decrypt_field(infra.storage_secret_key_encrypted, dek),
            "BOOTSTRAP_TOKEN_HASH": infra.bootstrap_token_hash or "",
        }

    async def _verify(self, ctx: StepContext) -> Result[None]:
        container_id = ctx.handle("container_id")
        if not await self._call(self._runtime.verify_container_running(container_id)):
            return Err(InfrastructureError(self.name, f"container {container_id} is not running"))
        return Ok()


class ConfigureDnsAndProxy(ProvisioningStep):
    """Publish the instance. Runs last so nothing is reachable early."""

    name = "ConfigureDnsAndProxy"

    def __init__(
        self,
        dns: DnsProvider,
        proxy: ProxyManager,
        config: ProvisioningConfig,
        timeout_s: float = 120.0,
    ) -> None:
        super().__init__(timeout_s)
        self._dns = dns
        self._proxy = proxy
        self._config = config

    async def _run(self, ctx: StepContext) -> Result[None]:
        domain = ctx.instance.domain
        if not ctx.handle("dns_record_id"):
            record_id = await self._call(self._dns.create_a_record(domain, self._config.public_ip))
            await ctx.save(dns_record_id=record_id)
        if not ctx.handle("proxy_route_id"):
            upstream = f"{ctx.names.container}:{self._config.instance_port}"
            route_id = await self._call(self._proxy.create_route(domain, upstream))
            await ctx.save(proxy_route_id=route_id)
        return Ok()


# =============================================================================
# Composition
# =============================================================================

PROVISIONING_STEP_NAMES: tuple[str, ...] = (
    ValidateSubdomain.name,
    EnforceTierQuota.name,
    GenerateSecrets.name,
    AllocateWorkerId.name,
    CreateNetwork.name,
    ProvisionDatabase.name,
    ProvisionStorageBucket.name,
    StartContainer.name,
    ConfigureDnsAndProxy.name,
)


def build_provisioning_steps(
    *,
    store: InstanceStore,
    allocator: WorkerIdAllocator,
    keyring: KeyRing,
    runtime: ContainerRuntime,
    databases: DatabaseManager,
    storage: ObjectStorageProvisioner,
    dns: DnsProvider,
    proxy: ProxyManager,
    tiers: TierConfig,
    config: ProvisioningConfig,
) -> tuple[ProvisioningStep, ...]:
    """The one place the provisioning order is defined."""
    timeout = config.step_timeout_s
    return (
        ValidateSubdomain(store, timeout),
        EnforceTierQuota(store, tiers, timeout),
        GenerateSecrets(keyring, timeout),
        AllocateWorkerId(allocator, store, timeout),
        CreateNetwork(runtime, timeout),
        ProvisionDatabase(databases, timeout),
        ProvisionStorageBucket(storage, timeout),
        StartContainer(runtime, keyring, tiers, config, timeout),
        ConfigureDnsAndProxy(dns, proxy, config, timeout),
    )
