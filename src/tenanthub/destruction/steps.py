"""Destruction steps, in teardown order.

A step acts only when its handle is recorded and clears the handle once
the resource is gone. An infrastructure row that still holds handles
after its instance was destroyed is therefore an orphan.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import ClassVar

from tenanthub.core.interfaces import (
    ContainerRuntime,
    DnsProvider,
    InstanceStore,
    ObjectStorageProvisioner,
    ProxyManager,
)
from tenanthub.core.models import InstanceInfrastructure

SECRET_FIELDS = (
    "wrapped_dek",
    "database_password_encrypted",
    "storage_access_key",
    "storage_secret_key_encrypted",
    "bootstrap_token_hash",
)


class DestructionStep(ABC):
    name: ClassVar[str]
    # Infrastructure field that must be set for the step to act
    handle_field: ClassVar[str]

    def __init__(self, store: InstanceStore, timeout_s: float = 120.0) -> None:
        self._store = store
        self._timeout_s = timeout_s

    def applies_to(self, infra: InstanceInfrastructure | None) -> bool:
        return infra is not None and bool(getattr(infra, self.handle_field))

    @abstractmethod
    async def run(self, infra: InstanceInfrastructure) -> None:
        """Tear down the resource. Raises on failure."""
        ...

    async def _clear(self, infra: InstanceInfrastructure, *fields: str) -> None:
        await self._store.clear_infrastructure(infra.instance_id, *fields)
        for name in fields:
            setattr(infra, name, None)


class StopContainer(DestructionStep):
    name = "StopContainer"
    handle_field = "container_id"

    def __init__(self, store: InstanceStore, runtime: ContainerRuntime, timeout_s: float = 120.0):
        super().__init__(store, timeout_s)
        self._runtime = runtime

    async def run(self, infra: InstanceInfrastructure) -> None:
        # The handle stays until RemoveContainer
        await asyncio.wait_for(self._runtime.stop_container(infra.container_id), self._timeout_s)


class RemoveProxyRoute(DestructionStep):
    name = "RemoveProxyRoute"
    handle_field = "proxy_route_id"

    def __init__(self, store: InstanceStore, proxy: ProxyManager, timeout_s: float = 120.0):
        super().__init__(store, timeout_s)
        self._proxy = proxy

    async def run(self, infra: InstanceInfrastructure) -> None:
        await asyncio.wait_for(self._proxy.delete_route(infra.proxy_route_id), self._timeout_s)
        await self._clear(infra, "proxy_route_id")


class RemoveDnsRecord(DestructionStep):
    name = "RemoveDnsRecord"
    handle_field = "dns_record_id"

    def __init__(self, store: InstanceStore, dns: DnsProvider, timeout_s: float = 120.0):
        super().__init__(store, timeout_s)
        self._dns = dns

    async def run(self, infra: InstanceInfrastructure) -> None:
        await asyncio.wait_for(self._dns.delete_a_record(infra.dns_record_id), self._timeout_s)
        await self._clear(infra, "dns_record_id")


class RemoveContainer(DestructionStep):
    name = "RemoveContainer"
    handle_field = "container_id"

    def __init__(self, store: InstanceStore, runtime: ContainerRuntime, timeout_s: float = 120.0):
        super().__init__(store, timeout_s)
        self._runtime = runtime

    async def run(self, infra: InstanceInfrastructure) -> None:
        await asyncio.wait_for(self._runtime.remove_container(infra.container_id), self._timeout_s)
        await self._clear(infra, "container_id")


class RemoveSecrets(DestructionStep):
    """Erase stored key material. Local only, no external call."""

    name = "RemoveSecrets"
    handle_field = "wrapped_dek"

    def applies_to(self, infra: InstanceInfrastructure | None) -> bool:
        return infra is not None and any(getattr(infra, name) for name in SECRET_FIELDS)

    async def run(self, infra: InstanceInfrastructure) -> None:
        await self._clear(infra, *SECRET_FIELDS)


class RemoveNetwork(DestructionStep):
    name = "RemoveNetwork"
    handle_field = "network_id"

    def __init__(self, store: InstanceStore, runtime: ContainerRuntime, timeout_s: float = 120.0):
        super().__init__(store, timeout_s)
        self._runtime = runtime

    async def run(self, infra: InstanceInfrastructure) -> None:
        await asyncio.wait_for(self._runtime.remove_network(infra.network_id), self._timeout_s)
        await self._clear(infra, "network_id")


class DeleteStorageBucket(DestructionStep):
    name = "DeleteStorageBucket"
    handle_field = "storage_bucket"

    def __init__(
        self, store: InstanceStore, storage: ObjectStorageProvisioner, timeout_s: float = 120.0
    ):
        super().__init__(store, timeout_s)
        self._storage = storage

    async def run(self, infra: InstanceInfrastructure) -> None:
        await asyncio.wait_for(self._storage.delete_bucket(infra.storage_bucket), self._timeout_s)
        await self._clear(infra, "storage_bucket")


DESTRUCTION_STEP_NAMES: tuple[str, ...] = (
    StopContainer.name,
    RemoveProxyRoute.name,
    RemoveDnsRecord.name,
    RemoveContainer.name,
    RemoveSecrets.name,
    RemoveNetwork.name,
    DeleteStorageBucket.name,
)


def build_destruction_steps(
    *,
    store: InstanceStore,
    runtime: ContainerRuntime,
    dns: DnsProvider,
    proxy: ProxyManager,
    storage: ObjectStorageProvisioner,
    timeout_s: float = 120.0,
) -> tuple[DestructionStep, ...]:
    """The one place the teardown order is defined."""
    return (
        StopContainer(store, runtime, timeout_s),
        RemoveProxyRoute(store, proxy, timeout_s),
        RemoveDnsRecord(store, dns, timeout_s),
        RemoveContainer(store, runtime, timeout_s),
        RemoveSecrets(store, timeout_s),
        RemoveNetwork(store, runtime, timeout_s),
        DeleteStorageBucket(store, storage, timeout_s),
    )
