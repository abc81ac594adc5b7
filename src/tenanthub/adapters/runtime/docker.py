"""Docker container runtime implementation."""

import logging

from tenanthub.app.config import get_settings
from tenanthub.core.interfaces import ContainerRuntime, ContainerSpec
from tenanthub.core.retryable import retry_external
from tenanthub.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    HostConfig,
    ImageAPI,
    NetworkAPI,
    NetworkConfig,
)

logger = logging.getLogger(__name__)

_BREAKER = "docker"
MANAGED_LABEL = "tenanthub.managed"


class DockerContainerRuntime(ContainerRuntime):
    """Tenant containers and networks via the Docker Engine API."""

    def __init__(
        self,
        containers: ContainerAPI | None = None,
        networks: NetworkAPI | None = None,
        images: ImageAPI | None = None,
    ) -> None:
        self._docker = get_settings().docker
        self._containers = containers or ContainerAPI()
        self._networks = networks or NetworkAPI()
        self._images = images or ImageAPI()

    async def create_network(self, name: str) -> str:
        config = NetworkConfig(name=name, labels={MANAGED_LABEL: "true"})
        return await retry_external(lambda: self._networks.create(config), _BREAKER)

    async def start_container(self, spec: ContainerSpec) -> str:
        await retry_external(lambda: self._images.ensure(spec.image), _BREAKER)

        config = ContainerConfig(
            image=spec.image,
            name=spec.name,
            env=[f"{key}={value}" for key, value in sorted(spec.env.items())],
            labels={MANAGED_LABEL: "true", **spec.labels},
            host_config=HostConfig(
                network_mode=spec.network,
                memory_mb=spec.memory_mb,
                cpu_percent=spec.cpu_percent,
            ),
        )
        container_id = await retry_external(lambda: self._containers.create(config), _BREAKER)

        # The proxy reaches tenants by container name on its own network
        if self._docker.proxy_network:
            await retry_external(
                lambda: self._networks.connect(self._docker.proxy_network, container_id),
                _BREAKER,
            )

        await retry_external(lambda: self._containers.start(container_id), _BREAKER)
        return container_id

    async def start_existing_container(self, container_id: str) -> None:
        await retry_external(lambda: self._containers.start(container_id), _BREAKER)

    async def restart_container(self, container_id: str) -> None:
        await retry_external(lambda: self._containers.restart(container_id), _BREAKER)

    async def stop_container(self, container_id: str) -> None:
        await retry_external(lambda: self._containers.stop(container_id), _BREAKER)

    async def remove_container(self, container_id: str) -> None:
        await retry_external(lambda: self._containers.remove(container_id), _BREAKER)

    async def remove_network(self, network_id: str) -> None:
        await retry_external(lambda: self._networks.remove(network_id), _BREAKER)

    async def verify_container_running(self, container_id: str) -> bool:
        data = await retry_external(lambda: self._containers.inspect(container_id), _BREAKER)
        if not data:
            return False
        return bool(data.get("State", {}).get("Running", False))

    async def verify_network_exists(self, network_id: str) -> bool:
        data = await retry_external(lambda: self._networks.inspect(network_id), _BREAKER)
        return data is not None

