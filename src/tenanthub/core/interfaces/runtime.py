"""Container runtime interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ContainerSpec:
    """What to run for one tenant."""

    name: str
    image: str
    network: str
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    memory_mb: int | None = None
    cpu_percent: int | None = None


class ContainerRuntime(ABC):
    """Interface for tenant container and network management.

    Implementations: DockerContainerRuntime
    """

    @abstractmethod
    async def create_network(self, name: str) -> str:
        """Create an isolated network (idempotent).

        Returns:
            Network id
        """
        ...

    @abstractmethod
    async def start_container(self, spec: ContainerSpec) -> str:
        """Create (if missing) and start a container.

        Returns:
            Container id
        """
        ...

    @abstractmethod
    async def start_existing_container(self, container_id: str) -> None:
        """Start a previously created, stopped container (resume)."""
        ...

    @abstractmethod
    async def restart_container(self, container_id: str) -> None:
        """Stop and start a container in place, keeping its id and config."""
        ...

    @abstractmethod
    async def stop_container(self, container_id: str) -> None:
        """Stop a container. Already stopped or missing is not an error."""
        ...

    @abstractmethod
    async def remove_container(self, container_id: str) -> None:
        """Remove a container. Missing is not an error."""
        ...

    @abstractmethod
    async def remove_network(self, network_id: str) -> None:
        """Remove a network. Missing is not an error."""
        ...

    @abstractmethod
    async def verify_container_running(self, container_id: str) -> bool:
        ...

    @abstractmethod
    async def verify_network_exists(self, network_id: str) -> bool:
        ...
