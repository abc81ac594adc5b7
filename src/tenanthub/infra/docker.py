"""Docker Engine API client with Pydantic models.

Provides async Docker API access for containers, networks and images.
Supports both Unix socket and TCP (docker-proxy) connections.

Configuration via DockerConfig (DOCKER_ env prefix).
"""

import logging

import httpx
from pydantic import BaseModel

from tenanthub.app.config import get_settings
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_docker_config = get_settings().docker


# =============================================================================
# Pydantic Models
# =============================================================================


class HostConfig(BaseModel):
    """Docker HostConfig for container creation."""

    network_mode: str = "bridge"
    memory_mb: int | None = None
    cpu_percent: int | None = None
    restart_policy: str = "unless-stopped"

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {
            "NetworkMode": self.network_mode,
            "RestartPolicy": {"Name": self.restart_policy},
        }
        if self.memory_mb:
            result["Memory"] = self.memory_mb * 1024 * 1024
        if self.cpu_percent:
            # 100% = one full CPU
            result["NanoCpus"] = self.cpu_percent * 10_000_000
        return result


class ContainerConfig(BaseModel):
    """Docker container configuration for creation."""

    image: str
    name: str
    env: list[str] = []
    labels: dict[str, str] = {}
    host_config: HostConfig = HostConfig()

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        result: dict = {
            "Image": self.image,
            "HostConfig": self.host_config.to_api(),
        }
        if self.env:
            result["Env"] = self.env
        if self.labels:
            result["Labels"] = self.labels
        return result


class NetworkConfig(BaseModel):
    """Docker network configuration for creation."""

    name: str
    driver: str = "bridge"
    internal: bool = False
    labels: dict[str, str] = {}

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        result: dict = {
            "Name": self.name,
            "Driver": self.driver,
            "Internal": self.internal,
            "CheckDuplicate": True,
        }
        if self.labels:
            result["Labels"] = self.labels
        return result


# =============================================================================
# Docker Client (Singleton)
# =============================================================================


class DockerClient:
    """Async Docker API client.

    Supports Unix socket and TCP connections.
    Handles event loop changes (important for tests).
    """

    def __init__(
        self,
        docker_host: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = docker_host or _docker_config.host
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client."""
        if self._transport is not None:
            return httpx.AsyncClient(
                transport=self._transport,
                base_url="http://docker",
                timeout=_docker_config.api_timeout,
            )
        if self._host.startswith("unix://"):
            socket_path = self._host.replace("unix://", "")
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
            return httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=_docker_config.api_timeout,
            )
        base_url = self._host
        if base_url.startswith("tcp://"):
            base_url = base_url.replace("tcp://", "http://")
        return httpx.AsyncClient(base_url=base_url, timeout=_docker_config.api_timeout)

    async def get(self) -> httpx.AsyncClient:
        """Get or create the HTTP client.

        Recreates the client if the previous one was closed
        (e.g., due to event loop change in tests).
        """
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# Global singleton
_docker_client: DockerClient | None = None


def get_docker_client() -> DockerClient:
    """Get the global Docker client singleton."""
    global _docker_client
    if _docker_client is None:
        _docker_client = DockerClient()
    return _docker_client


async def close_docker() -> None:
    """Close the global Docker client."""
    global _docker_client
    if _docker_client:
        await _docker_client.close()
        _docker_client = None


# =============================================================================
# Container API
# =============================================================================


class ContainerAPI:
    """Docker Container API operations."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def inspect(self, name: str) -> dict | None:
        """Inspect a container.

        Returns:
            Container info dict or None if not found
        """
        client = await self._docker.get()
        resp = await client.get(f"/containers/{name}/json")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, config: ContainerConfig) -> str:
        """Create a container and return its id.

        Idempotent: an existing container with the same name is reused.
        """
        client = await self._docker.get()
        resp = await client.post(
            "/containers/create",
            params={"name": config.name},
            json=config.to_api(),
        )
        if resp.status_code == 409:
            logger.debug("Container already exists: %s", config.name)
            existing = await self.inspect(config.name)
            if existing is None:
                resp.raise_for_status()
            return existing["Id"]
        resp.raise_for_status()
        logger.info("Created container: %s", config.name)
        return resp.json()["Id"]

    async def start(self, name: str) -> None:
        client = await self._docker.get()
        resp = await client.post(f"/containers/{name}/start")
        if resp.status_code not in (204, 304):  # 304 = already started
            resp.raise_for_status()
        logger.info(
            "Started container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STARTED, "container": name},
        )

    async def stop(self, name: str, timeout: int | None = None) -> None:
        """Stop a container.

        Args:
            name: Container name or ID
            timeout: Seconds to wait before killing
        """
        if timeout is None:
            timeout = _docker_config.stop_timeout
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/stop",
            params={"t": str(timeout)},
            timeout=_docker_config.api_timeout + timeout,
        )
        if resp.status_code not in (204, 304, 404):  # 404 = not found, ok
            resp.raise_for_status()
        logger.info(
            "Stopped container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STOPPED, "container": name},
        )

    async def restart(self, name: str) -> None:
        timeout = _docker_config.stop_timeout
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/restart",
            params={"t": str(timeout)},
            timeout=_docker_config.api_timeout + timeout,
        )
        resp.raise_for_status()
        logger.info(
            "Restarted container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STARTED, "container": name},
        )

    async def remove(self, name: str, force: bool = True) -> None:
        client = await self._docker.get()
        resp = await client.delete(
            f"/containers/{name}", params={"force": "true" if force else "false"}
        )
        if resp.status_code == 404:
            logger.debug("Container not found: %s", name)
            return
        resp.raise_for_status()
        logger.info("Removed container: %s", name)


# =============================================================================
# Network API
# =============================================================================


class NetworkAPI:
    """Docker Network API operations."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def inspect(self, name: str) -> dict | None:
        client = await self._docker.get()
        resp = await client.get(f"/networks/{name}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, config: NetworkConfig) -> str:
        """Create a network and return its id (existing network is reused)."""
        client = await self._docker.get()
        resp = await client.post("/networks/create", json=config.to_api())
        if resp.status_code == 409:
            logger.debug("Network already exists: %s", config.name)
            existing = await self.inspect(config.name)
            if existing is None:
                resp.raise_for_status()
            return existing["Id"]
        resp.raise_for_status()
        logger.info("Created network: %s", config.name)
        return resp.json()["Id"]

    async def connect(self, network: str, container: str) -> None:
        client = await self._docker.get()
        resp = await client.post(
            f"/networks/{network}/connect", json={"Container": container}
        )
        # 403 = already connected
        if resp.status_code not in (200, 403):
            resp.raise_for_status()

    async def remove(self, name: str) -> None:
        client = await self._docker.get()
        resp = await client.delete(f"/networks/{name}")
        if resp.status_code == 404:
            logger.debug("Network not found: %s", name)
            return
        resp.raise_for_status()
        logger.info("Removed network: %s", name)


# =============================================================================
# Image API
# =============================================================================


class ImageAPI:
    """Docker Image API operations."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def exists(self, image_ref: str) -> bool:
        client = await self._docker.get()
        resp = await client.get(f"/images/{image_ref}/json")
        return resp.status_code == 200

    async def pull(self, image_ref: str) -> None:
        """Pull image from registry.

        Uses the streaming endpoint; the response is read until complete.
        """
        client = await self._docker.get()

        if ":" in image_ref.rsplit("/", 1)[-1]:
            image, tag = image_ref.rsplit(":", 1)
        else:
            image, tag = image_ref, "latest"

        logger.info("Pulling image: %s:%s", image, tag)
        resp = await client.post(
            "/images/create",
            params={"fromImage": image, "tag": tag},
        )
        resp.raise_for_status()
        logger.info("Pulled image: %s:%s", image, tag)

    async def ensure(self, image_ref: str) -> None:
        """Ensure image exists locally, pull if not."""
        if not await self.exists(image_ref):
            await self.pull(image_ref)
