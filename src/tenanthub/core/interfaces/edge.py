"""Public edge interfaces: DNS records and reverse-proxy routes."""

from abc import ABC, abstractmethod


class DnsProvider(ABC):
    """Interface for tenant DNS records.

    Implementations: CloudflareDnsProvider
    """

    @abstractmethod
    async def create_a_record(self, domain: str, ip_address: str) -> str:
        """Create (or reuse) an A record.

        Returns:
            Provider record id
        """
        ...

    @abstractmethod
    async def delete_a_record(self, record_id: str) -> None:
        """Delete a record. Missing is not an error."""
        ...


class ProxyManager(ABC):
    """Interface for reverse-proxy routes to tenant containers.

    Implementations: CaddyProxyManager
    """

    @abstractmethod
    async def create_route(self, domain: str, upstream: str) -> str:
        """Route a host name to an upstream (host:port).

        Returns:
            Route id
        """
        ...

    @abstractmethod
    async def delete_route(self, route_id: str) -> None:
        """Delete a route. Missing is not an error."""
        ...

    @abstractmethod
    async def verify_route(self, route_id: str) -> bool:
        """Whether the route is still present in the proxy configuration."""
        ...
