"""Caddy admin API proxy manager.

Routes are appended to one HTTP server's route list and addressed
afterwards through Caddy's ``@id`` shortcut (``/id/{route_id}``).
"""

import logging
import re

import httpx

from tenanthub.app.config import ProxyConfig, get_settings
from tenanthub.core.interfaces import ProxyManager
from tenanthub.core.retryable import retry_external

logger = logging.getLogger(__name__)

_BREAKER = "proxy"
_ID_UNSAFE = re.compile(r"[^a-z0-9-]")


def route_id_for(domain: str) -> str:
    return "tenant-route-" + _ID_UNSAFE.sub("-", domain.lower())


class CaddyProxyManager(ProxyManager):
    def __init__(
        self,
        config: ProxyConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_settings().proxy
        self._client = httpx.AsyncClient(
            base_url=self._config.admin_url,
            timeout=self._config.timeout,
            transport=transport,
        )

    async def create_route(self, domain: str, upstream: str) -> str:
        route_id = route_id_for(domain)
        route = {
            "@id": route_id,
            "match": [{"host": [domain]}],
            "handle": [
                {
                    "handler": "reverse_proxy",
                    "upstreams": [{"dial": upstream}],
                }
            ],
            "terminal": True,
        }

        async def _create() -> None:
            existing = await self._client.get(f"/id/{route_id}")
            if existing.status_code == 200:
                # Replace in place so a changed upstream is picked up
                resp = await self._client.patch(f"/id/{route_id}", json=route)
            else:
                resp = await self._client.post(
                    f"/config/apps/http/servers/{self._config.server_name}/routes",
                    json=route,
                )
            resp.raise_for_status()

        await retry_external(_create, _BREAKER)
        logger.info("Configured proxy route: %s -> %s (%s)", domain, upstream, route_id)
        return route_id

    async def delete_route(self, route_id: str) -> None:
        async def _delete() -> None:
            resp = await self._client.delete(f"/id/{route_id}")
            if resp.status_code == 404:
                logger.debug("Proxy route not found: %s", route_id)
                return
            resp.raise_for_status()

        await retry_external(_delete, _BREAKER)
        logger.info("Deleted proxy route: %s", route_id)

    async def verify_route(self, route_id: str) -> bool:
        async def _lookup() -> bool:
            resp = await self._client.get(f"/id/{route_id}")
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
            return True

        return await retry_external(_lookup, _BREAKER)

    async def close(self) -> None:
        await self._client.aclose()
