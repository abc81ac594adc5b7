"""Cloudflare API v4 DNS provider."""

import logging

import httpx

from tenanthub.app.config import DnsConfig, get_settings
from tenanthub.core.interfaces import DnsProvider
from tenanthub.core.retryable import retry_external

logger = logging.getLogger(__name__)

_BREAKER = "dns"


class CloudflareDnsProvider(DnsProvider):
    """A records in one Cloudflare zone.

    create_a_record reuses an existing record with the same name so a
    resumed provisioning run does not create duplicates.
    """

    def __init__(
        self,
        config: DnsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_settings().dns
        self._client = httpx.AsyncClient(
            base_url=self._config.api_url,
            headers={"Authorization": f"Bearer {self._config.api_token}"},
            timeout=self._config.timeout,
            transport=transport,
        )

    @property
    def _records_path(self) -> str:
        return f"/zones/{self._config.zone_id}/dns_records"

    async def create_a_record(self, domain: str, ip_address: str) -> str:
        existing = await retry_external(lambda: self._find_a_record(domain), _BREAKER)
        if existing is not None:
            logger.debug("DNS record already exists: %s (%s)", domain, existing)
            return existing

        payload = {
            "type": "A",
            "name": domain,
            "content": ip_address,
            "ttl": self._config.ttl,
            "proxied": self._config.proxied,
        }

        async def _create() -> str:
            resp = await self._client.post(self._records_path, json=payload)
            resp.raise_for_status()
            return resp.json()["result"]["id"]

        record_id = await retry_external(_create, _BREAKER)
        logger.info("Created DNS record: %s -> %s (%s)", domain, ip_address, record_id)
        return record_id

    async def delete_a_record(self, record_id: str) -> None:
        async def _delete() -> None:
            resp = await self._client.delete(f"{self._records_path}/{record_id}")
            if resp.status_code == 404:
                logger.debug("DNS record not found: %s", record_id)
                return
            resp.raise_for_status()

        await retry_external(_delete, _BREAKER)
        logger.info("Deleted DNS record: %s", record_id)

    async def _find_a_record(self, domain: str) -> str | None:
        resp = await self._client.get(self._records_path, params={"type": "A", "name": domain})
        resp.raise_for_status()
        records = resp.json().get("result") or []
        return records[0]["id"] if records else None

    async def close(self) -> None:
        await self._client.aclose()
