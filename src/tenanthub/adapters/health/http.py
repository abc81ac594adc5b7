"""HTTP health probe."""

import logging
import time

import httpx

from tenanthub.core.interfaces import HealthCheckVerifier, ProbeResult

logger = logging.getLogger(__name__)


class HttpHealthCheckVerifier(HealthCheckVerifier):
    """GET the health URL; any 2xx is healthy.

    A non-2xx answer still reports latency. Transport errors and timeouts
    report latency None.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def probe(self, url: str) -> ProbeResult:
        start = time.perf_counter()
        try:
            resp = await self._client.get(url)
        except httpx.TimeoutException:
            return ProbeResult(healthy=False, error="timeout")
        except httpx.HTTPError as e:
            return ProbeResult(healthy=False, error=f"{type(e).__name__}: {e}")

        latency_ms = int((time.perf_counter() - start) * 1000)
        if resp.is_success:
            return ProbeResult(healthy=True, latency_ms=latency_ms)
        return ProbeResult(
            healthy=False, latency_ms=latency_ms, error=f"HTTP {resp.status_code}"
        )

    async def close(self) -> None:
        await self._client.aclose()
