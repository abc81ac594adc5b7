"""Shutdown notification to a tenant's own API."""

import logging

import httpx

from tenanthub.app.config import NotifierConfig, get_settings
from tenanthub.core.interfaces import InstanceNotifier
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class HttpInstanceNotifier(InstanceNotifier):
    """POSTs ``{"reason": ...}`` to ``https://{domain}{path}``.

    Failures are logged and dropped: a tenant that cannot be told is
    still suspended.
    """

    def __init__(
        self,
        config: NotifierConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_settings().notifier
        self._client = httpx.AsyncClient(timeout=self._config.timeout, transport=transport)

    async def notify_shutting_down(self, domain: str, reason: str) -> None:
        url = f"https://{domain}{self._config.path}"
        try:
            resp = await self._client.post(url, json={"reason": reason})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Shutdown notification failed for %s: %s",
                domain,
                e,
                extra={"event": LogEvent.NOTIFY_FAILED, "domain": domain},
            )
            return
        logger.debug("Notified %s of shutdown (%s)", domain, reason)

    async def close(self) -> None:
        await self._client.aclose()
