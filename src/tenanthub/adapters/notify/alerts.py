"""Operator alert delivery."""

import logging

import httpx

from tenanthub.app.config import AlertsConfig, get_settings
from tenanthub.app.metrics.collector import ALERTS_SENT_TOTAL
from tenanthub.core.interfaces import Alert, AlertService, AlertSeverity
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.retryable import retry_external

logger = logging.getLogger(__name__)


def _alert_extra(alert: Alert) -> dict:
    return {
        "event": LogEvent.ALERT_SENT,
        "severity": str(alert.severity),
        "instance_id": alert.instance_id,
        **alert.details,
    }


class LogAlertService(AlertService):
    """Writes alerts to the log only (no webhook configured)."""

    async def send(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity == AlertSeverity.CRITICAL else logging.WARNING
        logger.log(level, "ALERT %s: %s", alert.title, alert.message, extra=_alert_extra(alert))
        ALERTS_SENT_TOTAL.labels(severity=str(alert.severity)).inc()


class WebhookAlertService(AlertService):
    """POSTs alerts as JSON to a webhook (Slack-compatible ``text`` field)."""

    def __init__(
        self,
        config: AlertsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_settings().alerts
        if not self._config.webhook_url:
            raise ValueError("WebhookAlertService requires ALERTS_WEBHOOK_URL")
        self._client = httpx.AsyncClient(timeout=self._config.timeout, transport=transport)

    async def send(self, alert: Alert) -> None:
        payload = {
            "text": f"[{alert.severity}] {alert.title}: {alert.message}",
            "title": alert.title,
            "message": alert.message,
            "severity": str(alert.severity),
            "instance_id": str(alert.instance_id) if alert.instance_id is not None else None,
            "details": alert.details,
        }

        async def _post() -> None:
            resp = await self._client.post(self._config.webhook_url, json=payload)
            resp.raise_for_status()

        await retry_external(_post, "alerts")
        logger.info("Alert sent: %s", alert.title, extra=_alert_extra(alert))
        ALERTS_SENT_TOTAL.labels(severity=str(alert.severity)).inc()

    async def close(self) -> None:
        await self._client.aclose()


def build_alert_service(config: AlertsConfig | None = None) -> AlertService:
    config = config or get_settings().alerts
    if config.webhook_url:
        return WebhookAlertService(config)
    return LogAlertService()
