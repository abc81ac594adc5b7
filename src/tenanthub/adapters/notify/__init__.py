from tenanthub.adapters.notify.alerts import (
    LogAlertService,
    WebhookAlertService,
    build_alert_service,
)
from tenanthub.adapters.notify.http import HttpInstanceNotifier

__all__ = [
    "HttpInstanceNotifier",
    "LogAlertService",
    "WebhookAlertService",
    "build_alert_service",
]
