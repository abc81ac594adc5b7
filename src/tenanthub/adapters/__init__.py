"""Concrete implementations of the collaborator interfaces."""

from tenanthub.adapters.database import PostgresDatabaseManager
from tenanthub.adapters.dns import CloudflareDnsProvider
from tenanthub.adapters.health import HttpHealthCheckVerifier
from tenanthub.adapters.notify import (
    HttpInstanceNotifier,
    LogAlertService,
    WebhookAlertService,
    build_alert_service,
)
from tenanthub.adapters.proxy import CaddyProxyManager
from tenanthub.adapters.runtime import DockerContainerRuntime
from tenanthub.adapters.storage import S3BucketProvisioner

__all__ = [
    "DockerContainerRuntime",
    "CloudflareDnsProvider",
    "CaddyProxyManager",
    "PostgresDatabaseManager",
    "S3BucketProvisioner",
    "HttpInstanceNotifier",
    "HttpHealthCheckVerifier",
    "LogAlertService",
    "WebhookAlertService",
    "build_alert_service",
]
