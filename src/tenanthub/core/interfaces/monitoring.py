"""Probing, notification and alerting interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one health probe.

    latency_ms is None when the instance was unreachable.
    """

    healthy: bool
    latency_ms: int | None = None
    error: str | None = None


class HealthCheckVerifier(ABC):
    """Interface for instance health probes.

    Implementations: HttpHealthCheckVerifier
    """

    @abstractmethod
    async def probe(self, url: str) -> ProbeResult:
        """Probe a health endpoint. Never raises for transport errors."""
        ...


class InstanceNotifier(ABC):
    """Interface for telling a live tenant it is about to go down.

    Implementations: HttpInstanceNotifier
    """

    @abstractmethod
    async def notify_shutting_down(self, domain: str, reason: str) -> None:
        """Best effort. Implementations swallow their own failures."""
        ...


class AlertSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    title: str
    message: str
    severity: AlertSeverity = AlertSeverity.WARNING
    instance_id: int | None = None
    details: dict[str, str] = field(default_factory=dict)


class AlertService(ABC):
    """Interface for operator alerts.

    Implementations: WebhookAlertService, LogAlertService
    """

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        ...
