"""Instance domain enums and resource naming."""

import re
from enum import StrEnum


class InstanceStatus(StrEnum):
    """Instance lifecycle status.

    Transitions only move forward, except Suspended <-> Running.
    """

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    SUSPENDED = "Suspended"
    FAILED = "Failed"
    DESTROYED = "Destroyed"


class InstanceTier(StrEnum):
    """Tier keys of the quota table (TierConfig attribute names)."""

    TIER_10 = "tier_10"
    TIER_50 = "tier_50"
    TIER_100 = "tier_100"
    TIER_500 = "tier_500"


class ProvisioningPhase(StrEnum):
    PROVISION = "Provision"
    DESTROY = "Destroy"


class StepStatus(StrEnum):
    STARTED = "Started"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
SUBDOMAIN_MIN_LENGTH = 3
SUBDOMAIN_MAX_LENGTH = 63
DISPLAY_NAME_MAX_LENGTH = 255


def subdomain_error(subdomain: str) -> str | None:
    """Return why a subdomain label is invalid, or None if it is valid."""
    if not SUBDOMAIN_MIN_LENGTH <= len(subdomain) <= SUBDOMAIN_MAX_LENGTH:
        return (
            f"Subdomain must be {SUBDOMAIN_MIN_LENGTH}-{SUBDOMAIN_MAX_LENGTH} characters"
        )
    if not SUBDOMAIN_PATTERN.match(subdomain):
        return (
            "Subdomain may only contain lowercase letters, digits and hyphens, "
            "and must start and end with a letter or digit"
        )
    return None


def subdomain_of(domain: str) -> str:
    return domain.split(".", 1)[0]


class ResourceNames:
    """Deterministic names of per-instance infrastructure.

    Docker DNS resolves containers by name, so the proxy route and health
    probe address the container by the same name the runtime created.
    Database and bucket names carry the instance id: subdomains up to 63
    characters would overflow both identifier limits, and truncating them
    lets two tenants collide.
    """

    def __init__(
        self, instance_id: int, domain: str, resource_prefix: str, database_prefix: str
    ) -> None:
        self.instance_id = instance_id
        self.domain = domain
        self.subdomain = subdomain_of(domain)
        self._resource_prefix = resource_prefix
        self._database_prefix = database_prefix

    @property
    def network(self) -> str:
        return f"{self._resource_prefix}{self.subdomain}-net"

    @property
    def container(self) -> str:
        return f"{self._resource_prefix}{self.subdomain}-api"

    @property
    def bucket(self) -> str:
        return f"{self._resource_prefix}{self.instance_id}"

    @property
    def database(self) -> str:
        return f"{self._database_prefix}{self.instance_id}"

    @property
    def owner_tag(self) -> str:
        """Marks the database as created for this instance."""
        return f"tenanthub-instance-{self.instance_id}"
