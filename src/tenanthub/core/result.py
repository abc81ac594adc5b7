"""Explicit step outcomes.

Provisioning steps return ``Ok`` or ``Err`` instead of raising, so the
pipeline decides what to do by inspecting values.
"""

from dataclasses import dataclass
from typing import Generic, TypeAlias, TypeVar

from tenanthub.core.errors import TenantHubError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: TenantHubError

    @property
    def is_ok(self) -> bool:
        return False


Result: TypeAlias = Ok[T] | Err
