"""Shared fixtures for unit tests.

Store-backed tests run against a file-backed SQLite database (aiosqlite)
so each test sees real constraints: partial unique indexes, version-checked
updates and conditional worker-id claims.
"""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import tenanthub.core.models  # noqa: F401 - registers tables on SQLModel.metadata
from tenanthub.core.circuit_breaker import reset_all_circuit_breakers
from tenanthub.core.domain import InstanceStatus, InstanceTier
from tenanthub.core.models import ManagedInstance
from tenanthub.infra.store import SQLAlchemyInstanceStore


@pytest.fixture(autouse=True)
def reset_circuit_breakers() -> None:
    """Circuit breakers are process-global; start every test closed."""
    reset_all_circuit_breakers()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenanthub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SQLAlchemyInstanceStore:
    return SQLAlchemyInstanceStore(session_factory)


def _make_instance(
    id: int = 1001,
    domain: str = "acme.tenanthub.local",
    status: InstanceStatus = InstanceStatus.PENDING,
    owner_id: int = 42,
    tier: InstanceTier = InstanceTier.TIER_10,
    version: int = 0,
    **kwargs,
) -> ManagedInstance:
    return ManagedInstance(
        id=id,
        owner_id=owner_id,
        domain=domain,
        display_name=kwargs.pop("display_name", "Acme Inc"),
        tier=tier,
        status=status,
        version=version,
        **kwargs,
    )


@pytest.fixture
def make_instance():
    """Factory for ManagedInstance rows with sensible defaults."""
    return _make_instance
