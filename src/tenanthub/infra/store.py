"""SQLAlchemy implementation of the instance store.

Each method runs in its own short session and commits before returning,
so no transaction is held across infrastructure calls.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.core.domain import InstanceStatus
from tenanthub.core.errors import ConflictError, ErrorCode
from tenanthub.core.interfaces.store import InstanceStore, WorkerIdCounts
from tenanthub.core.models import (
    INFRASTRUCTURE_FIELDS,
    InstanceAggregate,
    InstanceHealth,
    InstanceInfrastructure,
    ManagedInstance,
    ProvisioningEvent,
    WorkerIdRegistry,
    utc_now,
)

logger = logging.getLogger(__name__)


def _live_instance():
    return ManagedInstance.deleted_at.is_(None)


def _free_worker_id():
    return and_(
        WorkerIdRegistry.assigned_instance_id.is_(None),
        WorkerIdRegistry.is_tombstoned.is_(False),
    )


class SQLAlchemyInstanceStore(InstanceStore):
    """Instance store backed by PostgreSQL (SQLite for tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # =========================================================================
    # Instances
    # =========================================================================

    async def add_instance(self, instance: ManagedInstance) -> None:
        async with self._session_factory() as session:
            session.add(instance)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                # Partial unique index on live domains lost a race
                raise ConflictError(
                    ErrorCode.SUBDOMAIN_TAKEN, f"Domain {instance.domain} is already taken"
                ) from e

    async def get_aggregate(self, instance_id: int) -> InstanceAggregate | None:
        stmt = (
            select(ManagedInstance, InstanceInfrastructure, InstanceHealth)
            .outerjoin(
                InstanceInfrastructure,
                InstanceInfrastructure.instance_id == ManagedInstance.id,
            )
            .outerjoin(InstanceHealth, InstanceHealth.instance_id == ManagedInstance.id)
            .where(ManagedInstance.id == instance_id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        instance, infrastructure, health = row
        return InstanceAggregate(instance=instance, infrastructure=infrastructure, health=health)

    async def domain_taken(self, domain: str, exclude_instance_id: int | None = None) -> bool:
        stmt = (
            select(func.count())
            .select_from(ManagedInstance)
            .where(ManagedInstance.domain == domain, _live_instance())
        )
        if exclude_instance_id is not None:
            stmt = stmt.where(ManagedInstance.id != exclude_instance_id)
        async with self._session_factory() as session:
            count = (await session.execute(stmt)).scalar_one()
        return count > 0

    async def count_owner_instances(self, owner_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(ManagedInstance)
            .where(ManagedInstance.owner_id == owner_id, _live_instance())
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def list_instances(self, statuses: Iterable[InstanceStatus]) -> list[ManagedInstance]:
        stmt = (
            select(ManagedInstance)
            .where(
                ManagedInstance.status.in_([str(s) for s in statuses]),
                _live_instance(),
            )
            .order_by(ManagedInstance.created_at)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_stuck_provisioning(self, cutoff: datetime) -> list[ManagedInstance]:
        stmt = (
            select(ManagedInstance)
            .where(
                ManagedInstance.status == InstanceStatus.PROVISIONING,
                _live_instance(),
                or_(
                    ManagedInstance.provisioning_started_at < cutoff,
                    and_(
                        ManagedInstance.provisioning_started_at.is_(None),
                        ManagedInstance.created_at < cutoff,
                    ),
                ),
            )
            .order_by(ManagedInstance.created_at)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def count_by_status(self) -> dict[InstanceStatus, int]:
        stmt = (
            select(ManagedInstance.status, func.count(ManagedInstance.id))
            .where(_live_instance())
            .group_by(ManagedInstance.status)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {InstanceStatus(status): count for status, count in rows}

    async def list_stale_pending(self, cutoff: datetime) -> list[ManagedInstance]:
        stmt = (
            select(ManagedInstance)
            .where(
                ManagedInstance.status == InstanceStatus.PENDING,
                _live_instance(),
                ManagedInstance.created_at < cutoff,
            )
            .order_by(ManagedInstance.created_at)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_running_without_infrastructure(self) -> list[ManagedInstance]:
        stmt = (
            select(ManagedInstance)
            .outerjoin(
                InstanceInfrastructure,
                InstanceInfrastructure.instance_id == ManagedInstance.id,
            )
            .where(
                ManagedInstance.status == InstanceStatus.RUNNING,
                _live_instance(),
                InstanceInfrastructure.id.is_(None),
            )
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_status(
        self,
        instance_id: int,
        expected_version: int,
        status: InstanceStatus,
        deleted_at: datetime | None = None,
    ) -> bool:
        values: dict = {
            "status": str(status),
            "version": ManagedInstance.version + 1,
            "updated_at": utc_now(),
        }
        if deleted_at is not None:
            values["deleted_at"] = deleted_at
        stmt = (
            update(ManagedInstance)
            .where(
                ManagedInstance.id == instance_id,
                ManagedInstance.version == expected_version,
            )
            .values(**values)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def claim_for_provisioning(self, instance_id: int, lease_cutoff: datetime) -> bool:
        now = utc_now()
        stmt = (
            update(ManagedInstance)
            .where(
                ManagedInstance.id == instance_id,
                _live_instance(),
                or_(
                    ManagedInstance.status == InstanceStatus.PENDING,
                    and_(
                        ManagedInstance.status == InstanceStatus.PROVISIONING,
                        or_(
                            ManagedInstance.provisioning_started_at.is_(None),
                            ManagedInstance.provisioning_started_at < lease_cutoff,
                        ),
                    ),
                ),
            )
            .values(
                status=str(InstanceStatus.PROVISIONING),
                version=ManagedInstance.version + 1,
                provisioning_started_at=now,
                updated_at=now,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def renew_provisioning_lease(self, instance_id: int, expected_version: int) -> bool:
        stmt = (
            update(ManagedInstance)
            .where(
                ManagedInstance.id == instance_id,
                ManagedInstance.version == expected_version,
                ManagedInstance.status == InstanceStatus.PROVISIONING,
            )
            .values(provisioning_started_at=utc_now())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def set_worker_id(self, instance_id: int, worker_id: int) -> None:
        stmt = (
            update(ManagedInstance)
            .where(ManagedInstance.id == instance_id)
            .values(worker_id=worker_id, updated_at=utc_now())
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    # =========================================================================
    # Infrastructure
    # =========================================================================

    async def save_infrastructure(self, instance_id: int, **fields: str) -> InstanceInfrastructure:
        unknown = set(fields) - INFRASTRUCTURE_FIELDS
        if unknown:
            raise ValueError(f"Unknown infrastructure fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            result = await session.execute(
                select(InstanceInfrastructure).where(
                    InstanceInfrastructure.instance_id == instance_id
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = InstanceInfrastructure(instance_id=instance_id)
                session.add(record)
            for name, value in fields.items():
                setattr(record, name, value)
            record.updated_at = utc_now()
            await session.commit()
        return record

    async def clear_infrastructure(self, instance_id: int, *fields: str) -> None:
        unknown = set(fields) - INFRASTRUCTURE_FIELDS
        if unknown:
            raise ValueError(f"Unknown infrastructure fields: {sorted(unknown)}")
        stmt = (
            update(InstanceInfrastructure)
            .where(InstanceInfrastructure.instance_id == instance_id)
            .values(updated_at=utc_now(), **{name: None for name in fields})
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def list_orphaned_infrastructure(self) -> list[InstanceInfrastructure]:
        holds_handles = or_(
            InstanceInfrastructure.container_id.is_not(None),
            InstanceInfrastructure.network_id.is_not(None),
            InstanceInfrastructure.storage_bucket.is_not(None),
            InstanceInfrastructure.dns_record_id.is_not(None),
            InstanceInfrastructure.proxy_route_id.is_not(None),
        )
        stmt = (
            select(InstanceInfrastructure)
            .outerjoin(
                ManagedInstance,
                ManagedInstance.id == InstanceInfrastructure.instance_id,
            )
            .where(
                holds_handles,
                or_(
                    ManagedInstance.id.is_(None),
                    ManagedInstance.deleted_at.is_not(None),
                    ManagedInstance.status == InstanceStatus.DESTROYED,
                ),
            )
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # =========================================================================
    # Audit
    # =========================================================================

    async def append_event(self, event: ProvisioningEvent) -> None:
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()

    async def list_events(self, instance_id: int) -> list[ProvisioningEvent]:
        stmt = (
            select(ProvisioningEvent)
            .where(ProvisioningEvent.instance_id == instance_id)
            .order_by(ProvisioningEvent.id)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # =========================================================================
    # Health
    # =========================================================================

    async def get_health(self, instance_id: int) -> InstanceHealth | None:
        async with self._session_factory() as session:
            return await session.get(InstanceHealth, instance_id)

    async def save_health(self, health: InstanceHealth) -> None:
        async with self._session_factory() as session:
            await session.merge(health)
            await session.commit()

    async def list_unhealthy(self, threshold: int) -> list[InstanceAggregate]:
        stmt = (
            select(ManagedInstance, InstanceHealth)
            .join(InstanceHealth, InstanceHealth.instance_id == ManagedInstance.id)
            .where(
                ManagedInstance.status == InstanceStatus.RUNNING,
                _live_instance(),
                InstanceHealth.consecutive_failures > threshold,
            )
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [InstanceAggregate(instance=instance, health=health) for instance, health in rows]

    # =========================================================================
    # Worker ids
    # =========================================================================

    async def seed_worker_ids(self, size: int, reserved: Iterable[int] = ()) -> int:
        reserved = set(reserved)
        now = utc_now()
        async with self._session_factory() as session:
            existing = set((await session.execute(select(WorkerIdRegistry.worker_id))).scalars())
            rows = [
                WorkerIdRegistry(
                    worker_id=worker_id,
                    is_tombstoned=worker_id in reserved,
                    released_at=now if worker_id in reserved else None,
                )
                for worker_id in range(size)
                if worker_id not in existing
            ]
            session.add_all(rows)
            if reserved:
                await session.execute(
                    update(WorkerIdRegistry)
                    .where(WorkerIdRegistry.worker_id.in_(reserved), _free_worker_id())
                    .values(is_tombstoned=True, released_at=now)
                )
            await session.commit()
        return len(rows)

    async def find_live_worker_id(self, instance_id: int) -> int | None:
        stmt = select(WorkerIdRegistry.worker_id).where(
            WorkerIdRegistry.assigned_instance_id == instance_id,
            WorkerIdRegistry.is_tombstoned.is_(False),
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def claim_free_worker_id(self, instance_id: int, now: datetime) -> int | None:
        # Row locks are skipped so concurrent claimers move on to the next id;
        # the outer WHERE re-checks the row is still free (compare-and-set).
        candidate = (
            select(WorkerIdRegistry.worker_id)
            .where(_free_worker_id())
            .order_by(WorkerIdRegistry.worker_id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(WorkerIdRegistry)
            .where(WorkerIdRegistry.worker_id == candidate, _free_worker_id())
            .values(assigned_instance_id=instance_id, allocated_at=now, released_at=None)
            .returning(WorkerIdRegistry.worker_id)
        )
        async with self._session_factory() as session:
            try:
                claimed = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
            except IntegrityError:
                # Instance already holds a live id (concurrent allocate)
                await session.rollback()
                return None
        return claimed

    async def tombstone_worker_id(self, worker_id: int, now: datetime) -> bool:
        stmt = (
            update(WorkerIdRegistry)
            .where(
                WorkerIdRegistry.worker_id == worker_id,
                WorkerIdRegistry.is_tombstoned.is_(False),
            )
            .values(is_tombstoned=True, released_at=now, assigned_instance_id=None)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def count_worker_ids(self) -> WorkerIdCounts:
        tombstoned = WorkerIdRegistry.is_tombstoned.is_(True)
        live = and_(
            WorkerIdRegistry.assigned_instance_id.is_not(None),
            WorkerIdRegistry.is_tombstoned.is_(False),
        )
        stmt = select(
            func.sum(case((_free_worker_id(), 1), else_=0)),
            func.sum(case((live, 1), else_=0)),
            func.sum(case((tombstoned, 1), else_=0)),
        )
        async with self._session_factory() as session:
            free, live_count, tombstoned_count = (await session.execute(stmt)).one()
        return WorkerIdCounts(
            free=int(free or 0),
            live=int(live_count or 0),
            tombstoned=int(tombstoned_count or 0),
        )
