"""Worker id allocation with permanent tombstoning.

Each instance gets its own Snowflake worker id. Ids are never reused:
destroying an instance tombstones its id forever, so ids minted by a
destroyed instance can never collide with ids from a later one.
"""

import logging
from collections.abc import Iterable

from tenanthub.app.metrics.collector import WORKER_IDS
from tenanthub.core.errors import ResourceExhaustedError
from tenanthub.core.interfaces import InstanceStore, WorkerIdCounts
from tenanthub.core.logging_schema import LogEvent
from tenanthub.core.models import utc_now
from tenanthub.core.snowflake import MAX_WORKER_ID

logger = logging.getLogger(__name__)

WORKER_ID_SPACE = MAX_WORKER_ID + 1


class WorkerIdAllocator:
    def __init__(self, store: InstanceStore, space: int = WORKER_ID_SPACE) -> None:
        if not 0 < space <= WORKER_ID_SPACE:
            raise ValueError(f"worker id space must be in 1..{WORKER_ID_SPACE}")
        self._store = store
        self._space = space

    async def ensure_registry(self, reserved: Iterable[int] = ()) -> None:
        """Seed registry rows (idempotent).

        ``reserved`` ids (e.g. the control plane's own generator) start
        tombstoned so no instance can ever share them.
        """
        inserted = await self._store.seed_worker_ids(self._space, reserved)
        if inserted:
            logger.info("Seeded %d worker id registry rows", inserted)

    async def allocate(self, instance_id: int) -> int:
        """Claim a worker id for the instance.

        Idempotent: an instance that already holds a live id gets it back.

        Raises:
            ResourceExhaustedError: No free, untombstoned id remains
        """
        while True:
            existing = await self._store.find_live_worker_id(instance_id)
            if existing is not None:
                return existing

            worker_id = await self._store.claim_free_worker_id(instance_id, utc_now())
            if worker_id is not None:
                logger.info(
                    "Allocated worker id %d",
                    worker_id,
                    extra={
                        "event": LogEvent.WORKER_ID_ALLOCATED,
                        "instance_id": instance_id,
                        "worker_id": worker_id,
                    },
                )
                return worker_id

            # Lost a race for the candidate row, or the space is used up
            counts = await self._store.count_worker_ids()
            if counts.free == 0:
                raise ResourceExhaustedError(
                    f"All {counts.total} worker ids are assigned or tombstoned"
                )

    async def tombstone(self, worker_id: int) -> None:
        """Permanently retire a worker id. Repeating is a no-op."""
        if await self._store.tombstone_worker_id(worker_id, utc_now()):
            logger.info(
                "Tombstoned worker id %d",
                worker_id,
                extra={"event": LogEvent.WORKER_ID_TOMBSTONED, "worker_id": worker_id},
            )

    async def capacity(self) -> WorkerIdCounts:
        counts = await self._store.count_worker_ids()
        WORKER_IDS.labels(state="free").set(counts.free)
        WORKER_IDS.labels(state="live").set(counts.live)
        WORKER_IDS.labels(state="tombstoned").set(counts.tombstoned)
        return counts
