"""Snowflake ID generation.

Layout of a 63-bit id (most significant first):

    [timestamp ms since 2026-01-01T00:00:00Z: 41 bits][worker id: 10 bits][sequence: 12 bits]

One generator per worker id. ``next_id`` is safe to call from several
threads or tasks on the same generator.
"""

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from tenanthub.core.errors import ClockDriftError, RangeError

EPOCH = datetime(2026, 1, 1, tzinfo=UTC)
EPOCH_MS = int(EPOCH.timestamp() * 1000)

TIMESTAMP_BITS = 41
WORKER_ID_BITS = 10
SEQUENCE_BITS = 12

MAX_WORKER_ID = (1 << WORKER_ID_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1
MAX_TIMESTAMP = (1 << TIMESTAMP_BITS) - 1

WORKER_ID_SHIFT = SEQUENCE_BITS
TIMESTAMP_SHIFT = SEQUENCE_BITS + WORKER_ID_BITS


def _unix_ms() -> int:
    return time.time_ns() // 1_000_000


class SnowflakeGenerator:
    """Time-ordered unique id generator for one worker id.

    Args:
        worker_id: Generator identity in [0, 1023]
        max_clock_drift_ms: Longest backwards clock jump that is waited out
            before ClockDriftError is raised
        clock: Returns Unix time in milliseconds (injectable for tests)
        sleep: Blocking sleep in seconds (injectable for tests)

    Raises:
        RangeError: If worker_id is outside [0, 1023]
    """

    def __init__(
        self,
        worker_id: int,
        max_clock_drift_ms: int = 5000,
        clock: Callable[[], int] = _unix_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not 0 <= worker_id <= MAX_WORKER_ID:
            raise RangeError(f"Worker ID must be between 0 and {MAX_WORKER_ID}, got {worker_id}")

        self._worker_id = worker_id
        self._max_clock_drift_ms = max_clock_drift_ms
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._last_timestamp = -1
        self._sequence = 0

    @property
    def worker_id(self) -> int:
        return self._worker_id

    def next_id(self) -> int:
        """Return the next id.

        Raises:
            ClockDriftError: If the clock stays behind the last issued
                timestamp for longer than max_clock_drift_ms
        """
        waited_ms = 0
        while True:
            with self._lock:
                now = self._clock() - EPOCH_MS
                if now >= self._last_timestamp:
                    return self._issue(now)
                behind = self._last_timestamp - now

            if waited_ms + behind > self._max_clock_drift_ms:
                raise ClockDriftError(
                    f"Clock moved backwards by {behind}ms "
                    f"(waited {waited_ms}ms, tolerance {self._max_clock_drift_ms}ms)"
                )
            # Sleep outside the lock so other callers can observe the same drift
            self._sleep(behind / 1000)
            waited_ms += behind

    def _issue(self, timestamp: int) -> int:
        """Advance bookkeeping and pack the id. Caller holds the lock."""
        if timestamp == self._last_timestamp:
            self._sequence = (self._sequence + 1) & MAX_SEQUENCE
            if self._sequence == 0:
                timestamp = self._wait_next_millis(self._last_timestamp)
        else:
            self._sequence = 0

        if timestamp > MAX_TIMESTAMP:
            raise ClockDriftError("Timestamp exceeds the 41-bit Snowflake range")

        self._last_timestamp = timestamp
        return (
            (timestamp << TIMESTAMP_SHIFT)
            | (self._worker_id << WORKER_ID_SHIFT)
            | self._sequence
        )

    def _wait_next_millis(self, last_timestamp: int) -> int:
        timestamp = self._clock() - EPOCH_MS
        while timestamp <= last_timestamp:
            timestamp = self._clock() - EPOCH_MS
        return timestamp


def get_worker_id_from_id(snowflake_id: int) -> int:
    return (snowflake_id >> WORKER_ID_SHIFT) & MAX_WORKER_ID


def get_sequence_from_id(snowflake_id: int) -> int:
    return snowflake_id & MAX_SEQUENCE


def get_timestamp_from_id(snowflake_id: int) -> datetime:
    """Return the UTC creation time encoded in an id."""
    return EPOCH + timedelta(milliseconds=snowflake_id >> TIMESTAMP_SHIFT)
