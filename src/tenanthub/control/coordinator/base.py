"""Coordinator infrastructure - base class for background loops.

Every control-plane replica runs every coordinator. There is no leader:
loops coordinate only through version-checked writes in the instance
store and the queue's consumer group, so a duplicate tick is harmless.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from enum import StrEnum

from tenanthub.app.config import get_settings
from tenanthub.app.logging import clear_trace_context, set_trace_id
from tenanthub.app.metrics.collector import (
    COORDINATOR_TICK_DURATION,
    COORDINATOR_TICK_ERRORS_TOTAL,
    COORDINATOR_TICK_TOTAL,
)
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class CoordinatorType(StrEnum):
    """Coordinator types, used as the metric label."""

    CONSUMER = "consumer"
    HEALTH = "health"
    RECONCILER = "reconciler"


class CoordinatorBase(ABC):
    """Base class for polling coordinators.

    Subclasses implement tick(). The loop gives each tick its own trace id,
    records tick metrics and keeps going after a failed tick; only
    cancellation stops it.
    """

    COORDINATOR_TYPE: CoordinatorType

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._running = False
        self._slow_threshold_ms = get_settings().logging.slow_threshold_ms

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def interval(self) -> float:
        return self._interval

    def stop(self) -> None:
        """Stop after the current tick."""
        self._running = False

    @abstractmethod
    async def tick(self) -> None:
        """Execute one cycle."""
        pass

    async def setup(self) -> None:
        """Hook run once before the first tick."""

    async def run(self) -> None:
        """Main coordinator loop."""
        self._running = True
        logger.info(
            "Starting coordinator %s",
            self.name,
            extra={"event": LogEvent.APP_STARTED, "interval": self._interval},
        )

        try:
            await self.setup()
            while self._running:
                if not await self._execute_tick():
                    break
                if self._running:
                    await asyncio.sleep(self._interval)
        finally:
            logger.info("Coordinator %s stopped", self.name, extra={"event": LogEvent.APP_STOPPED})

    async def _execute_tick(self) -> bool:
        """Execute tick. Returns False if cancelled."""
        label = str(self.COORDINATOR_TYPE)
        trace_id = set_trace_id()
        start = time.perf_counter()
        try:
            await self.tick()
            return True
        except asyncio.CancelledError:
            return False
        except Exception as e:
            COORDINATOR_TICK_ERRORS_TOTAL.labels(coordinator=label).inc()
            logger.exception(
                "Error in tick: %s",
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "trace_id": trace_id},
            )
            return True
        finally:
            duration = time.perf_counter() - start
            COORDINATOR_TICK_TOTAL.labels(coordinator=label).inc()
            COORDINATOR_TICK_DURATION.labels(coordinator=label).observe(duration)
            self._log_tick(duration * 1000)
            clear_trace_context()

    def _log_tick(self, duration_ms: float) -> None:
        if duration_ms >= self._slow_threshold_ms:
            logger.warning(
                "Slow tick",
                extra={"event": LogEvent.TICK_SLOW, "duration_ms": round(duration_ms, 1)},
            )
        else:
            logger.debug(
                "Tick complete",
                extra={"event": LogEvent.TICK_COMPLETE, "duration_ms": round(duration_ms, 1)},
            )
