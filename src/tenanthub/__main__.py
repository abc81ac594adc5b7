"""Control-plane process entry point: ``python -m tenanthub``."""

import asyncio
import logging

from tenanthub import __version__
from tenanthub.app.config import get_settings
from tenanthub.app.logging import setup_logging
from tenanthub.app.metrics import start_metrics_server
from tenanthub.control import run_control_plane
from tenanthub.core.logging_schema import LogEvent
from tenanthub.infra import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis

logger = logging.getLogger(__name__)


async def _run() -> None:
    await init_db()
    await init_redis()
    try:
        await run_control_plane(get_session_factory(), get_redis())
    finally:
        await close_redis()
        await close_db()


def main() -> None:
    setup_logging()
    settings = get_settings()

    if settings.metrics.enabled:
        start_metrics_server(settings.metrics.port)

    logger.info(
        "Starting tenanthub control plane %s",
        __version__,
        extra={"event": LogEvent.APP_STARTED, "version": __version__},
    )
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Interrupted", extra={"event": LogEvent.APP_STOPPED})


if __name__ == "__main__":
    main()
