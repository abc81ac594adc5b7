"""Redis connection management.

The only Redis consumer is the provisioning queue (see redis_streams).
"""

import logging

import redis.asyncio as redis

from tenanthub.app.config import get_settings
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis() -> None:
    """Initialize Redis client."""
    global _client

    settings = get_settings()
    url = str(settings.redis.url)
    max_connections = settings.redis.max_connections

    _client = redis.from_url(
        url,
        decode_responses=True,
        max_connections=max_connections,
    )
    try:
        await _client.ping()
    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            extra={"event": LogEvent.REDIS_CONNECTION_ERROR, "error": str(e)},
        )
        raise
    logger.info(
        "Redis connected",
        extra={"event": LogEvent.REDIS_CONNECTED, "max_connections": max_connections},
    )


async def close_redis() -> None:
    """Close Redis client."""
    global _client

    if _client:
        await _client.aclose()
        _client = None
        logger.info("Redis disconnected")


def get_redis() -> redis.Redis:
    """Get the global Redis client."""
    if _client is None:
        raise RuntimeError("Redis not initialized")
    return _client
