"""Infrastructure connections (DB, Redis) and the durable store."""

from tenanthub.infra.postgresql import (
    close_db,
    get_session_factory,
    init_db,
)
from tenanthub.infra.redis import close_redis, get_redis, init_redis
from tenanthub.infra.redis_streams import RedisProvisioningQueue
from tenanthub.infra.store import SQLAlchemyInstanceStore

__all__ = [
    # DB
    "init_db",
    "close_db",
    "get_session_factory",
    # Redis
    "init_redis",
    "close_redis",
    "get_redis",
    "RedisProvisioningQueue",
    # Store
    "SQLAlchemyInstanceStore",
]
