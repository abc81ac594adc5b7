"""Dedicated tenant databases on a shared PostgreSQL server."""

import logging
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenanthub.app.config import get_settings
from tenanthub.core.errors import ConflictError, ErrorCode
from tenanthub.core.interfaces import DatabaseManager

logger = logging.getLogger(__name__)

_VALID_NAME = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_VALID_TAG = re.compile(r"^[a-z0-9-]{1,128}$")


class PostgresDatabaseManager(DatabaseManager):
    """CREATE/DROP DATABASE through an AUTOCOMMIT admin connection.

    CREATE DATABASE cannot run inside a transaction block, hence AUTOCOMMIT.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine or create_async_engine(
            get_settings().tenant_db.admin_url,
            isolation_level="AUTOCOMMIT",
            pool_size=2,
            max_overflow=0,
            pool_pre_ping=True,
        )

    def _quote(self, name: str) -> str:
        if not _VALID_NAME.match(name):
            raise ValueError(f"Invalid database name: {name!r}")
        return self._engine.dialect.identifier_preparer.quote_identifier(name)

    async def create_database(self, name: str, owner_tag: str) -> None:
        quoted = self._quote(name)
        tag = self._literal(owner_tag)
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    text(
                        "SELECT shobj_description(oid, 'pg_database') "
                        "FROM pg_database WHERE datname = :name"
                    ),
                    {"name": name},
                )
            ).first()
            if row is not None:
                if row[0] != owner_tag:
                    raise ConflictError(
                        ErrorCode.RESOURCE_OWNED_ELSEWHERE,
                        f"Database {name} exists and is owned by {row[0] or 'nobody'}",
                    )
                logger.debug("Database already exists: %s", name)
                return
            await conn.execute(text(f"CREATE DATABASE {quoted}"))
            await conn.execute(text(f"COMMENT ON DATABASE {quoted} IS {tag}"))
        logger.info("Created database: %s", name)

    def _literal(self, value: str) -> str:
        if not _VALID_TAG.match(value):
            raise ValueError(f"Invalid owner tag: {value!r}")
        return f"'{value}'"

    async def drop_database(self, name: str) -> None:
        quoted = self._quote(name)
        async with self._engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {quoted} WITH (FORCE)"))
        logger.info("Dropped database: %s", name)

    async def verify_database_exists(self, name: str) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name}
            )
            return result.scalar() is not None

    async def close(self) -> None:
        await self._engine.dispose()
