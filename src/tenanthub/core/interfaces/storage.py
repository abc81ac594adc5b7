"""Per-tenant database and object storage interfaces."""

from abc import ABC, abstractmethod


class DatabaseManager(ABC):
    """Interface for dedicated tenant databases.

    Implementations: PostgresDatabaseManager
    """

    @abstractmethod
    async def create_database(self, name: str, owner_tag: str) -> None:
        """Create a database tagged with owner_tag.

        An existing database with the same tag is reused; one without it
        raises ConflictError(RESOURCE_OWNED_ELSEWHERE).
        """
        ...

    @abstractmethod
    async def drop_database(self, name: str) -> None:
        """Drop a database. Missing is not an error."""
        ...

    @abstractmethod
    async def verify_database_exists(self, name: str) -> bool:
        ...


class ObjectStorageProvisioner(ABC):
    """Interface for dedicated tenant buckets.

    Implementations: S3BucketProvisioner
    """

    @abstractmethod
    async def create_bucket(self, name: str) -> None:
        """Create a bucket. Already owned is not an error."""
        ...

    @abstractmethod
    async def delete_bucket(self, name: str) -> None:
        """Empty and delete a bucket. Already absent is not an error."""
        ...
