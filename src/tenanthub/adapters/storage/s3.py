"""Per-tenant S3 buckets."""

import logging
from collections.abc import Callable

from botocore.exceptions import ClientError

from tenanthub.core.interfaces import ObjectStorageProvisioner
from tenanthub.core.retryable import retry_external
from tenanthub.infra.s3 import S3ClientContext, get_s3_client

logger = logging.getLogger(__name__)

_BREAKER = "storage"
_ALREADY_OWNED = frozenset({"BucketAlreadyOwnedByYou"})
_NOT_FOUND = frozenset({"NoSuchBucket", "404", "NotFound"})
_DELETE_BATCH = 1000  # DeleteObjects limit


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class S3BucketProvisioner(ObjectStorageProvisioner):
    def __init__(self, client_factory: Callable[[], S3ClientContext] = get_s3_client) -> None:
        self._client_factory = client_factory

    async def create_bucket(self, name: str) -> None:
        async def _create() -> None:
            async with self._client_factory() as s3:
                try:
                    await s3.create_bucket(Bucket=name)
                except ClientError as e:
                    if _error_code(e) in _ALREADY_OWNED:
                        logger.debug("Bucket already exists: %s", name)
                        return
                    raise
            logger.info("Created bucket: %s", name)

        await retry_external(_create, _BREAKER)

    async def delete_bucket(self, name: str) -> None:
        async def _delete() -> None:
            async with self._client_factory() as s3:
                try:
                    await self._empty(s3, name)
                    await s3.delete_bucket(Bucket=name)
                except ClientError as e:
                    if _error_code(e) in _NOT_FOUND:
                        logger.debug("Bucket not found: %s", name)
                        return
                    raise
            logger.info("Deleted bucket: %s", name)

        await retry_external(_delete, _BREAKER)

    async def _empty(self, s3, name: str) -> None:
        """Delete every object; a bucket must be empty before deletion."""
        paginator = s3.get_paginator("list_objects_v2")
        keys: list[dict] = []
        async for page in paginator.paginate(Bucket=name):
            keys.extend({"Key": obj["Key"]} for obj in page.get("Contents", []))

        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            await s3.delete_objects(Bucket=name, Delete={"Objects": batch, "Quiet": True})
        if keys:
            logger.debug("Emptied bucket %s (%d objects)", name, len(keys))
