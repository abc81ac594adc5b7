"""S3/MinIO client management."""

import logging
from types import TracebackType

import aioboto3
from types_aiobotocore_s3 import S3Client

from tenanthub.app.config import StorageConfig, get_settings

logger = logging.getLogger(__name__)

_session: aioboto3.Session | None = None


def get_session() -> aioboto3.Session:
    global _session
    if _session is None:
        _session = aioboto3.Session()
    return _session


async def close_storage() -> None:
    global _session
    _session = None


class S3ClientContext:
    """Context manager for a short-lived S3 client."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self._config = config or get_settings().storage
        self._context = None

    async def __aenter__(self) -> S3Client:
        self._context = get_session().client(
            "s3",
            endpoint_url=self._config.endpoint_url,
            aws_access_key_id=self._config.access_key,
            aws_secret_access_key=self._config.secret_key,
            region_name=self._config.region,
        )
        return await self._context.__aenter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._context:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)


def get_s3_client(config: StorageConfig | None = None) -> S3ClientContext:
    return S3ClientContext(config)
