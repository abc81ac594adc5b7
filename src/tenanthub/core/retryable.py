"""Transient error classification and retry with exponential backoff.

Adapters wrap each external call in with_retry() so a flaky Docker,
Cloudflare, Caddy or S3 response does not fail a whole provisioning step.

Usage:
    from tenanthub.core.retryable import with_retry

    record_id = await with_retry(lambda: self._create(domain), circuit_breaker="dns")
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from botocore.exceptions import ClientError, EndpointConnectionError

from tenanthub.app.config import get_settings
from tenanthub.app.metrics.collector import EXTERNAL_CALL_ERRORS_TOTAL
from tenanthub.core.circuit_breaker import CircuitOpenError, get_circuit_breaker
from tenanthub.core.errors import TenantHubError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# httpx error classification
# =============================================================================

HTTPX_RETRYABLE = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)

HTTPX_NON_RETRYABLE = (
    httpx.InvalidURL,
    httpx.TooManyRedirects,
    httpx.UnsupportedProtocol,
)


def is_httpx_retryable(exc: Exception) -> bool:
    if isinstance(exc, HTTPX_RETRYABLE):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        # 429 rate limit and 5xx are transient, other 4xx are not
        return status == 429 or status >= 500
    return False


# =============================================================================
# S3 (botocore) error classification
# =============================================================================

S3_RETRYABLE_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "InternalError",
    "InternalServerError",
    "SlowDown",
    "OperationAborted",
})

S3_NON_RETRYABLE_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "InvalidBucketName",
    "BucketAlreadyExists",
})


def _s3_error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_s3_retryable(exc: Exception) -> bool:
    if isinstance(exc, EndpointConnectionError):
        return True
    if isinstance(exc, ClientError):
        return _s3_error_code(exc) in S3_RETRYABLE_CODES
    return False


# =============================================================================
# Unified classification
# =============================================================================


def classify_error(exc: Exception) -> str:
    """Classify error as 'retryable', 'permanent', or 'unknown'."""
    if isinstance(exc, TenantHubError):
        return "permanent"
    if isinstance(exc, asyncio.TimeoutError):
        return "retryable"

    if isinstance(exc, httpx.HTTPStatusError):
        return "retryable" if is_httpx_retryable(exc) else "permanent"
    if isinstance(exc, HTTPX_RETRYABLE):
        return "retryable"
    if isinstance(exc, HTTPX_NON_RETRYABLE):
        return "permanent"

    if isinstance(exc, EndpointConnectionError):
        return "retryable"
    if isinstance(exc, ClientError):
        code = _s3_error_code(exc)
        if code in S3_RETRYABLE_CODES:
            return "retryable"
        if code in S3_NON_RETRYABLE_CODES:
            return "permanent"

    return "unknown"


def is_retryable(exc: Exception) -> bool:
    """Unknown errors are treated as not retryable."""
    return classify_error(exc) == "retryable"


# =============================================================================
# Retry utility
# =============================================================================


async def with_retry(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    circuit_breaker: str | None = None,
) -> T:
    """Execute async operation with exponential backoff retry.

    Only retryable errors are retried; everything else is raised on the
    first attempt. The caller's step timeout bounds the total time spent.

    Args:
        coro_factory: Creates a fresh coroutine for each attempt
        max_retries: Retry attempts after the first call
        base_delay: Initial delay in seconds
        max_delay: Delay cap in seconds
        circuit_breaker: Circuit breaker name (None to disable)

    Raises:
        CircuitOpenError: If circuit breaker is open
        Exception: The last exception once retries are exhausted
    """
    cb = get_circuit_breaker(circuit_breaker, classify_error) if circuit_breaker else None

    attempt = 0
    while True:
        try:
            if cb:
                return await cb.call(coro_factory)
            return await coro_factory()
        except CircuitOpenError:
            EXTERNAL_CALL_ERRORS_TOTAL.labels(error_type="circuit_open").inc()
            raise
        except Exception as exc:
            error_class = classify_error(exc)
            EXTERNAL_CALL_ERRORS_TOTAL.labels(error_type=error_class).inc()

            if error_class != "retryable" or attempt >= max_retries:
                logger.warning(
                    "External call failed (attempt %d/%d): %s",
                    attempt + 1,
                    max_retries + 1,
                    exc,
                    extra={"error_class": error_class, "attempt": attempt + 1},
                )
                raise

            delay = min(base_delay * (2**attempt), max_delay)
            # Jitter: 50% ~ 150% of delay
            delay *= 0.5 + random.random()
            logger.warning(
                "Retryable error (attempt %d/%d, retry in %.1fs): %s",
                attempt + 1,
                max_retries + 1,
                delay,
                exc,
                extra={"error_class": error_class, "attempt": attempt + 1, "delay": delay},
            )
            await asyncio.sleep(delay)
            attempt += 1


async def retry_external(coro_factory: Callable[[], Awaitable[T]], circuit_breaker: str) -> T:
    """with_retry() using the RETRY_ settings."""
    retry = get_settings().retry
    return await with_retry(
        coro_factory,
        max_retries=retry.max_retries,
        base_delay=retry.base_delay,
        max_delay=retry.max_delay,
        circuit_breaker=circuit_breaker,
    )
