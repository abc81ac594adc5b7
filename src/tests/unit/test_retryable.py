"""Tests for retryable error classification and retry logic."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from tenanthub.core.circuit_breaker import (
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
    reset_all_circuit_breakers,
)
from tenanthub.core.errors import InfrastructureError, NotFoundError
from tenanthub.core.retryable import (
    classify_error,
    is_httpx_retryable,
    is_retryable,
    is_s3_retryable,
    with_retry,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://docker/containers/json")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "test error"}}, "CreateBucket")


class TestHttpxRetryable:
    """Tests for httpx error classification."""

    @pytest.mark.parametrize(
        "exc",
        [
            httpx.ConnectError("connection failed"),
            httpx.ConnectTimeout("timeout"),
            httpx.ReadTimeout("read timeout"),
            httpx.RemoteProtocolError("peer closed"),
        ],
    )
    def test_transport_errors_are_retryable(self, exc: Exception) -> None:
        assert is_httpx_retryable(exc) is True
        assert is_retryable(exc) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409])
    def test_4xx_not_retryable(self, status: int) -> None:
        assert is_httpx_retryable(_status_error(status)) is False

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_429_and_5xx_retryable(self, status: int) -> None:
        assert is_httpx_retryable(_status_error(status)) is True

    def test_invalid_url_not_retryable(self) -> None:
        assert is_retryable(httpx.InvalidURL("invalid url")) is False


class TestS3Retryable:
    """Tests for S3 (botocore) error classification."""

    @pytest.mark.parametrize("code", ["Throttling", "ServiceUnavailable", "SlowDown", "InternalError"])
    def test_transient_codes(self, code: str) -> None:
        exc = _client_error(code)
        assert is_s3_retryable(exc) is True
        assert is_retryable(exc) is True

    @pytest.mark.parametrize("code", ["AccessDenied", "NoSuchBucket", "InvalidBucketName"])
    def test_permanent_codes(self, code: str) -> None:
        exc = _client_error(code)
        assert is_s3_retryable(exc) is False
        assert is_retryable(exc) is False

    def test_endpoint_unreachable_is_retryable(self) -> None:
        exc = EndpointConnectionError(endpoint_url="http://minio:9000")
        assert is_s3_retryable(exc) is True
        assert classify_error(exc) == "retryable"


class TestClassifyError:
    """Tests for classify_error function."""

    def test_asyncio_timeout_is_retryable(self) -> None:
        assert classify_error(asyncio.TimeoutError()) == "retryable"

    def test_404_is_permanent(self) -> None:
        assert classify_error(_status_error(404)) == "permanent"

    def test_503_is_retryable(self) -> None:
        assert classify_error(_status_error(503)) == "retryable"

    def test_domain_errors_are_permanent(self) -> None:
        """Typed domain errors are never retried."""
        assert classify_error(NotFoundError()) == "permanent"
        assert classify_error(InfrastructureError("StartContainer")) == "permanent"

    def test_unknown_error_is_unknown(self) -> None:
        assert classify_error(ValueError("some value error")) == "unknown"
        assert is_retryable(ValueError("x")) is False

    def test_s3_unknown_code_is_unknown(self) -> None:
        assert classify_error(_client_error("SomeUnknownCode")) == "unknown"


class TestWithRetry:
    """Tests for with_retry function."""

    async def test_success_on_first_attempt(self) -> None:
        factory = AsyncMock(return_value="ok")
        assert await with_retry(factory, max_retries=3) == "ok"
        assert factory.await_count == 1

    async def test_retry_on_retryable_error(self) -> None:
        """Retryable errors are retried until success."""
        factory = AsyncMock(
            side_effect=[httpx.ConnectError("down"), httpx.ConnectError("down"), "ok"]
        )
        with patch("tenanthub.core.retryable.asyncio.sleep", new=AsyncMock()):
            assert await with_retry(factory, max_retries=3) == "ok"
        assert factory.await_count == 3

    async def test_no_retry_on_permanent_error(self) -> None:
        factory = AsyncMock(side_effect=_status_error(404))
        with pytest.raises(httpx.HTTPStatusError):
            await with_retry(factory, max_retries=3)
        assert factory.await_count == 1

    async def test_no_retry_on_unknown_error(self) -> None:
        factory = AsyncMock(side_effect=ValueError("bug"))
        with pytest.raises(ValueError):
            await with_retry(factory, max_retries=3)
        assert factory.await_count == 1

    async def test_max_retries_exceeded(self) -> None:
        """Raises the last error after initial call plus max_retries."""
        factory = AsyncMock(side_effect=httpx.ConnectError("down"))
        with patch("tenanthub.core.retryable.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.ConnectError):
                await with_retry(factory, max_retries=2)
        assert factory.await_count == 3

    async def test_exponential_backoff_with_cap(self) -> None:
        """Delays double per attempt and are capped at max_delay (jitter fixed at 1.0)."""
        factory = AsyncMock(side_effect=httpx.ConnectError("down"))
        sleep = AsyncMock()
        with (
            patch("tenanthub.core.retryable.asyncio.sleep", new=sleep),
            patch("tenanthub.core.retryable.random.random", return_value=0.5),
        ):
            with pytest.raises(httpx.ConnectError):
                await with_retry(factory, max_retries=4, base_delay=0.5, max_delay=2.0)

        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == [0.5, 1.0, 2.0, 2.0]


class TestWithRetryCircuitBreaker:
    """Tests for with_retry integration with circuit breaker."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        reset_all_circuit_breakers()

    async def test_permanent_error_does_not_affect_circuit(self) -> None:
        """Permanent errors (e.g., 404) should not count toward circuit breaker failures."""
        factory = AsyncMock(side_effect=_status_error(404))
        for _ in range(5):
            with pytest.raises(httpx.HTTPStatusError):
                await with_retry(factory, max_retries=0, circuit_breaker="test_404")

        cb = get_circuit_breaker("test_404")
        assert cb.state == CircuitState.CLOSED
        assert factory.await_count == 5

    async def test_transient_errors_open_circuit(self) -> None:
        """Five transient failures open the breaker; the sixth call is rejected."""
        factory = AsyncMock(side_effect=_status_error(503))
        for _ in range(5):
            with pytest.raises(httpx.HTTPStatusError):
                await with_retry(factory, max_retries=0, circuit_breaker="test_503")

        assert get_circuit_breaker("test_503").state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await with_retry(factory, max_retries=0, circuit_breaker="test_503")
        assert factory.await_count == 5
