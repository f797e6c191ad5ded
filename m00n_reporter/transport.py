"""
HTTP transport for the M00n ingest API.

This module handles:
- JSON posting with exponential backoff retry
- Permanent vs transient error classification
- Fire-and-forget posting for the step stream
- Multipart attachment uploads
- Server health check
"""

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from m00n_reporter.config import ReporterConfig
from m00n_reporter.models import Attachment

logger = logging.getLogger("m00n_reporter")

INGEST_PREFIX = "/api/ingest/v2"
RUN_START = f"{INGEST_PREFIX}/run/start"
RUN_END = f"{INGEST_PREFIX}/run/end"
TEST_START = f"{INGEST_PREFIX}/test/start"
TEST_COMPLETE = f"{INGEST_PREFIX}/test/complete"
STEPS_STREAM = f"{INGEST_PREFIX}/steps/stream"
ATTACHMENT_UPLOAD = f"{INGEST_PREFIX}/attachment/upload"
HEALTH = "/healthz"

PERMANENT_ERROR_CODES = frozenset({
    "PROJECT_NOT_FOUND",
    "API_KEY_REQUIRED",
    "INVALID_API_KEY",
})

CONNECT_TIMEOUT_SECONDS = 10.0
POOL_SIZE = 5

Body = Union[BaseModel, Mapping[str, Any]]


# ============================================================================
# Custom Exceptions
# ============================================================================

class DeliveryError(Exception):
    """Base exception for delivery failures."""
    pass


class PermanentDeliveryError(DeliveryError):
    """The server rejected the request in a way retrying cannot fix."""

    def __init__(self, code: str, status_code: Optional[int] = None):
        super().__init__(f"Permanent error: {code}")
        self.code = code
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network failure or unexpected server response; retrying may help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ============================================================================
# HTTP Transport
# ============================================================================

class HttpTransport:
    """
    Async HTTP client for the M00n ingest API.

    Example:
        transport = HttpTransport(config)
        try:
            ack = await transport.post(RUN_START, payload)
        finally:
            await transport.aclose()
    """

    def __init__(
        self,
        config: ReporterConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
    ):
        """
        Initialize the transport.

        Args:
            config: Reporter configuration (server URL, API key, timeout, retries).
            transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
            backoff_base: First retry delay in seconds; doubles per attempt.
            backoff_cap: Maximum retry delay in seconds.
        """
        self.config = config
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"X-API-Key": self.config.api_key or ""},
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS),
                limits=httpx.Limits(max_connections=POOL_SIZE, max_keepalive_connections=POOL_SIZE),
                transport=self._transport,
            )
        return self._client

    async def post(self, path: str, body: Body) -> Dict[str, Any]:
        """
        POST a JSON body, retrying transient failures.

        Raises:
            PermanentDeliveryError: The server returned a permanent error code.
            TransientDeliveryError: All attempts failed.
        """
        data = _to_json(body)
        if self.config.debug:
            logger.debug(f"POST {path} - Body: {data}")
        return await self._with_retry(path, lambda: self.client.post(path, json=data))

    async def post_quietly(self, path: str, body: Body) -> None:
        """Single-attempt POST whose failures are logged and dropped."""
        data = _to_json(body)
        try:
            await self._send_once(path, lambda: self.client.post(path, json=data))
        except Exception as e:
            logger.debug(f"Async POST {path} failed: {e}")

    async def upload_bytes(
        self,
        path: str,
        fields: Mapping[str, str],
        data: bytes,
        filename: str,
        content_type: str,
    ) -> Dict[str, Any]:
        """Upload a byte payload as the ``file`` part of a multipart form."""
        def send() -> Awaitable[httpx.Response]:
            return self.client.post(
                path,
                data=dict(fields),
                files={"file": (filename, data, content_type)},
            )

        return await self._with_retry(path, send)

    async def upload_file(
        self,
        path: str,
        fields: Mapping[str, str],
        file_path: Path,
        filename: str,
        content_type: str,
    ) -> Dict[str, Any]:
        """Upload a file from disk as the ``file`` part of a multipart form."""
        return await self.upload_bytes(path, fields, Path(file_path).read_bytes(), filename, content_type)

    async def upload_attachment(
        self, path: str, test_id: str, run_id: str, attachment: Attachment
    ) -> Dict[str, Any]:
        fields = {
            "testId": test_id,
            "runId": run_id,
            "name": attachment.name,
            "contentType": attachment.content_type,
        }
        if attachment.is_file:
            return await self.upload_file(
                path, fields, attachment.path, attachment.name, attachment.content_type
            )
        return await self.upload_bytes(
            path, fields, attachment.data or b"", attachment.name, attachment.content_type
        )

    async def health_check(self) -> bool:
        """Single unretried GET against the liveness endpoint."""
        try:
            response = await self.client.get(HEALTH)
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            logger.debug("HTTP client closed")

    def retrying(self, path: str) -> AsyncRetrying:
        """Retry policy: exponential backoff on transient errors, capped."""
        return AsyncRetrying(
            stop=stop_after_attempt(max(self.config.max_retries, 1)),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_cap),
            retry=retry_if_exception_type(TransientDeliveryError),
            before_sleep=_log_retry(path, self.config.max_retries),
            reraise=True,
        )

    async def _with_retry(
        self, path: str, send: Callable[[], Awaitable[httpx.Response]]
    ) -> Dict[str, Any]:
        async for attempt in self.retrying(path):
            with attempt:
                result = await self._send_once(path, send)
        return result

    async def _send_once(
        self, path: str, send: Callable[[], Awaitable[httpx.Response]]
    ) -> Dict[str, Any]:
        try:
            response = await send()
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"{type(e).__name__} for {path}: {e}") from e

        if response.is_success:
            body = _parse_json(response)
            if self.config.debug:
                logger.debug(f"Response from {path}: {body}")
            return body

        code = _parse_json(response).get("code")
        if code in PERMANENT_ERROR_CODES:
            raise PermanentDeliveryError(code, response.status_code)

        raise TransientDeliveryError(
            f"HTTP {response.status_code}: {response.text}", response.status_code
        )


def _log_retry(path: str, max_retries: int) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Retry {retry_state.attempt_number}/{max_retries} for {path} "
            f"after {delay:.1f}s: {error}"
        )
    return log


def _to_json(body: Body) -> Dict[str, Any]:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json")
    return dict(body)


def _parse_json(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
