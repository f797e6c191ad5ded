"""
Tests for the HTTP transport.

Validates:
- JSON posting and API key header
- Retry on transient failures, no retry on permanent errors
- Fire-and-forget posting
- Multipart uploads
- Health check
"""

import httpx
import pytest

from m00n_reporter.models import Attachment
from m00n_reporter.payloads import RunEndPayload
from m00n_reporter.transport import (
    ATTACHMENT_UPLOAD,
    RUN_END,
    RUN_START,
    PermanentDeliveryError,
    TransientDeliveryError,
)


@pytest.mark.asyncio
async def test_post_returns_json_and_sends_api_key(transport, server):
    """Successful responses are parsed and the API key header is set."""
    try:
        body = await transport.post(RUN_START, {"launch": "Nightly", "total": 1})
    finally:
        await transport.aclose()

    assert body == {"runId": "run-1"}
    request = server.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/ingest/v2/run/start"
    assert request.headers["X-API-Key"] == "test-api-key"
    assert server.bodies("/run/start") == [{"launch": "Nightly", "total": 1}]


@pytest.mark.asyncio
async def test_post_pydantic_body(transport, server):
    await transport.post(RUN_END, RunEndPayload(runId="r", status="passed", endedAt="t"))
    await transport.aclose()

    assert server.bodies("/run/end") == [{"runId": "r", "status": "passed", "endedAt": "t"}]


@pytest.mark.asyncio
async def test_transient_error_is_retried(transport, server):
    """A 500 followed by a success results in two requests."""
    server.respond(RUN_START, status=500, body={"error": "busy"})

    body = await transport.post(RUN_START, {})
    await transport.aclose()

    assert body == {"runId": "run-1"}
    assert len(server.requests) == 2


@pytest.mark.asyncio
async def test_transient_error_after_max_retries(transport, server):
    """Every attempt fails: the last TransientDeliveryError propagates."""
    for _ in range(3):
        server.respond(RUN_START, status=503)

    with pytest.raises(TransientDeliveryError) as excinfo:
        await transport.post(RUN_START, {})
    await transport.aclose()

    assert excinfo.value.status_code == 503
    assert len(server.requests) == 3


@pytest.mark.asyncio
async def test_connection_error_is_transient(transport, server):
    for _ in range(3):
        server.respond(RUN_START, error=httpx.ConnectError("refused"))

    with pytest.raises(TransientDeliveryError):
        await transport.post(RUN_START, {})
    await transport.aclose()

    assert len(server.requests) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["PROJECT_NOT_FOUND", "API_KEY_REQUIRED", "INVALID_API_KEY"])
async def test_permanent_error_is_not_retried(transport, server, code):
    server.respond(RUN_START, status=401, body={"code": code})

    with pytest.raises(PermanentDeliveryError) as excinfo:
        await transport.post(RUN_START, {})
    await transport.aclose()

    assert excinfo.value.code == code
    assert excinfo.value.status_code == 401
    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_unknown_error_code_is_transient(transport, server):
    for _ in range(3):
        server.respond(RUN_START, status=400, body={"code": "SOMETHING_ELSE"})

    with pytest.raises(TransientDeliveryError):
        await transport.post(RUN_START, {})
    await transport.aclose()


@pytest.mark.asyncio
async def test_post_quietly_swallows_errors(transport, server):
    """Single attempt, no exception."""
    server.respond("/api/ingest/v2/steps/stream", status=500)

    await transport.post_quietly("/api/ingest/v2/steps/stream", {"items": []})
    await transport.aclose()

    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_upload_attachment_bytes(transport, server):
    attachment = Attachment.screenshot("failure-screenshot", b"\x89PNG-data")

    await transport.upload_attachment(ATTACHMENT_UPLOAD, "test-1", "run-1", attachment)
    await transport.aclose()

    request = server.uploads()[0]
    assert request.headers["content-type"].startswith("multipart/form-data")
    content = request.content
    assert b'name="testId"' in content and b"test-1" in content
    assert b'name="runId"' in content and b"run-1" in content
    assert b'name="contentType"' in content and b"image/png" in content
    assert b'filename="failure-screenshot.png"' in content
    assert b"\x89PNG-data" in content


@pytest.mark.asyncio
async def test_upload_attachment_file(transport, server, tmp_path):
    path = tmp_path / "trace.zip"
    path.write_bytes(b"zip-bytes")

    await transport.upload_attachment(
        ATTACHMENT_UPLOAD, "test-1", "run-1", Attachment.from_path("trace.zip", path, "application/zip")
    )
    await transport.aclose()

    assert b"zip-bytes" in server.uploads()[0].content


@pytest.mark.asyncio
async def test_health_check(transport, server):
    assert await transport.health_check() is True
    assert server.requests[0].method == "GET"
    assert server.requests[0].url.path == "/healthz"

    server.respond("/healthz", status=503)
    assert await transport.health_check() is False

    server.respond("/healthz", error=httpx.ConnectError("refused"))
    assert await transport.health_check() is False
    await transport.aclose()


@pytest.mark.asyncio
async def test_empty_response_body(transport, server):
    server.respond(RUN_END, status=204, body=None)

    assert await transport.post(RUN_END, {}) == {}
    await transport.aclose()
