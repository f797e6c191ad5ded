"""
Shared fixtures: an in-memory M00n server behind ``httpx.MockTransport``.
"""

import json
import threading
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from m00n_reporter.config import ReporterConfig
from m00n_reporter.context import clear
from m00n_reporter.reporter import Reporter
from m00n_reporter.transport import HttpTransport

pytest_plugins = ["pytester"]

SERVER_URL = "http://m00n.test"
API_KEY = "test-api-key"


class RecordingServer:
    """
    Fake M00n server.

    Records every request and answers:
    - GET /healthz with 200
    - POST /run/start with a run ID
    - everything else with ``{"ok": true}``

    ``respond`` queues one-off responses for a path.
    """

    def __init__(self, run_id: str = "run-1"):
        self.run_id = run_id
        self.requests: List[httpx.Request] = []
        self._queued: Dict[str, List[Any]] = {}
        self._lock = threading.Lock()

    def respond(self, path: str, status: int = 200, body: Optional[dict] = None, error: Optional[Exception] = None):
        self._queued.setdefault(path, []).append((status, body, error))

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            queued = self._queued.get(request.url.path)
            planned = queued.pop(0) if queued else None

        if planned is not None:
            status, body, error = planned
            if error is not None:
                raise error
            return httpx.Response(status, json=body if body is not None else {})

        if request.url.path == "/healthz":
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path.endswith("/run/start"):
            return httpx.Response(200, json={"runId": self.run_id})
        return httpx.Response(200, json={"ok": True})

    def paths(self) -> List[str]:
        with self._lock:
            return [r.url.path.replace("/api/ingest/v2", "") for r in self.requests]

    def bodies(self, endpoint: str) -> List[dict]:
        """JSON bodies sent to an endpoint such as ``/test/complete``."""
        with self._lock:
            requests = list(self.requests)
        return [
            json.loads(r.content)
            for r in requests
            if r.url.path == "/api/ingest/v2" + endpoint
        ]

    def uploads(self) -> List[httpx.Request]:
        with self._lock:
            return [r for r in self.requests if r.url.path.endswith("/attachment/upload")]

    def step_items(self) -> List[Tuple[str, str, int]]:
        return [
            (item["action"], item["title"], item["nestingLevel"])
            for body in self.bodies("/steps/stream")
            for item in body["items"]
        ]


@pytest.fixture(autouse=True)
def clean_context():
    """Never leak a current execution from one test to the next."""
    clear()
    yield
    clear()


@pytest.fixture
def server():
    return RecordingServer()


@pytest.fixture
def config():
    return ReporterConfig(server_url=SERVER_URL, api_key=API_KEY, max_retries=3)


@pytest.fixture
def transport(config, server):
    """Transport wired to the fake server with no retry delay."""
    return HttpTransport(
        config,
        transport=httpx.MockTransport(server.handler),
        backoff_base=0,
        backoff_cap=0,
    )


@pytest.fixture
def reporter(config, transport):
    """Reporter wired to the fake server; shut down after the test."""
    reporter = Reporter(config, transport=transport)
    yield reporter
    reporter.shutdown(grace=5)


@pytest.fixture
def running_reporter(reporter):
    """Reporter with a started run."""
    assert reporter.start_run(total=1) == "run-1"
    return reporter
