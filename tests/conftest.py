"""Shared test fixtures for all test modules."""

import asyncio
import json
from collections import defaultdict, deque
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from harvestpy.core.config import AgentSettings
from harvestpy.core.ports import TransportResponse
from harvestpy.core.response import CollectorResponse

# Scripted answer: a status, a (status, return_value) pair, or an exception.
Answer = int | tuple[int, Any] | Exception


class RecordedCall:
    """One POST seen by FakeTransport, with the URL parsed."""

    def __init__(self, url: str, body: bytes, headers: Mapping[str, str]) -> None:
        parts = urlsplit(url)
        self.url = url
        self.host = parts.hostname
        self.port = parts.port
        self.scheme = parts.scheme
        self.query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        self.method = self.query["method"]
        self.headers = dict(headers)
        self.body = body

    @property
    def payload(self) -> Any:
        return json.loads(self.body)


class FakeTransport:
    """In-memory CollectorTransportPort with per-method scripted answers.

    Unscripted methods answer 200. preconnect and connect default to a
    redirect and a run id so a plain ``connect()`` succeeds. ``delays`` holds
    per-method latency in seconds.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self.closed = False
        self._answers: dict[str, deque[Answer]] = defaultdict(deque)
        self.defaults: dict[str, Any] = {
            "preconnect": {"redirect_host": "collector-7.example.com"},
            "connect": {"agent_run_id": "run-1"},
        }
        self.delays: dict[str, float] = {}

    def script(self, method: str, *answers: Answer) -> None:
        self._answers[method].extend(answers)

    def methods(self) -> list[str]:
        return [call.method for call in self.calls]

    def calls_to(self, method: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.method == method]

    async def post(
        self, url: str, body: bytes, headers: Mapping[str, str]
    ) -> TransportResponse:
        call = RecordedCall(url, body, headers)
        self.calls.append(call)
        if call.method in self.delays:
            await asyncio.sleep(self.delays[call.method])
        queue = self._answers[call.method]
        answer: Answer = queue.popleft() if queue else 200
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, tuple):
            status, value = answer
        else:
            status, value = answer, self.defaults.get(call.method)
        body_out = json.dumps({"return_value": value}).encode()
        return TransportResponse(status=status, body=body_out)

    async def aclose(self) -> None:
        self.closed = True


class FakeCollector:
    """In-memory CollectorPort; ``send`` answers from a per-method script.

    Unscripted sends answer success. ``restart`` answers success and
    moves to a new run id.
    """

    def __init__(self, run_id: str | None = "run-1") -> None:
        self.sent: list[tuple[str, Any]] = []
        self.restarts = 0
        self.shutdowns = 0
        self.cancelled = False
        self.restart_response = CollectorResponse.success()
        self._run_id = run_id
        self._responses: dict[str, deque[CollectorResponse]] = defaultdict(deque)

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def is_connected(self) -> bool:
        return self._run_id is not None

    def script(self, method: str, *responses: CollectorResponse) -> None:
        self._responses[method].extend(responses)

    def payloads(self, method: str) -> list[Any]:
        return [payload for name, payload in self.sent if name == method]

    async def connect(self) -> CollectorResponse:
        self._run_id = "run-1"
        return CollectorResponse.success()

    async def send(self, method: str, payload: Any) -> CollectorResponse:
        self.sent.append((method, payload))
        queue = self._responses[method]
        return queue.popleft() if queue else CollectorResponse.success()

    async def restart(self) -> CollectorResponse:
        self.restarts += 1
        self._run_id = f"run-{self.restarts + 1}"
        return self.restart_response

    async def shutdown(self) -> CollectorResponse:
        self.shutdowns += 1
        self._run_id = None
        return CollectorResponse.fatal()

    def cancel(self) -> None:
        self.cancelled = True


@pytest.fixture
def fake_collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def settings() -> AgentSettings:
    """Settings that can connect, independent of the environment."""
    return AgentSettings(
        license_key="0123456789abcdef0123456789abcdef01234567",
        app_name=["Test App"],
        host="collector.example.com",
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_sleep():
    """Sleep replacement that records the requested intervals.

    Returns a tuple of (sleep_func, intervals_list).
    """
    intervals: list[float] = []

    async def sleep(interval: float) -> None:
        intervals.append(interval)

    return sleep, intervals


# === ASGI Test Fixtures ===


@pytest.fixture
def basic_asgi_app():
    """Basic ASGI app fixture that returns 200 OK."""
    from harvestpy.adapters.frameworks.asgi import Receive, Scope, Send

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        """Simple ASGI app that returns 200 OK."""
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"OK"})

    return app


@pytest.fixture
def asgi_scope():
    """Factory fixture for creating ASGI scope dicts."""
    from harvestpy.adapters.frameworks.asgi import Scope

    def _scope(method: str = "GET", path: str = "/test") -> Scope:
        return {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": b"",
            "headers": [],
        }

    return _scope


@pytest.fixture
def asgi_send_capture():
    """Fixture that returns a send callable and a responses list for capture.

    Returns a tuple of (send_func, responses_list) for recording ASGI messages.
    """

    responses: list[dict[str, object]] = []

    async def send(message: dict[str, object]) -> None:
        """Capture ASGI messages."""
        responses.append(message)

    return send, responses


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            async with asgi_test_client(app) as client:
                response = await client.get("/endpoint")
    """

    def _get_client(app):
        """Return an AsyncClient context manager for the given app."""
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    return _get_client
