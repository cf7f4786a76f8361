"""Tests for single collector method invocations."""

import gzip

import pytest

from harvestpy.adapters.collector.remote_method import (
    PROTOCOL_VERSION,
    RAW_METHOD_PATH,
    RemoteMethod,
)
from harvestpy.core.config import AgentSettings
from harvestpy.core.errors import PayloadTooLargeError, ProtocolError
from harvestpy.core.ports import TransportResponse

pytestmark = [pytest.mark.collector, pytest.mark.tier(1)]


class _StaticTransport:
    def __init__(self, status: int = 200, body: bytes = b"{}") -> None:
        self.response = TransportResponse(status=status, body=body)
        self.requests: list[tuple[str, bytes, dict]] = []

    async def post(self, url, body, headers):
        self.requests.append((url, body, dict(headers)))
        return self.response

    async def aclose(self) -> None:
        pass


class TestUrl:
    """Tests for the method URL."""

    def test_query_string(self, settings: AgentSettings) -> None:
        method = RemoteMethod("metric_data", settings, _StaticTransport())
        url = method.url()
        assert url.startswith(f"https://collector.example.com:443{RAW_METHOD_PATH}?")
        assert "method=metric_data" in url
        assert f"protocol_version={PROTOCOL_VERSION}" in url
        assert "marshal_format=json" in url
        assert f"license_key={settings.license_key}" in url
        assert "run_id" not in url

    def test_run_id_added_when_connected(self, settings: AgentSettings) -> None:
        settings.update({"run_id": "run-5"})
        method = RemoteMethod("metric_data", settings, _StaticTransport())
        assert "run_id=run-5" in method.url()

    def test_endpoint_override_and_plain_http(self, settings: AgentSettings) -> None:
        settings.update({"ssl": False})
        method = RemoteMethod(
            "connect", settings, _StaticTransport(), ("collector-2.example.com", 8080)
        )
        assert method.url().startswith("http://collector-2.example.com:8080/")

    def test_name_is_required(self, settings: AgentSettings) -> None:
        with pytest.raises(TypeError):
            RemoteMethod("", settings, _StaticTransport())


class TestInvoke:
    """Tests for posting a payload and decoding the answer."""

    @pytest.mark.asyncio
    async def test_return_value_is_unwrapped(self, settings: AgentSettings) -> None:
        transport = _StaticTransport(body=b'{"return_value": {"agent_run_id": 7}}')
        result = await RemoteMethod("connect", settings, transport).invoke([{}])
        assert result.status == 200
        assert result.payload == {"agent_run_id": 7}

    @pytest.mark.asyncio
    async def test_headers_map_is_sent(self, settings: AgentSettings) -> None:
        transport = _StaticTransport()
        await RemoteMethod("metric_data", settings, transport).invoke(
            [], {"X-Custom": "1"}
        )
        _, _, headers = transport.requests[0]
        assert headers["X-Custom"] == "1"
        assert headers["Content-Encoding"] == "identity"
        assert headers["User-Agent"].startswith("harvestpy/")

    @pytest.mark.asyncio
    async def test_error_status_has_no_payload(self, settings: AgentSettings) -> None:
        transport = _StaticTransport(status=503, body=b"<html>busy</html>")
        result = await RemoteMethod("metric_data", settings, transport).invoke([])
        assert result.status == 503
        assert result.payload is None

    @pytest.mark.asyncio
    async def test_bad_success_body_raises(self, settings: AgentSettings) -> None:
        transport = _StaticTransport(body=b"not json")
        with pytest.raises(ProtocolError):
            await RemoteMethod("connect", settings, transport).invoke([])

    @pytest.mark.asyncio
    async def test_non_object_envelope_raises(self, settings: AgentSettings) -> None:
        transport = _StaticTransport(body=b"[1, 2]")
        with pytest.raises(ProtocolError):
            await RemoteMethod("connect", settings, transport).invoke([])

    @pytest.mark.asyncio
    async def test_payload_too_large(self, settings: AgentSettings) -> None:
        settings.update({"max_payload_size_in_bytes": 10})
        transport = _StaticTransport()
        with pytest.raises(PayloadTooLargeError) as excinfo:
            await RemoteMethod("metric_data", settings, transport).invoke(["x" * 20])
        assert excinfo.value.limit == 10
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_large_body_is_gzipped(self, settings: AgentSettings) -> None:
        settings.update({"max_payload_size_in_bytes": 10_000_000})
        transport = _StaticTransport()
        payload = ["x" * 70_000]
        await RemoteMethod("log_event_data", settings, transport).invoke(payload)
        _, body, headers = transport.requests[0]
        assert headers["Content-Encoding"] == "gzip"
        assert gzip.decompress(body).startswith(b'["xxx')
