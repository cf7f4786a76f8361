"""Tests for the serverless collector."""

import io
import json

import pytest

from harvestpy.adapters.collector.serverless import ServerlessCollector
from harvestpy.core.config import AgentSettings
from harvestpy.core.encoding.codec import decode_serverless_payload

pytestmark = [pytest.mark.collector, pytest.mark.tier(1)]


@pytest.fixture
def serverless_settings() -> AgentSettings:
    return AgentSettings(license_key="", serverless_mode={"enabled": True})


class TestServerlessCollector:
    """Payloads are buffered and written as one line."""

    @pytest.mark.asyncio
    async def test_always_connected_without_handshake(
        self, serverless_settings: AgentSettings
    ) -> None:
        collector = ServerlessCollector(serverless_settings, io.StringIO())
        assert collector.is_connected
        assert (await collector.connect()).should_preserve_run()
        assert (await collector.restart()).should_preserve_run()

    @pytest.mark.asyncio
    async def test_flush_writes_one_line(
        self, serverless_settings: AgentSettings
    ) -> None:
        stream = io.StringIO()
        collector = ServerlessCollector(serverless_settings, stream)
        await collector.send("metric_data", ["", 1, 2, []])
        await collector.send("analytic_event_data", ["", {}, []])

        envelope = collector.flush()

        lines = stream.getvalue().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0]) == envelope
        assert envelope[2]["protocol_version"] == 17
        assert set(decode_serverless_payload(envelope)) == {
            "metric_data",
            "analytic_event_data",
        }
        assert collector.payloads == {}

    def test_flush_without_data_writes_nothing(
        self, serverless_settings: AgentSettings
    ) -> None:
        stream = io.StringIO()
        collector = ServerlessCollector(serverless_settings, stream)
        assert collector.flush() is None
        assert stream.getvalue() == ""
