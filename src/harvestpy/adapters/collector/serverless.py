"""Serverless collector: payloads are written to stdout, not POSTed.

In serverless mode nothing may run between invocations, so there is no
handshake and no timer. Each harvest stores its payload here and
``flush`` writes them all as one line at the end of the invocation.
"""

import json
import logging
import os
import sys
from typing import Any, TextIO

from harvestpy.adapters.collector.remote_method import PROTOCOL_VERSION
from harvestpy.core.config import AgentSettings
from harvestpy.core.encoding.codec import encode_serverless_payload
from harvestpy.core.response import CollectorResponse
from harvestpy.version import __version__

logger = logging.getLogger(__name__)


class ServerlessCollector:
    """CollectorPort that buffers payloads until ``flush``.

    Args:
        settings: Live settings.
        stream: Where the envelope is written, stdout by default.
    """

    def __init__(self, settings: AgentSettings, stream: TextIO | None = None) -> None:
        self._settings = settings
        self._stream = stream
        self._payloads: dict[str, Any] = {}

    @property
    def run_id(self) -> str | None:
        return self._settings.run_id

    @property
    def is_connected(self) -> bool:
        return True

    @property
    def payloads(self) -> dict[str, Any]:
        return dict(self._payloads)

    async def connect(self) -> CollectorResponse:
        return CollectorResponse.success()

    async def restart(self) -> CollectorResponse:
        return CollectorResponse.success()

    async def shutdown(self) -> CollectorResponse:
        return CollectorResponse.success()

    async def send(self, method: str, payload: Any) -> CollectorResponse:
        self._payloads[method] = payload
        return CollectorResponse.success()

    def cancel(self) -> None:
        pass

    def metadata(self) -> dict[str, Any]:
        return {
            "protocol_version": PROTOCOL_VERSION,
            "execution_environment": os.environ.get("AWS_EXECUTION_ENV"),
            "agent_version": __version__,
            "agent_language": "python",
            "metadata_version": 2,
        }

    def flush(self) -> list[Any] | None:
        """Write buffered payloads as one line and clear them.

        Returns:
            The envelope that was written, None when there was nothing.
        """
        if not self._payloads:
            logger.debug("No serverless payloads to flush.")
            return None
        envelope = encode_serverless_payload(self.metadata(), self._payloads)
        stream = self._stream or sys.stdout
        stream.write(json.dumps(envelope) + "\n")
        stream.flush()
        self._payloads = {}
        return envelope
