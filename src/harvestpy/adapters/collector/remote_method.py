"""One collector method invocation over a CollectorTransportPort."""

import logging
import platform
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from harvestpy.core.config import AgentSettings
from harvestpy.core.encoding.codec import compress_body, decode_json, encode_json
from harvestpy.core.errors import PayloadTooLargeError, ProtocolError
from harvestpy.core.ports import CollectorTransportPort
from harvestpy.version import __version__

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 17
RAW_METHOD_PATH = "/agent_listener/invoke_raw_method"


def user_agent() -> str:
    return (
        f"harvestpy/{__version__} (python {platform.python_version()} "
        f"{sys.platform}-{platform.machine()})"
    )


@dataclass(frozen=True)
class MethodResult:
    """Status and decoded ``return_value`` of one invocation."""

    status: int
    payload: Any = None


class RemoteMethod:
    """A named collector method bound to an endpoint.

    Args:
        name: Collector method, e.g. "metric_data".
        settings: Live settings (license key, run id, ssl, size limit).
        transport: Adapter that performs the POST.
        endpoint: (host, port) to call, defaults to the configured one.
    """

    def __init__(
        self,
        name: str,
        settings: AgentSettings,
        transport: CollectorTransportPort,
        endpoint: tuple[str, int] | None = None,
    ) -> None:
        if not name:
            raise TypeError("Must include name of method to invoke on collector.")
        self.name = name
        self._settings = settings
        self._transport = transport
        self._endpoint = endpoint

    @property
    def endpoint(self) -> tuple[str, int]:
        if self._endpoint is not None:
            return self._endpoint
        return self._settings.host, self._settings.port

    def url(self) -> str:
        query: dict[str, Any] = {
            "marshal_format": "json",
            "protocol_version": PROTOCOL_VERSION,
            "license_key": self._settings.license_key,
            "method": self.name,
        }
        if self._settings.run_id:
            query["run_id"] = self._settings.run_id
        scheme = "https" if self._settings.ssl else "http"
        host, port = self.endpoint
        return f"{scheme}://{host}:{port}{RAW_METHOD_PATH}?{urlencode(query)}"

    def headers(
        self, encoding: str, extra: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        headers = {
            "User-Agent": user_agent(),
            "Content-Type": "application/json",
            "Content-Encoding": encoding,
        }
        if extra:
            headers.update(extra)
        return headers

    def serialize(self, payload: Any) -> bytes:
        """Encode the payload, enforcing max_payload_size_in_bytes.

        Raises:
            PayloadTooLargeError: If the encoded body is over the limit.
        """
        body = encode_json([] if payload is None else payload)
        limit = self._settings.max_payload_size_in_bytes
        if len(body) > limit:
            raise PayloadTooLargeError(self.name, len(body), limit)
        return body

    async def invoke(
        self, payload: Any = None, headers_map: Mapping[str, str] | None = None
    ) -> MethodResult:
        """POST the payload and decode the response envelope.

        Args:
            payload: JSON-serializable method arguments.
            headers_map: request_headers_map from the connect response.

        Returns:
            The HTTP status and, for 2xx answers, the ``return_value``.

        Raises:
            PayloadTooLargeError: The body is over the configured limit.
            TransportError: No HTTP status was received.
            ProtocolError: A 2xx body is not a JSON envelope.
        """
        body, encoding = compress_body(self.serialize(payload))
        logger.debug("Calling %s on the collector (%d bytes).", self.name, len(body))
        response = await self._transport.post(
            self.url(), body, self.headers(encoding, headers_map)
        )
        if not 200 <= response.status < 300:
            return MethodResult(response.status)
        try:
            decoded = decode_json(response.body)
        except ValueError as exc:
            raise ProtocolError(
                f"Could not decode {self.name} response: {exc}"
            ) from exc
        if decoded is None:
            return MethodResult(response.status)
        if not isinstance(decoded, dict):
            raise ProtocolError(f"Unexpected {self.name} response envelope")
        return MethodResult(response.status, decoded.get("return_value"))
