"""httpx transport adapter.

Implements CollectorTransportPort on top of ``httpx.AsyncClient``. httpx
exceptions that produce no HTTP status are mapped to TransportError with
an errno-style code so the connection logic can recognise them.
"""

import ssl
from collections.abc import Mapping
from urllib.parse import quote

import httpx

from harvestpy.core.config import AgentSettings
from harvestpy.core.errors import TransportError
from harvestpy.core.ports import TransportResponse

DEFAULT_TIMEOUT = 30.0


def proxy_url(settings: AgentSettings) -> str | None:
    """Build the proxy URL from ``proxy`` or ``proxy_host``/``proxy_port``.

    An explicit ``proxy`` wins. Host and port alone mean an https proxy.
    """
    if settings.proxy:
        return settings.proxy
    if not (settings.proxy_host and settings.proxy_port):
        return None
    auth = ""
    if settings.proxy_user:
        auth = quote(settings.proxy_user, safe="")
        if settings.proxy_pass:
            auth += ":" + quote(settings.proxy_pass, safe="")
        auth += "@"
    return f"https://{auth}{settings.proxy_host}:{settings.proxy_port}"


def _error_code(exc: httpx.TransportError) -> str | None:
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ProxyError):
        return "EPROTO"
    if isinstance(exc, httpx.ConnectError):
        if isinstance(exc.__cause__, ssl.SSLError) or "SSL" in str(exc):
            return "EPROTO"
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    return None


class HttpxTransport:
    """CollectorTransportPort backed by an ``httpx.AsyncClient``.

    Args:
        settings: Used for the proxy configuration when no client is given.
        client: Pre-built client, e.g. one using ``httpx.MockTransport``.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if client is None:
            proxy = proxy_url(settings) if settings is not None else None
            client = httpx.AsyncClient(proxy=proxy, timeout=timeout)
        self._client = client

    async def post(
        self, url: str, body: bytes, headers: Mapping[str, str]
    ) -> TransportResponse:
        try:
            response = await self._client.post(url, content=body, headers=dict(headers))
        except httpx.TransportError as exc:
            message = str(exc) or type(exc).__name__
            raise TransportError(message, _error_code(exc)) from exc
        return TransportResponse(
            status=response.status_code,
            body=response.content,
            headers={k.lower(): v for k, v in response.headers.items()},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
