"""Collector connection: handshake, redirect, backoff and data methods.

The handshake runs preconnect (which may redirect every later call to
another host), negotiates security policies, then calls connect to obtain
an agent run id. Any failure short of a shutdown order is retried on a
fixed backoff schedule until ``cancel`` is called.
"""

import asyncio
import logging
import os
import platform
import socket
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from harvestpy.adapters.collector.remote_method import RemoteMethod
from harvestpy.core.config import AgentSettings
from harvestpy.core.errors import (
    CollectorError,
    ConnectCancelledError,
    NotConnectedError,
    PayloadTooLargeError,
    ProtocolError,
    TransportError,
    UnexpectedStatusError,
)
from harvestpy.core.ports import CollectorTransportPort
from harvestpy.core.response import (
    RETAIN_CODES,
    SHUTDOWN_CODE,
    SUCCESS_CODES,
    CollectorResponse,
    classify_status,
    is_expected_status,
)
from harvestpy.version import __version__

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443
PROXY_ERROR_CODES = frozenset({"EPROTO", "ECONNRESET"})


@dataclass(frozen=True)
class Backoff:
    interval: int
    warn: bool = False


BACKOFFS = (
    Backoff(15),
    Backoff(15),
    Backoff(30),
    Backoff(60, warn=True),
    Backoff(120),
    Backoff(300),
)


def backoff_for(attempt: int) -> Backoff:
    """Backoff after the given 1-based failed attempt, clamped at the last."""
    return BACKOFFS[min(attempt, len(BACKOFFS)) - 1]


class ConnectionState(Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


def collect_facts(settings: AgentSettings) -> dict[str, Any]:
    """Environment facts sent with the connect call."""
    app_names = list(settings.app_name)
    return {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "language": "python",
        "agent_version": __version__,
        "app_name": app_names,
        "identifier": "python:" + ",".join(app_names),
        "high_security": settings.high_security,
        "settings": settings.public_settings(),
        "environment": [
            ["Python version", platform.python_version()],
            ["Platform", platform.platform()],
        ],
    }


def _split_host_port(value: Any) -> tuple[str, int] | None:
    """Parse a ``host[:port]`` redirect; None if it is not one."""
    if not isinstance(value, str):
        return None
    host, _, port_text = value.partition(":")
    if not host:
        return None
    if not port_text:
        return host, DEFAULT_PORT
    try:
        port = int(port_text)
    except ValueError:
        return None
    if not 0 < port < 65536:
        return None
    return host, port


class CollectorAPI:
    """CollectorPort talking to a remote collector.

    Args:
        settings: Live settings; the run id lives in ``settings.run_id``.
        transport: Adapter performing the HTTP POSTs.
        sleep: Coroutine used to wait between connect attempts.
        on_state: Called with every ConnectionState change.
        clear_data: Called with a security policy name when a policy
            tightened a setting.
    """

    def __init__(
        self,
        settings: AgentSettings,
        transport: CollectorTransportPort,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_state: Callable[[ConnectionState], None] | None = None,
        clear_data: Callable[[str], None] | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._sleep = sleep
        self._on_state = on_state
        self._clear_data = clear_data
        self._state = ConnectionState.STOPPED
        self._redirect: tuple[str, int] | None = None
        self._request_headers_map: dict[str, str] = {}
        self._cancelled = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def run_id(self) -> str | None:
        return self._settings.run_id

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and bool(self.run_id)

    @property
    def endpoint(self) -> tuple[str, int]:
        """Endpoint for every method except preconnect."""
        if self._redirect is not None:
            return self._redirect
        return self._settings.host, self._settings.port

    @property
    def request_headers_map(self) -> dict[str, str]:
        return dict(self._request_headers_map)

    def cancel(self) -> None:
        """Abort a connect loop that is waiting out a backoff.

        Stays in effect until ``resume``; a later ``connect`` fails fast.
        """
        self._cancelled.set()

    def resume(self) -> None:
        """Allow ``connect`` again after ``cancel``."""
        self._cancelled.clear()

    async def connect(self) -> CollectorResponse:
        """Connect, retrying with backoff until success or a shutdown order.

        Returns:
            success with the connect payload, or fatal.

        Raises:
            ConnectCancelledError: If ``cancel`` was called.
        """
        self._request_headers_map = {}
        self._set_state(ConnectionState.CONNECTING)
        attempt = 1
        while True:
            if self._cancelled.is_set():
                raise ConnectCancelledError("Connect cancelled.")
            try:
                response = await self._login()
            except CollectorError as exc:
                self._log_connect_failure(exc)
            else:
                if response.should_shutdown_run():
                    logger.error("The collector rejected this agent.")
                    self._set_state(ConnectionState.ERRORED)
                return response

            backoff = backoff_for(attempt)
            if backoff.warn:
                logger.warning(
                    "No connection has been established to the collector after "
                    "%d attempts.",
                    attempt,
                )
            logger.debug(
                "Failed to connect after attempt %d, waiting %ds to retry.",
                attempt,
                backoff.interval,
            )
            attempt += 1
            await self._wait(backoff.interval)

    async def send(self, method: str, payload: Any) -> CollectorResponse:
        """Invoke a data method and classify the response.

        Raises:
            NotConnectedError: If there is no agent run.
        """
        if not self.is_connected:
            raise NotConnectedError(
                f"Not connected to the collector, not calling {method}."
            )
        try:
            result = await self._remote(method).invoke(
                payload, self._request_headers_map
            )
        except PayloadTooLargeError as exc:
            logger.warning("%s; discarding.", exc)
            return CollectorResponse.discard()
        except CollectorError as exc:
            logger.warning(
                "Failed to send %s (%s); keeping data for the next harvest.",
                method,
                exc,
            )
            return CollectorResponse.error()

        response = classify_status(result.status, result.payload)
        self._log_send_result(method, result.status)
        if response.should_shutdown_run():
            self._disconnect()
        return response

    async def report_settings(self) -> CollectorResponse | None:
        """Push the public settings with ``agent_settings``."""
        if not self.is_connected:
            return None
        return await self.send("agent_settings", [self._settings.public_settings()])

    async def shutdown(self) -> CollectorResponse:
        """Send ``shutdown`` and clear the run id."""
        if not self.is_connected:
            self._disconnect()
            return CollectorResponse.fatal()
        payload = None
        try:
            result = await self._remote("shutdown").invoke(
                None, self._request_headers_map
            )
            payload = result.payload
        except CollectorError as exc:
            logger.debug("Error sending shutdown: %s", exc)
        logger.info("Disconnected from the collector; clearing run ID %s.", self.run_id)
        self._disconnect()
        return CollectorResponse.fatal(payload)

    async def restart(self) -> CollectorResponse:
        """Shut the current run down and connect again."""
        logger.info("Restarting the collector connection.")
        await self.shutdown()
        return await self.connect()

    async def _login(self) -> CollectorResponse:
        preconnect = RemoteMethod(
            "preconnect",
            self._settings,
            self._transport,
            (self._settings.host, self._settings.port),
        )
        request: dict[str, Any] = {"high_security": self._settings.high_security}
        if self._settings.security_policies_token:
            request["security_policies_token"] = self._settings.security_policies_token
        result = await preconnect.invoke([request])
        if result.status == SHUTDOWN_CODE:
            return CollectorResponse.fatal()
        if result.status not in SUCCESS_CODES:
            raise UnexpectedStatusError("preconnect", result.status)

        body = result.payload if result.payload is not None else {}
        if not isinstance(body, Mapping):
            raise ProtocolError(f"Unexpected preconnect response: {body!r}")
        self._apply_redirect(body.get("redirect_host"))
        policies = self._settings.apply_security_policies(
            body.get("security_policies") or {}, self._clear_data
        )
        if policies.should_shutdown_run():
            return policies

        environment = collect_facts(self._settings)
        if policies.payload:
            environment["security_policies"] = policies.payload
        return await self._connect([environment])

    async def _connect(self, environment: list[dict[str, Any]]) -> CollectorResponse:
        result = await self._remote("connect").invoke(environment)
        if result.status == SHUTDOWN_CODE:
            return CollectorResponse.fatal()
        if result.status not in SUCCESS_CODES:
            raise UnexpectedStatusError("connect", result.status)

        config = result.payload
        if not isinstance(config, dict) or not config.get("agent_run_id"):
            raise ProtocolError("No agent run ID received from handshake.")

        self._request_headers_map = dict(config.get("request_headers_map") or {})
        for message in config.get("messages") or ():
            logger.info("%s", message.get("message", message))
        self._settings.update({"run_id": str(config["agent_run_id"])})
        self._settings.apply_server_config(config)
        self._set_state(ConnectionState.CONNECTED)
        host, port = self.endpoint
        logger.info(
            "Connected to %s:%d with agent run ID %s.", host, port, self.run_id
        )
        await self.report_settings()
        return CollectorResponse.success(config)

    def _apply_redirect(self, redirect_host: Any) -> None:
        configured = self._settings.host
        if not redirect_host:
            logger.error(
                "Requesting this account's collector from %s failed; trying default.",
                configured,
            )
            self._redirect = None
            return
        endpoint = _split_host_port(redirect_host)
        if endpoint is None:
            logger.error(
                "Requesting collector from %s returned bogus result '%s'; "
                "trying default.",
                configured,
                redirect_host,
            )
            self._redirect = None
            return
        logger.debug(
            "Requesting this account's collector from %s returned %s; reconfiguring.",
            configured,
            redirect_host,
        )
        self._redirect = endpoint

    def _remote(self, method: str) -> RemoteMethod:
        return RemoteMethod(method, self._settings, self._transport, self.endpoint)

    def _log_connect_failure(self, exc: CollectorError) -> None:
        settings = self._settings
        if isinstance(exc, UnexpectedStatusError) and exc.status == 401:
            logger.warning(
                "Your license key appears to be invalid. Reattempting connection "
                "to the collector. If the problem persists, please check your "
                "license key."
            )
        elif (
            isinstance(exc, TransportError)
            and exc.code in PROXY_ERROR_CODES
            and settings.proxy_host
            and settings.proxy_port
            and not settings.proxy
        ):
            logger.warning(
                "Your proxy server appears to be configured to accept connections "
                "over http. When setting proxy_host and proxy_port the agent "
                "connects to your proxy over https. If your proxy accepts "
                "connections over http, set proxy to a fully qualified URL "
                "(e.g. http://proxy-host:8080)."
            )
        elif isinstance(exc, ProtocolError):
            logger.error("%s", exc)
        else:
            logger.debug("Connect attempt failed: %s", exc)

    def _log_send_result(self, method: str, status: int) -> None:
        if status in SUCCESS_CODES:
            logger.debug("%s sent.", method)
        elif status == 503:
            logger.debug(
                "Collector is unavailable for %s (%d); keeping data.", method, status
            )
        elif status in RETAIN_CODES:
            logger.warning(
                "Collector could not process %s (%d); keeping data.", method, status
            )
        elif status == SHUTDOWN_CODE:
            logger.error("Collector ordered this agent to shut down on %s.", method)
        elif status in (401, 409):
            logger.info("Collector asked for a reconnect on %s (%d).", method, status)
        elif is_expected_status(status):
            logger.warning("Collector rejected %s (%d); discarding.", method, status)
        else:
            logger.warning(
                "Unexpected status %d from the collector on %s; discarding.",
                status,
                method,
            )

    def _disconnect(self) -> None:
        self._settings.update({"run_id": None})
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._on_state is not None:
            self._on_state(state)

    async def _wait(self, interval: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(interval))
        cancelled = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait(
                {sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            sleeper.cancel()
            cancelled.cancel()
        if self._cancelled.is_set():
            raise ConnectCancelledError("Connect cancelled during backoff.")
