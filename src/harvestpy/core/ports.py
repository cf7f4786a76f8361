"""Port interfaces for the collector transport and transaction context.

These protocols define the contracts that adapters must implement.
The core domain depends only on these interfaces, not concrete implementations.
"""

from collections.abc import Mapping
from contextvars import Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from harvestpy.core.response import CollectorResponse

if TYPE_CHECKING:
    from harvestpy.core.models import Transaction


@dataclass(frozen=True)
class TransportResponse:
    """A parsed HTTP answer from the collector.

    Attributes:
        status: HTTP status code.
        body: Raw response body.
        headers: Response headers, lower-cased names.
    """

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)


@runtime_checkable
class CollectorTransportPort(Protocol):
    """Port for sending bytes to the collector.

    Adapters implementing this protocol own TLS, proxies and connection
    pooling. Failures that produce no status code raise TransportError.
    Examples: HttpxTransport.
    """

    async def post(
        self, url: str, body: bytes, headers: Mapping[str, str]
    ) -> TransportResponse:
        """POST ``body`` to ``url`` and return the parsed response."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...


@runtime_checkable
class CollectorPort(Protocol):
    """Port for the collector conversation used by the harvest cycle.

    Examples: CollectorAPI, ServerlessCollector.
    """

    @property
    def run_id(self) -> str | None:
        """Agent run id of the current connection, None when disconnected."""
        ...

    @property
    def is_connected(self) -> bool:
        """True when data methods may be sent."""
        ...

    async def connect(self) -> CollectorResponse:
        """Run the handshake until it succeeds or the run must shut down."""
        ...

    async def send(self, method: str, payload: Any) -> CollectorResponse:
        """Send one data payload and classify the answer."""
        ...

    async def restart(self) -> CollectorResponse:
        """End the current run and connect again."""
        ...

    async def shutdown(self) -> CollectorResponse:
        """End the current run."""
        ...

    def cancel(self) -> None:
        """Abort a connect that is waiting between attempts."""
        ...


@runtime_checkable
class TransactionContextPort(Protocol):
    """Port for finding the transaction active in the current context.

    Examples: ContextVarTransactionContext.
    """

    def get_transaction(self) -> "Transaction | None":
        """Return the active transaction, if any."""
        ...

    def bind(self, transaction: "Transaction") -> Token["Transaction | None"]:
        """Make ``transaction`` active and return a token for ``unbind``."""
        ...

    def unbind(self, token: Token["Transaction | None"]) -> None:
        """Restore the transaction that was active before ``bind``."""
        ...
