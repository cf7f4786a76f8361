"""Exception hierarchy for harvestpy.

Harvest-time failures are converted to CollectorResponse values before
they reach the harvest loop; these exceptions only cross the boundary
between the transport, the collector API and the agent lifecycle.
"""


class HarvestpyError(Exception):
    """Base class for all harvestpy errors."""


class ConfigurationError(HarvestpyError):
    """Raised when the agent cannot start with the given settings."""


class CollectorError(HarvestpyError):
    """Base class for failures talking to the collector."""


class TransportError(CollectorError):
    """The request never produced an HTTP status.

    Attributes:
        code: Short errno-style code ("ECONNREFUSED", "ECONNRESET",
            "EPROTO", "ETIMEDOUT") or None when unknown.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ProtocolError(CollectorError):
    """The collector answered with something the protocol does not allow."""


class PayloadTooLargeError(CollectorError):
    """The serialized payload exceeds max_payload_size_in_bytes."""

    def __init__(self, method: str, size: int, limit: int) -> None:
        super().__init__(
            f"Payload for {method} is {size} bytes, limit is {limit} bytes"
        )
        self.method = method
        self.size = size
        self.limit = limit


class NotConnectedError(CollectorError):
    """A data method was invoked without an agent run id."""


class ConnectCancelledError(CollectorError):
    """The connect backoff loop was cancelled by a shutdown."""


class UnexpectedStatusError(CollectorError):
    """A handshake method answered with a non-success status."""

    def __init__(self, method: str, status: int) -> None:
        super().__init__(f"{method} returned HTTP {status}")
        self.method = method
        self.status = status
