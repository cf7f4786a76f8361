"""Transport adapters implementing CollectorTransportPort."""

from harvestpy.adapters.transport.httpx_transport import HttpxTransport

__all__ = ["HttpxTransport"]
