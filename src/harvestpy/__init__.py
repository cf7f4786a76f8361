"""harvestpy - in-process APM telemetry harvesting for Python services."""

from harvestpy.agent import Agent, AgentState
from harvestpy.core.config import AgentSettings
from harvestpy.core.models import Trace, TraceSegment, Transaction
from harvestpy.core.response import CollectorResponse
from harvestpy.version import __version__

__all__ = [
    "Agent",
    "AgentSettings",
    "AgentState",
    "CollectorResponse",
    "Trace",
    "TraceSegment",
    "Transaction",
    "__version__",
]
