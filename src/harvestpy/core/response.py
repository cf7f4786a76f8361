"""Collector response taxonomy.

Every answer from the collector is reduced to a CollectorResponse: whether
the data that was just sent must be kept for the next harvest, whether to
retry after a delay, and what happens to the current agent run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class AgentRunBehavior(Enum):
    """What the agent run should do after a collector response."""

    PRESERVE = "preserve"
    RESTART = "restart"
    SHUTDOWN = "shutdown"


SUCCESS_CODES = frozenset({200, 202})
RESTART_CODES = frozenset({401, 409})
DISCARD_CODES = frozenset({400, 403, 404, 405, 407, 411, 413, 414, 415, 417, 431})
RETAIN_CODES = frozenset({408, 429, 500, 503})
SHUTDOWN_CODE = 410


@dataclass(frozen=True)
class CollectorResponse:
    """Outcome of one collector call.

    Use the named constructors; they are the only valid combinations.

    Attributes:
        retain_data: Merge the sent data back for the next harvest.
        retry_after: Delay in milliseconds before retrying, 0 for none.
        agent_run: Effect on the current agent run.
        payload: Decoded ``return_value`` from the collector, if any.
        discarded: The collector refused the data; it was dropped, not stored.
    """

    retain_data: bool
    retry_after: int
    agent_run: AgentRunBehavior
    payload: Any = None
    discarded: bool = False

    @classmethod
    def success(cls, payload: Any = None) -> "CollectorResponse":
        return cls(False, 0, AgentRunBehavior.PRESERVE, payload)

    @classmethod
    def error(cls, payload: Any = None) -> "CollectorResponse":
        return cls(True, 0, AgentRunBehavior.PRESERVE, payload)

    @classmethod
    def fatal(cls, payload: Any = None) -> "CollectorResponse":
        return cls(False, 0, AgentRunBehavior.SHUTDOWN, payload)

    @classmethod
    def retry(cls, delay_ms: int = 0, payload: Any = None) -> "CollectorResponse":
        return cls(True, delay_ms, AgentRunBehavior.PRESERVE, payload)

    @classmethod
    def reconnect(
        cls, delay_ms: int = 0, payload: Any = None
    ) -> "CollectorResponse":
        return cls(False, delay_ms, AgentRunBehavior.RESTART, payload)

    @classmethod
    def discard(cls, payload: Any = None) -> "CollectorResponse":
        return cls(False, 0, AgentRunBehavior.PRESERVE, payload, discarded=True)

    def should_preserve_run(self) -> bool:
        return self.agent_run is AgentRunBehavior.PRESERVE

    def should_restart_run(self) -> bool:
        return self.agent_run is AgentRunBehavior.RESTART

    def should_shutdown_run(self) -> bool:
        return self.agent_run is AgentRunBehavior.SHUTDOWN

    def was_accepted(self) -> bool:
        """Return True if the collector stored the data."""
        return (
            self.should_preserve_run()
            and not self.retain_data
            and not self.discarded
        )


def classify_status(status: int, payload: Any = None) -> CollectorResponse:
    """Map a transport status code to a CollectorResponse.

    Args:
        status: HTTP status code returned by the collector.
        payload: Decoded payload, only carried on success and retain.

    Returns:
        success for 200/202, reconnect for 401/409, fatal for 410,
        error (retain) for 408/429/500/503 and discard for everything else.
    """
    if status in SUCCESS_CODES:
        return CollectorResponse.success(payload)
    if status in RESTART_CODES:
        return CollectorResponse.reconnect()
    if status == SHUTDOWN_CODE:
        return CollectorResponse.fatal(payload)
    if status in RETAIN_CODES:
        return CollectorResponse.error(payload)
    return CollectorResponse.discard()


def is_expected_status(status: int) -> bool:
    """Return True if the status code has an explicit policy."""
    return (
        status in SUCCESS_CODES
        or status in RESTART_CODES
        or status in DISCARD_CODES
        or status in RETAIN_CODES
        or status == SHUTDOWN_CODE
    )
