"""Event and error aggregators.

Transaction, custom and log events share the reservoir-backed
EventAggregator; error traces are a plain capped list.
"""

import logging
import random
import re
import threading
import time
from collections.abc import Callable
from typing import Any

from harvestpy.core.harvest import Aggregator
from harvestpy.core.models import AttributeValue, ErrorRecord, Transaction
from harvestpy.core.reservoir import PriorityReservoir

logger = logging.getLogger(__name__)

CUSTOM_EVENT_TYPE = re.compile(r"^[a-zA-Z0-9:_ ]+$")
MAX_EVENT_TYPE_LENGTH = 255
STRIPPED_MESSAGE = "Message removed by security settings"


class EventAggregator(Aggregator):
    """Reservoir-backed buffer of events.

    The payload is ``[run_id, {reservoir_size, events_seen}, events]``.
    Retained events are re-added to the current reservoir, so a merge
    never holds more than ``limit`` events.

    Args:
        period: Seconds between harvests.
        limit: Reservoir size.
        enabled: Live predicate for the data kind's enabled flag.
    """

    def __init__(
        self,
        period: float,
        limit: int,
        enabled: Callable[[], bool] | None = None,
    ) -> None:
        super().__init__(period=period, enabled=enabled)
        self._lock = threading.Lock()
        self._events: PriorityReservoir[Any] = PriorityReservoir(limit)

    def __len__(self) -> int:
        return len(self._events)

    @property
    def limit(self) -> int:
        return self._events.limit

    @limit.setter
    def limit(self, value: int) -> None:
        with self._lock:
            self._events.limit = value

    @property
    def seen(self) -> int:
        return self._events.seen

    @property
    def events(self) -> list[Any]:
        with self._lock:
            return list(self._events)

    def add(self, event: Any, priority: float | None = None) -> bool:
        """Offer an event, with a random priority unless one is given."""
        if priority is None:
            priority = random.random()
        with self._lock:
            return self._events.add(event, priority)

    def _to_payload(self, run_id: str) -> list[Any] | None:
        if not len(self._events):
            return None
        metadata = {
            "reservoir_size": self._events.limit,
            "events_seen": self._events.seen,
        }
        return [run_id, metadata, list(self._events)]

    def _get_merge_data(self) -> PriorityReservoir[Any]:
        return self._events

    def _merge(self, data: PriorityReservoir[Any]) -> None:
        with self._lock:
            self._events.merge(data)

    def clear(self) -> None:
        with self._lock:
            self._events = PriorityReservoir(self._events.limit)


class TransactionEventAggregator(EventAggregator):
    method = "analytic_event_data"

    def add_transaction(self, transaction: Transaction) -> bool:
        intrinsics: dict[str, AttributeValue] = {
            "type": "Transaction",
            "name": transaction.finalize_name(),
            "timestamp": int(transaction.start_time * 1000),
            "duration": transaction.get_duration_in_millis() / 1000,
            "guid": transaction.id,
            "traceId": transaction.trace_id,
            "sampled": transaction.sampled,
            "error": bool(transaction.exceptions),
        }
        if transaction.priority is not None:
            intrinsics["priority"] = transaction.priority
        if transaction.synthetics_data is not None:
            intrinsics["nr.syntheticsResourceId"] = (
                transaction.synthetics_data.resource_id
            )
        event = [intrinsics, dict(transaction.custom_attributes), {}]
        return self.add(event, transaction.priority)


class CustomEventAggregator(EventAggregator):
    method = "custom_event_data"

    def record(self, event_type: str, attributes: dict[str, AttributeValue]) -> bool:
        """Record a custom event.

        Args:
            event_type: Alphanumerics, ':', '_' and spaces, at most 255 chars.
            attributes: Flat attribute map.

        Returns:
            False if the event was invalid or not kept.
        """
        if not CUSTOM_EVENT_TYPE.match(event_type):
            logger.warning(
                "Custom event type %r must match %s, dropping event.",
                event_type,
                CUSTOM_EVENT_TYPE.pattern,
            )
            return False
        if len(event_type) > MAX_EVENT_TYPE_LENGTH:
            logger.warning("Custom event type is too long, dropping event.")
            return False
        priority = random.random()
        intrinsics = {
            "type": event_type,
            "timestamp": int(time.time() * 1000),
            "priority": priority,
        }
        return self.add([intrinsics, dict(attributes)], priority)


class LogEventAggregator(EventAggregator):
    """Buffer for forwarded application logs.

    The payload is ``[{"common": {"attributes": {}}, "logs": [...]}]``;
    the run id travels in the request URL only.
    """

    method = "log_event_data"

    def __init__(
        self,
        period: float,
        limit: int,
        enabled: Callable[[], bool] | None = None,
        common_attributes: dict[str, AttributeValue] | None = None,
    ) -> None:
        super().__init__(period=period, limit=limit, enabled=enabled)
        self.common_attributes = dict(common_attributes or {})

    def add_log(
        self,
        timestamp: float,
        level: str,
        message: str,
        attributes: dict[str, AttributeValue] | None = None,
        priority: float | None = None,
    ) -> bool:
        """Add one log line; ``timestamp`` is in seconds."""
        entry: dict[str, AttributeValue] = dict(attributes or {})
        entry.update(
            {"timestamp": int(timestamp * 1000), "level": level, "message": message}
        )
        return self.add(entry, priority)

    def _to_payload(self, run_id: str) -> list[Any] | None:
        if not len(self._events):
            return None
        logs = sorted(self._events, key=lambda entry: entry["timestamp"])
        return [{"common": {"attributes": dict(self.common_attributes)}, "logs": logs}]


class ErrorTraceAggregator(Aggregator):
    """Capped list of error traces for ``error_data``.

    Args:
        period: Seconds between harvests.
        max_traces: Errors kept per harvest.
        enabled: Live predicate for ``collect_errors``.
        strip_messages: Live predicate for ``strip_exception_messages``.
    """

    method = "error_data"

    def __init__(
        self,
        period: float,
        max_traces: int = 20,
        enabled: Callable[[], bool] | None = None,
        strip_messages: Callable[[], bool] | None = None,
    ) -> None:
        super().__init__(period=period, enabled=enabled)
        self.max_traces = max_traces
        self.seen = 0
        self._strip_messages = strip_messages
        self._lock = threading.Lock()
        self._errors: list[list[Any]] = []

    def __len__(self) -> int:
        return len(self._errors)

    @property
    def errors(self) -> list[list[Any]]:
        return list(self._errors)

    def add(self, transaction_name: str, error: ErrorRecord) -> bool:
        message = error.message
        if self._strip_messages is not None and self._strip_messages():
            message = STRIPPED_MESSAGE
        trace = [
            int(error.timestamp * 1000),
            transaction_name,
            message,
            error.error_type,
            {
                "userAttributes": dict(error.attributes),
                "agentAttributes": {},
                "intrinsics": {},
            },
        ]
        with self._lock:
            self.seen += 1
            if len(self._errors) >= self.max_traces:
                logger.debug(
                    "Error trace limit reached, dropping %s.", error.error_type
                )
                return False
            self._errors.append(trace)
            return True

    def add_transaction(self, transaction: Transaction) -> None:
        name = transaction.finalize_name()
        for error in transaction.exceptions:
            self.add(name, error)

    def _to_payload(self, run_id: str) -> list[Any] | None:
        if not self._errors:
            return None
        return [run_id, list(self._errors)]

    def _get_merge_data(self) -> list[list[Any]]:
        return self._errors

    def _merge(self, data: list[list[Any]]) -> None:
        with self._lock:
            room = self.max_traces - len(self._errors)
            if room > 0:
                self._errors.extend(data[:room])

    def clear(self) -> None:
        with self._lock:
            self._errors = []
            self.seen = 0
