"""Python logging handler that forwards application logs.

This adapter bridges Python's standard library logging module to the
``log_event_data`` buffer, so application log lines are harvested with the
rest of the telemetry.
"""

import logging
import traceback

from harvestpy.core.events import LogEventAggregator
from harvestpy.core.models import AttributeValue
from harvestpy.core.ports import TransactionContextPort

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_LOGRECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
}

# Records from the agent itself are never forwarded.
_OWN_LOGGER_PREFIX = "harvestpy"


class LogForwardingHandler(logging.Handler):
    """Logging handler that adds log records to a LogEventAggregator.

    Example:
        ```python
        handler = LogForwardingHandler(agent.logs, agent.context)
        logging.getLogger().addHandler(handler)
        ```
    """

    def __init__(
        self,
        aggregator: LogEventAggregator,
        context: TransactionContextPort | None = None,
    ) -> None:
        """Initialize the handler with the log event buffer.

        Args:
            aggregator: Buffer for ``log_event_data``.
            context: Used to tag lines logged inside a transaction.
        """
        super().__init__()
        self._aggregator = aggregator
        self._context = context

    def emit(self, record: logging.LogRecord) -> None:
        """Add a log record to the buffer.

        Args:
            record: The log record to emit.
        """
        if record.name.split(".")[0] == _OWN_LOGGER_PREFIX:
            return
        if not self._aggregator.enabled:
            return

        attributes: dict[str, AttributeValue] = {
            "logger.name": record.name,
            "thread.name": record.threadName or "",
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_LOGRECORD_ATTRS and isinstance(
                value, (str, int, float, bool)
            ):
                attributes[key] = value

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None:
                attributes["error.class"] = exc_type.__name__
            if exc_value is not None:
                attributes["error.message"] = str(exc_value)
            if exc_tb is not None:
                attributes["error.stack"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        priority = None
        if self._context is not None:
            transaction = self._context.get_transaction()
            if transaction is not None:
                attributes["trace.id"] = transaction.trace_id
                attributes["transaction.id"] = transaction.id
                priority = transaction.priority

        self._aggregator.add_log(
            timestamp=record.created,
            level=record.levelname,
            message=record.getMessage(),
            attributes=attributes,
            priority=priority,
        )
