"""Agent: wires the sampler, aggregators, harvester and collector together.

One Agent owns one instance of every stateful component; nothing is a
module-level singleton. Finished transactions are handed to the
aggregators through the transaction's end callback.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

from harvestpy.adapters.collector.api import CollectorAPI, ConnectionState
from harvestpy.adapters.collector.serverless import ServerlessCollector
from harvestpy.adapters.context import ContextVarTransactionContext
from harvestpy.adapters.transport.httpx_transport import HttpxTransport
from harvestpy.core.config import AgentSettings
from harvestpy.core.errors import ConfigurationError, ConnectCancelledError
from harvestpy.core.events import (
    CustomEventAggregator,
    ErrorTraceAggregator,
    LogEventAggregator,
    TransactionEventAggregator,
)
from harvestpy.core.harvest import Harvester, HarvestReport
from harvestpy.core.metrics import MetricAggregator
from harvestpy.core.models import AttributeValue, ErrorRecord, Transaction
from harvestpy.core.ports import (
    CollectorPort,
    CollectorTransportPort,
    TransactionContextPort,
)
from harvestpy.core.sampler import AdaptiveSampler
from harvestpy.core.traces import TraceAggregator

logger = logging.getLogger(__name__)


class AgentState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STARTED = "started"
    DISCONNECTED = "disconnected"
    STOPPING = "stopping"
    ERRORED = "errored"


class Agent:
    """The telemetry pipeline of one monitored process.

    Args:
        settings: Agent settings, loaded from the environment by default.
        transport: Transport for the default CollectorAPI.
        collector: Replaces the default collector entirely.
        context: Tracks the active transaction.
        sleep: Coroutine used for connect backoff waits.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        transport: CollectorTransportPort | None = None,
        collector: CollectorPort | None = None,
        context: TransactionContextPort | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = s = settings if settings is not None else AgentSettings()
        self.serverless = s.serverless_mode.enabled
        self.context = context or ContextVarTransactionContext()
        self.sampler = AdaptiveSampler(
            s.sampling_target, s.sampling_target_period_in_seconds, self.serverless
        )

        period = s.data_report_period
        self.metrics = MetricAggregator(s.apdex_t, period)
        self.traces = TraceAggregator(
            period,
            top_n=s.transaction_tracer.top_n,
            transaction_threshold=s.transaction_tracer.transaction_threshold,
            enabled=lambda: s.collect_traces and s.transaction_tracer.enabled,
        )
        self.transaction_events = TransactionEventAggregator(
            period,
            s.transaction_events.max_samples_stored,
            enabled=lambda: s.transaction_events.enabled,
        )
        self.custom_events = CustomEventAggregator(
            period,
            s.custom_insights_events.max_samples_stored,
            enabled=lambda: (
                s.custom_insights_events.enabled
                and s.api.custom_events_enabled
                and not s.high_security
            ),
        )
        self.errors = ErrorTraceAggregator(
            period,
            s.error_collector.max_traces,
            enabled=lambda: s.collect_errors and s.error_collector.enabled,
            strip_messages=lambda: (
                s.strip_exception_messages.enabled or s.high_security
            ),
        )
        self.logs = LogEventAggregator(
            period,
            s.application_logging.forwarding.max_samples_stored,
            enabled=lambda: s.application_logging.forwarding.enabled,
        )

        if collector is None:
            if self.serverless:
                collector = ServerlessCollector(s)
            else:
                collector = CollectorAPI(
                    s,
                    transport or HttpxTransport(s),
                    sleep=sleep,
                    on_state=self._on_connection_state,
                    clear_data=self._clear_policy_data,
                )
        self.collector = collector
        self.harvester = Harvester(
            collector,
            [
                self.metrics,
                self.traces,
                self.transaction_events,
                self.custom_events,
                self.errors,
                self.logs,
            ],
            on_shutdown=self._on_forced_shutdown,
        )

        self._state = AgentState.STOPPED
        self._state_observers: list[Callable[[AgentState], None]] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._register_config_observers()

    @property
    def state(self) -> AgentState:
        return self._state

    def on_state(self, callback: Callable[[AgentState], None]) -> None:
        self._state_observers.append(callback)

    async def start(self) -> None:
        """Connect and start the harvest timers.

        Raises:
            ConfigurationError: If the settings cannot work, e.g. no license key.
        """
        if not self.settings.agent_enabled:
            logger.warning("The agent is disabled, not starting.")
            self._set_state(AgentState.STOPPED)
            return

        self._set_state(AgentState.STARTING)
        try:
            self.settings.validate_for_start()
        except ConfigurationError:
            self._set_state(AgentState.ERRORED)
            raise

        if self.serverless:
            logger.info("Starting in serverless mode.")
            self._set_state(AgentState.STARTED)
            return

        self._set_state(AgentState.CONNECTING)
        if isinstance(self.collector, CollectorAPI):
            self.collector.resume()
        try:
            response = await self.collector.connect()
        except ConnectCancelledError:
            logger.info("Connect cancelled, the agent was stopped.")
            return
        if self._stop_requested():
            logger.info("The agent was stopped while connecting.")
            # stop() already ran past its shutdown check once STOPPED is set.
            if self._state is AgentState.STOPPED and self.collector.is_connected:
                await self.collector.shutdown()
            return
        if response.should_shutdown_run():
            logger.error("The agent could not connect and will not start.")
            self._set_state(AgentState.ERRORED)
            return
        if not self.settings.agent_enabled:
            await self.stop()
            return

        self.sampler.start()
        self.harvester.start()
        self._set_state(AgentState.STARTED)

    async def stop(self) -> None:
        """Cancel pending work and end the agent run."""
        if self._state in (AgentState.STOPPED, AgentState.STOPPING):
            return
        self._set_state(AgentState.STOPPING)
        self.collector.cancel()
        self.sampler.stop()
        await self.harvester.stop()
        if not self.serverless and self.collector.is_connected:
            await self.collector.shutdown()
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()
        self._set_state(AgentState.STOPPED)

    async def harvest_all(self) -> HarvestReport:
        """Harvest every data kind now.

        In serverless mode the buffered payloads are also flushed to stdout.
        """
        report = await self.harvester.harvest_all()
        if isinstance(self.collector, ServerlessCollector):
            self.collector.flush()
        return report

    def create_transaction(
        self, name: str | None = None, url: str | None = None, web: bool = True
    ) -> Transaction:
        """Start a transaction and decide whether it is sampled."""
        transaction = Transaction(
            apdex_t=self.settings.apdex_t,
            max_segments=self.settings.max_trace_segments,
            name=name,
            url=url,
            web=web,
            on_end=self._transaction_finished,
        )
        if self.serverless:
            self.sampler.maybe_update_window(transaction.start_time)
        transaction.calculate_priority(self.sampler)
        return transaction

    def notice_error(self, exc: BaseException, **attributes: AttributeValue) -> None:
        """Record an exception on the active transaction, or on its own."""
        transaction = self.context.get_transaction()
        if transaction is not None:
            transaction.add_exception(exc, **attributes)
            return
        if not self.errors.enabled:
            return
        record = ErrorRecord(
            timestamp=time.time(),
            message=str(exc),
            error_type=type(exc).__name__,
            attributes=attributes,
        )
        self.errors.add("Unknown", record)
        self.metrics.get_or_create_metric("Errors/all").increment_call_count()

    def record_custom_event(
        self, event_type: str, attributes: dict[str, AttributeValue]
    ) -> bool:
        if not self.custom_events.enabled:
            logger.debug("Custom events are disabled, dropping %s.", event_type)
            return False
        return self.custom_events.record(event_type, attributes)

    def _transaction_finished(self, transaction: Transaction) -> None:
        if transaction.is_ignored():
            logger.debug("Ignoring transaction %s.", transaction.name)
            return
        self.metrics.merge(transaction.metrics)
        self.metrics.record_supportability("Transaction/Count")
        self.traces.add(transaction)
        if self.transaction_events.enabled:
            self.transaction_events.add_transaction(transaction)
        if transaction.exceptions and self.errors.enabled:
            self.errors.add_transaction(transaction)
            stats = self.metrics.get_or_create_metric("Errors/all")
            stats.increment_call_count(len(transaction.exceptions))

    def _register_config_observers(self) -> None:
        s = self.settings
        s.on_change("sampling_target", self._set_sampling_target)
        s.on_change("sampling_target_period_in_seconds", self._set_sampling_period)
        s.on_change("data_report_period", self.harvester.reconfigure)
        s.on_change("apdex_t", self._set_apdex_t)
        s.on_change("transaction_tracer.top_n", self._set_top_n)
        s.on_change(
            "transaction_tracer.transaction_threshold", self._set_trace_threshold
        )
        s.on_change("agent_enabled", self._on_agent_enabled)
        s.on_change("change", self._on_settings_changed)

    def _set_sampling_target(self, value: int) -> None:
        self.sampler.sampling_target = value

    def _set_sampling_period(self, value: float) -> None:
        self.sampler.sampling_period = value

    def _set_apdex_t(self, value: float) -> None:
        self.metrics.apdex_t = value

    def _set_top_n(self, value: int) -> None:
        self.traces.capacity = value

    def _set_trace_threshold(self, value: float | str | None) -> None:
        self.traces.transaction_threshold = value

    def _on_agent_enabled(self, enabled: bool) -> None:
        if not enabled and self._state is not AgentState.STOPPED:
            logger.warning("The agent was disabled by configuration, stopping.")
            self._schedule(self.stop())

    def _on_settings_changed(self, diff: dict[str, Any]) -> None:
        if self._stop_requested():
            return
        if isinstance(self.collector, CollectorAPI) and self.collector.is_connected:
            self._schedule(self.collector.report_settings())

    def _on_connection_state(self, state: ConnectionState) -> None:
        if self._stop_requested():
            return
        if state is ConnectionState.CONNECTED:
            self._set_state(AgentState.CONNECTED)
            if self.harvester.running:
                self._set_state(AgentState.STARTED)
        elif state is ConnectionState.DISCONNECTED and self._state in (
            AgentState.CONNECTED,
            AgentState.STARTED,
        ):
            self._set_state(AgentState.DISCONNECTED)

    def _on_forced_shutdown(self) -> None:
        logger.error("The collector shut this agent down.")
        self._schedule(self.stop())

    def _clear_policy_data(self, policy: str) -> None:
        targets = {
            "record_sql": (self.traces,),
            "attributes_include": (self.traces, self.transaction_events, self.errors),
            "allow_raw_exception_messages": (self.errors,),
            "custom_events": (self.custom_events,),
            "custom_parameters": (self.transaction_events, self.errors),
        }
        for aggregator in targets.get(policy, ()):
            aggregator.clear()

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping %r.", coro)
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _stop_requested(self) -> bool:
        return self._state in (AgentState.STOPPING, AgentState.STOPPED)

    def _set_state(self, state: AgentState) -> None:
        if state is self._state:
            return
        logger.debug(
            "Agent state changed from %s to %s.", self._state.value, state.value
        )
        self._state = state
        for callback in list(self._state_observers):
            callback(state)
