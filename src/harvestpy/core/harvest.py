"""Generic harvest cycle shared by every data kind.

Each data kind is an Aggregator: it buffers items, turns them into a
payload for one collector method and knows how to fold a payload's source
data back in when the collector asks for a retry. The Harvester runs one
timer per aggregator and reacts to the collector's verdict.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from harvestpy.core.errors import ConnectCancelledError
from harvestpy.core.ports import CollectorPort
from harvestpy.core.response import CollectorResponse

logger = logging.getLogger(__name__)


class Aggregator(ABC):
    """Buffer for one data kind and the collector method that ships it.

    Subclasses set ``method`` and implement the four hooks. ``clear`` must
    replace the buffered state rather than mutate the object returned by
    ``_get_merge_data``, since that object is merged back on retain.

    Args:
        period: Seconds between harvests.
        enabled: Predicate evaluated against live settings on every harvest.
    """

    method: str = ""

    def __init__(
        self, period: float, enabled: Callable[[], bool] | None = None
    ) -> None:
        self.period = period
        self._enabled = enabled
        self._sending = False

    @property
    def enabled(self) -> bool:
        return self._enabled is None or self._enabled()

    @property
    def sending(self) -> bool:
        return self._sending

    @abstractmethod
    def _to_payload(self, run_id: str) -> Any | None:
        """Build the method arguments, None when there is nothing to send."""

    @abstractmethod
    def _get_merge_data(self) -> Any:
        """Snapshot of the buffered data, handed back to ``_merge`` on retain."""

    @abstractmethod
    def _merge(self, data: Any) -> None:
        """Fold a retained snapshot back in, within the buffer's bounds."""

    @abstractmethod
    def clear(self) -> None:
        """Drop per-window state."""

    def _after_send(self, response: CollectorResponse) -> None:
        """Hook called once the collector has answered."""

    async def send(self, collector: CollectorPort) -> CollectorResponse | None:
        """Harvest this aggregator once.

        Nothing is cleared when the aggregator is disabled, the collector
        is not connected or a send for this kind is already in flight.
        Otherwise ``clear`` runs exactly once, whatever the outcome.

        Args:
            collector: Connection to send through.

        Returns:
            The collector's response, or None when nothing was sent.
        """
        if not self.enabled:
            logger.debug("%s is disabled, skipping harvest.", self.method)
            return None
        if not collector.is_connected:
            logger.debug("Not connected, skipping %s harvest.", self.method)
            return None
        if self._sending:
            logger.debug("%s harvest already in flight.", self.method)
            return None

        self._sending = True
        try:
            data = self._get_merge_data()
            payload = self._to_payload(collector.run_id or "")
            self.clear()
            if payload is None:
                logger.debug("No %s data to send.", self.method)
                return None

            response = await collector.send(self.method, payload)
            if response.retain_data:
                logger.debug("Keeping %s data for the next harvest.", self.method)
                self._merge(data)
            self._after_send(response)
            return response
        finally:
            self._sending = False


@dataclass(frozen=True)
class HarvestReport:
    """Responses from one ``harvest_all`` pass, keyed by method.

    Methods that sent nothing are absent.
    """

    responses: dict[str, CollectorResponse] = field(default_factory=dict)

    @property
    def restart_requested(self) -> bool:
        return any(r.should_restart_run() for r in self.responses.values())

    @property
    def shutdown_requested(self) -> bool:
        return any(r.should_shutdown_run() for r in self.responses.values())


class Harvester:
    """Runs the harvest timers and reacts to collector verdicts.

    A reconnect verdict restarts the collector connection once, even when
    several data kinds report it concurrently. A fatal verdict calls
    ``on_shutdown``; the callback is responsible for stopping the agent.

    Args:
        collector: Connection every aggregator sends through.
        aggregators: Initial data kinds.
        on_shutdown: Called when the collector orders the run to stop.
    """

    def __init__(
        self,
        collector: CollectorPort,
        aggregators: Iterable[Aggregator] = (),
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        self._collector = collector
        self._aggregators: dict[str, Aggregator] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._restart_lock = asyncio.Lock()
        self._on_shutdown = on_shutdown
        self._running = False
        for aggregator in aggregators:
            self.add(aggregator)

    @property
    def aggregators(self) -> list[Aggregator]:
        return list(self._aggregators.values())

    @property
    def running(self) -> bool:
        return self._running

    def add(self, aggregator: Aggregator) -> None:
        if aggregator.method in self._aggregators:
            raise ValueError(f"Duplicate aggregator for {aggregator.method}")
        self._aggregators[aggregator.method] = aggregator
        if self._running:
            self._start_timer(aggregator)

    def get(self, method: str) -> Aggregator:
        return self._aggregators[method]

    def start(self) -> None:
        """Start one harvest timer per aggregator on the running loop."""
        if self._running:
            return
        self._running = True
        for aggregator in self._aggregators.values():
            self._start_timer(aggregator)

    async def stop(self) -> None:
        """Cancel the harvest timers and wait for them to finish."""
        self._running = False
        current = asyncio.current_task()
        tasks = [t for t in self._tasks.values() if t is not current]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def reconfigure(self, period: float, method: str | None = None) -> None:
        """Change the harvest period of one method, or of all of them."""
        targets = (
            [self._aggregators[method]] if method else self._aggregators.values()
        )
        for aggregator in targets:
            aggregator.period = period
            # An in-flight send picks the new period up on its next sleep.
            if aggregator.sending:
                continue
            task = self._tasks.pop(aggregator.method, None)
            if task is not None:
                task.cancel()
            if self._running:
                self._start_timer(aggregator)

    async def harvest(self, aggregator: Aggregator) -> CollectorResponse | None:
        """Send one aggregator and act on the response."""
        run_id = self._collector.run_id
        response = await aggregator.send(self._collector)
        if response is not None:
            await self._handle(aggregator.method, response, run_id)
        return response

    async def harvest_all(self) -> HarvestReport:
        """Send every aggregator once, in registration order."""
        responses: dict[str, CollectorResponse] = {}
        for aggregator in list(self._aggregators.values()):
            response = await self.harvest(aggregator)
            if response is not None:
                responses[aggregator.method] = response
            if response is not None and response.should_shutdown_run():
                break
        return HarvestReport(responses)

    async def _handle(
        self, method: str, response: CollectorResponse, run_id: str | None
    ) -> None:
        if response.should_restart_run():
            async with self._restart_lock:
                if self._collector.run_id != run_id:
                    logger.debug("Connection already restarted after %s.", method)
                    return
                logger.info("Collector asked for a reconnect after %s.", method)
                try:
                    restarted = await self._collector.restart()
                except ConnectCancelledError:
                    logger.debug("Reconnect after %s was cancelled.", method)
                    return
            if restarted.should_shutdown_run():
                self._shutdown(method)
        elif response.should_shutdown_run():
            self._shutdown(method)

    def _shutdown(self, method: str) -> None:
        logger.error("Collector ordered a shutdown after %s.", method)
        self._running = False
        if self._on_shutdown is not None:
            self._on_shutdown()

    def _start_timer(self, aggregator: Aggregator) -> None:
        loop = asyncio.get_running_loop()
        self._tasks[aggregator.method] = loop.create_task(self._run(aggregator))

    async def _run(self, aggregator: Aggregator) -> None:
        while self._running:
            await asyncio.sleep(aggregator.period)
            try:
                await self.harvest(aggregator)
            except Exception:
                logger.exception("Harvest of %s failed.", aggregator.method)
