"""BDD step definitions for harvest verdicts and trace selection."""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

import pytest
from pytest_bdd import given, parsers, then, when

from harvestpy.core.harvest import Aggregator, Harvester
from harvestpy.core.metrics import MetricAggregator
from harvestpy.core.models import Transaction
from harvestpy.core.response import CollectorResponse, classify_status
from harvestpy.core.traces import TraceAggregator


class StepCollector:
    """CollectorPort answering each method with a configured status.

    Sends and restarts yield to the event loop once, so concurrent
    harvests interleave the way they do against a real collector.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, int] = {}
        self.default_status = 200
        self.sent: list[tuple[str, Any]] = []
        self.restarts = 0
        self._run_id: str | None = "run-1"

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def is_connected(self) -> bool:
        return self._run_id is not None

    async def connect(self) -> CollectorResponse:
        self._run_id = "run-1"
        return CollectorResponse.success()

    async def send(self, method: str, payload: Any) -> CollectorResponse:
        await asyncio.sleep(0)
        self.sent.append((method, payload))
        response = classify_status(self.statuses.get(method, self.default_status))
        if response.should_shutdown_run():
            self._run_id = None
        return response

    async def restart(self) -> CollectorResponse:
        await asyncio.sleep(0)
        self.restarts += 1
        self._run_id = f"run-{self.restarts + 1}"
        return CollectorResponse.success()

    async def shutdown(self) -> CollectorResponse:
        self._run_id = None
        return CollectorResponse.fatal()

    def cancel(self) -> None:
        pass


class ItemAggregator(Aggregator):
    """Aggregator buffering plain items for an arbitrary method."""

    def __init__(self, method: str) -> None:
        super().__init__(period=60)
        self.method = method
        self.items: list[Any] = []

    def _to_payload(self, run_id: str) -> list[Any] | None:
        return [run_id, list(self.items)] if self.items else None

    def _get_merge_data(self) -> list[Any]:
        return self.items

    def _merge(self, data: list[Any]) -> None:
        self.items = data + self.items

    def clear(self) -> None:
        self.items = []


@dataclass
class HarvestScenarioContext:
    """Shared state between steps in a harvest scenario."""

    collector: StepCollector = field(default_factory=StepCollector)
    metrics: MetricAggregator = field(
        default_factory=lambda: MetricAggregator(apdex_t=0.5, period=60)
    )
    traces: TraceAggregator = field(default_factory=lambda: TraceAggregator(60))
    extra: list[Aggregator] = field(default_factory=list)
    metric_count: int = 0
    apdex_t: float = 0.5
    shutdown_requested: bool = False

    def harvester(self, *aggregators: Aggregator) -> Harvester:
        return Harvester(
            self.collector, aggregators, on_shutdown=self._on_shutdown
        )

    def record_metrics(self, n: int) -> None:
        for _ in range(n):
            name = f"Custom/metric{self.metric_count}"
            self.metrics.get_or_create_metric(name).increment_call_count()
            self.metric_count += 1

    def _on_shutdown(self) -> None:
        self.shutdown_requested = True


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine synchronously."""
    return asyncio.run(coro)


@pytest.fixture
def ctx() -> HarvestScenarioContext:
    """Fresh scenario context for each test."""
    return HarvestScenarioContext()


# === Collector Steps ===
@given("a connected collector")
def step_connected_collector(ctx: HarvestScenarioContext) -> None:
    run_async(ctx.collector.connect())


@given(
    parsers.re(r"the collector answers (?P<method>\w+) with status (?P<status>\d+)"),
    converters={"status": int},
)
def step_method_status(
    ctx: HarvestScenarioContext, method: str, status: int
) -> None:
    ctx.collector.statuses[method] = status


@given(parsers.parse("the collector answers every method with status {status:d}"))
def step_default_status(ctx: HarvestScenarioContext, status: int) -> None:
    ctx.collector.default_status = status


# === Aggregator Steps ===
@given(parsers.parse("a metric aggregator holding {n:d} metrics"))
def step_metric_aggregator(ctx: HarvestScenarioContext, n: int) -> None:
    ctx.record_metrics(n)


@given(parsers.parse("{n:d} more data kinds each holding data"))
def step_more_data_kinds(ctx: HarvestScenarioContext, n: int) -> None:
    for i in range(n):
        aggregator = ItemAggregator(f"kind_{i}_data")
        aggregator.items.append({"index": i})
        ctx.extra.append(aggregator)


@when(parsers.parse("{n:d} more metrics are recorded"))
def step_record_more(ctx: HarvestScenarioContext, n: int) -> None:
    ctx.record_metrics(n)


@when("the metric data is harvested")
def step_harvest_metrics(ctx: HarvestScenarioContext) -> None:
    harvester = ctx.harvester(ctx.metrics)
    run_async(harvester.harvest(ctx.metrics))


@when("every data kind is harvested at the same time")
def step_harvest_concurrently(ctx: HarvestScenarioContext) -> None:
    aggregators = [ctx.metrics, *ctx.extra]
    harvester = ctx.harvester(*aggregators)

    async def harvest_together() -> None:
        await asyncio.gather(*(harvester.harvest(a) for a in aggregators))

    run_async(harvest_together())


@then(parsers.parse("the metric aggregator holds {n:d} metrics"))
def step_metric_count(ctx: HarvestScenarioContext, n: int) -> None:
    assert len(ctx.metrics) == n


@then("the agent run is kept")
def step_run_kept(ctx: HarvestScenarioContext) -> None:
    assert ctx.collector.is_connected
    assert not ctx.shutdown_requested


@then("the agent is told to shut down")
def step_told_to_shut_down(ctx: HarvestScenarioContext) -> None:
    assert ctx.shutdown_requested
    assert not ctx.collector.is_connected


@then(parsers.parse("the collector was restarted {n:d} time"))
def step_restart_count(ctx: HarvestScenarioContext, n: int) -> None:
    assert ctx.collector.restarts == n


# === Trace Steps ===
@given("a trace aggregator")
def step_trace_aggregator(ctx: HarvestScenarioContext) -> None:
    ctx.traces = TraceAggregator(60)


@given(parsers.parse("transactions with an apdex_t of {apdex_t:f} seconds"))
def step_apdex_t(ctx: HarvestScenarioContext, apdex_t: float) -> None:
    ctx.apdex_t = apdex_t


@given(parsers.parse("the transaction threshold is {threshold:f} seconds"))
def step_threshold(ctx: HarvestScenarioContext, threshold: float) -> None:
    ctx.traces.transaction_threshold = threshold


@when(parsers.parse('a transaction named "{name}" takes {duration:d} ms'))
def step_transaction(ctx: HarvestScenarioContext, name: str, duration: int) -> None:
    transaction = Transaction(apdex_t=ctx.apdex_t, name=name)
    transaction.trace.set_duration_in_millis(duration)
    transaction.end()
    ctx.traces.add(transaction)


@when("the traces are harvested")
def step_harvest_traces(ctx: HarvestScenarioContext) -> None:
    harvester = ctx.harvester(ctx.traces)
    run_async(harvester.harvest(ctx.traces))


@then("no trace is kept")
def step_no_trace(ctx: HarvestScenarioContext) -> None:
    assert ctx.traces.trace is None


@then(parsers.parse('the kept trace is "{name}" at {duration:d} ms'))
def step_kept_trace(ctx: HarvestScenarioContext, name: str, duration: int) -> None:
    trace = ctx.traces.trace
    assert trace is not None
    assert trace.name == name
    assert trace.duration == duration


@then(parsers.parse("{n:d} trace was sent"))
def step_traces_sent(ctx: HarvestScenarioContext, n: int) -> None:
    [(method, payload)] = ctx.collector.sent
    assert method == "transaction_sample_data"
    assert len(payload[1]) == n
