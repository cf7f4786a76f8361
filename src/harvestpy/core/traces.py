"""Top-N slow transaction trace selection.

Per harvest window the TraceAggregator keeps one full trace: the slowest
one that passes the threshold, with name diversity across windows tracked
in ``request_times``. Synthetic-monitoring traces skip the competition and
fill their own bounded list.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any

from harvestpy.core.encoding.codec import encode_trace_node
from harvestpy.core.harvest import Aggregator
from harvestpy.core.models import Transaction
from harvestpy.core.response import CollectorResponse

logger = logging.getLogger(__name__)

MAX_SYNTHETICS_TRACES = 20
# Cold-start guarantee: the first traces are kept regardless of diversity.
REPORTED_GUARANTEE = 5
# Consecutive harvests without a trace before request_times is reset.
EMPTY_HARVESTS_BEFORE_RESET = 5


@dataclass(frozen=True)
class TraceSample:
    """Everything a trace payload needs, copied out of a finished transaction.

    Attributes:
        name: Final transaction name.
        start: Epoch milliseconds.
        duration: Milliseconds.
        apdex_t: Apdex threshold of the transaction, seconds.
        url: Request path, if any.
        guid: Transaction id.
        root_node: Serialized segment tree.
        segments_seen: Segments recorded, including ones past the cap.
        max_segments: Segment cap in force for this trace.
        synthetics_resource_id: Synthetics resource id, if synthetic.
    """

    name: str
    start: float
    duration: float
    apdex_t: float
    url: str | None
    guid: str
    root_node: list[Any]
    segments_seen: int
    max_segments: int
    synthetics_resource_id: str | None = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TraceSample":
        trace = transaction.trace
        synthetics = transaction.synthetics_data
        return cls(
            name=transaction.finalize_name(),
            start=trace.start,
            duration=transaction.get_duration_in_millis(),
            apdex_t=transaction.metrics.apdex_t,
            url=transaction.url,
            guid=transaction.id,
            root_node=trace.to_json(),
            segments_seen=trace.segments_seen,
            max_segments=trace.max_segments,
            synthetics_resource_id=synthetics.resource_id if synthetics else None,
        )

    @property
    def exceeds_segment_limit(self) -> bool:
        return self.segments_seen > self.max_segments

    def encode(self) -> list[Any]:
        """Encode to the collector's trace sample layout."""
        return [
            self.start,
            self.duration,
            self.name,
            self.url,
            encode_trace_node(self.root_node),
            self.guid,
            None,
            False,
            None,
            self.synthetics_resource_id,
        ]


class TraceAggregator(Aggregator):
    """Keeps the most interesting trace of each harvest window.

    Args:
        period: Seconds between harvests.
        top_n: Number of distinct names that can hold a diversity slot.
            0 tracks only the single slowest trace.
        transaction_threshold: Seconds, or "apdex_f" (or any falsy value)
            for four times the transaction's apdex_t.
        enabled: Live predicate for ``collect_traces`` and
            ``transaction_tracer.enabled``.
    """

    method = "transaction_sample_data"

    def __init__(
        self,
        period: float,
        top_n: int = 20,
        transaction_threshold: float | str | None = "apdex_f",
        enabled: Any = None,
    ) -> None:
        super().__init__(period=period, enabled=enabled)
        self.capacity = top_n
        self.transaction_threshold = transaction_threshold
        self.reported = 0
        self.no_trace_submitted = 0
        self._lock = threading.Lock()
        self._trace: TraceSample | None = None
        self._synthetics: list[TraceSample] = []
        self._request_times: dict[str, float] = {}
        self._trace_in_flight = False

    @property
    def trace(self) -> TraceSample | None:
        return self._trace

    @property
    def synthetics_traces(self) -> list[TraceSample]:
        return list(self._synthetics)

    @property
    def request_times(self) -> dict[str, float]:
        return dict(self._request_times)

    def add(self, transaction: Transaction) -> None:
        """Offer a finished transaction's trace.

        No-op when tracing is disabled or the transaction has no metrics.
        """
        if not self.enabled or transaction.metrics is None:
            return
        if transaction.is_synthetic:
            with self._lock:
                if len(self._synthetics) < MAX_SYNTHETICS_TRACES:
                    self._synthetics.append(TraceSample.from_transaction(transaction))
            return

        name = transaction.finalize_name()
        duration = transaction.get_duration_in_millis()
        with self._lock:
            if self._is_better(name, duration, transaction.metrics.apdex_t):
                self._accept(TraceSample.from_transaction(transaction))

    def is_better(self, name: str, duration: float, apdex_t: float) -> bool:
        """Return True if a trace would replace the current best one.

        Args:
            name: Transaction name.
            duration: Trace duration in milliseconds.
            apdex_t: Apdex threshold in seconds.
        """
        with self._lock:
            return self._is_better(name, duration, apdex_t)

    def get_traces(self) -> list[TraceSample]:
        """Traces for this harvest: synthetics first, then the best trace."""
        with self._lock:
            traces = list(self._synthetics)
            trace = self._trace
            if trace is not None:
                if trace.exceeds_segment_limit:
                    logger.warning(
                        "Transaction %s (%s) contained %d segments, only "
                        "collecting the first %d.",
                        trace.name,
                        trace.guid,
                        trace.segments_seen,
                        trace.max_segments,
                    )
                self.no_trace_submitted = 0
                traces.append(trace)
            else:
                self.no_trace_submitted += 1
                if self.no_trace_submitted >= EMPTY_HARVESTS_BEFORE_RESET:
                    self._reset_timing_tracker()
        return traces

    def clear(self) -> None:
        with self._lock:
            self._trace = None
            self._synthetics = []

    def _to_payload(self, run_id: str) -> list[Any] | None:
        self._trace_in_flight = self._trace is not None
        traces = self.get_traces()
        if not traces:
            return None
        return [run_id, [trace.encode() for trace in traces]]

    def _get_merge_data(self) -> tuple[TraceSample | None, list[TraceSample]]:
        return self._trace, list(self._synthetics)

    def _merge(self, data: tuple[TraceSample | None, list[TraceSample]]) -> None:
        trace, synthetics = data
        with self._lock:
            for sample in synthetics:
                if len(self._synthetics) >= MAX_SYNTHETICS_TRACES:
                    break
                self._synthetics.append(sample)
            if trace is not None and self._is_better(
                trace.name, trace.duration, trace.apdex_t
            ):
                self._accept(trace)

    def _after_send(self, response: CollectorResponse) -> None:
        if response.was_accepted() and self._trace_in_flight:
            self.reported += 1
        self._trace_in_flight = False

    def _threshold_ms(self, apdex_t: float) -> float:
        threshold = self.transaction_threshold
        if threshold and threshold != "apdex_f":
            return float(threshold) * 1000
        return 4 * apdex_t * 1000

    def _is_better(self, name: str, duration: float, apdex_t: float) -> bool:
        if duration <= self._threshold_ms(apdex_t):
            return False
        if self._trace is not None and self._trace.duration >= duration:
            return False
        if self.reported < REPORTED_GUARANTEE or self.capacity <= 0:
            return True
        if name in self._request_times:
            return self._request_times[name] < duration
        return len(self._request_times) < self.capacity

    def _accept(self, sample: TraceSample) -> None:
        self._trace = sample
        if self.capacity <= 0:
            return
        best = self._request_times.get(sample.name)
        if best is None or best < sample.duration:
            self._request_times[sample.name] = sample.duration

    def _reset_timing_tracker(self) -> None:
        self._request_times = {}
        self.no_trace_submitted = 0
