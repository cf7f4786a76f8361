"""Core domain models for transactions and their traces.

A Transaction owns exactly one Trace. The Trace keeps its segments in an
arena (a flat list) and every TraceSegment refers to its parent by index,
so the tree has no reference cycles and serializes without recursion
through live objects.
"""

import random
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from harvestpy.core.metrics import Metrics

ROOT_SEGMENT_ID = 0

AttributeValue = str | int | float | bool


class Sampler(Protocol):
    def should_sample(self, roll: float) -> bool: ...


@dataclass(frozen=True)
class SyntheticsData:
    """Synthetic-monitoring identifiers attached to a transaction.

    Attributes:
        version: Synthetics header version.
        account_id: Account that owns the monitor.
        resource_id: Identifier of this monitor run.
        job_id: Identifier of the job.
        monitor_id: Identifier of the monitor.
    """

    version: int
    account_id: int
    resource_id: str
    job_id: str
    monitor_id: str


@dataclass(frozen=True)
class ErrorRecord:
    """An exception noticed during a transaction.

    Attributes:
        timestamp: Unix timestamp in seconds.
        message: Exception message.
        error_type: Exception class name.
        attributes: Extra structured fields.
    """

    timestamp: float
    message: str
    error_type: str
    attributes: dict[str, AttributeValue] = field(default_factory=dict)


@dataclass
class TraceSegment:
    """One node of a trace tree.

    Times are epoch milliseconds. ``parent`` is the index of the parent
    segment in the owning Trace, None for the root.
    """

    id: int
    name: str
    parent: int | None
    start: float
    duration: float | None = None
    call_count: int = 1
    collect: bool = True
    children: list[int] = field(default_factory=list)
    attributes: dict[str, AttributeValue] = field(default_factory=dict)

    def end(self, timestamp: float | None = None) -> None:
        if self.duration is not None:
            return
        end = time.time() * 1000 if timestamp is None else timestamp
        self.duration = max(end - self.start, 0.0)

    def get_duration_in_millis(self) -> float:
        return self.duration or 0.0


class Trace:
    """Segment tree recorded for one transaction.

    Args:
        max_segments: Number of segments kept for serialization. Segments
            past this cap are still counted in ``segments_seen``.
        start: Epoch milliseconds of the root segment, defaults to now.
    """

    def __init__(self, max_segments: int = 900, start: float | None = None) -> None:
        self.max_segments = max_segments
        self.start = time.time() * 1000 if start is None else start
        self.segments_seen = 0
        self.custom_attributes: dict[str, AttributeValue] = {}
        self.agent_attributes: dict[str, AttributeValue] = {}
        self.intrinsics: dict[str, AttributeValue] = {}
        self._segments: list[TraceSegment] = []
        self._duration: float | None = None
        self.root = self._segments_append("ROOT", None, self.start)

    def __len__(self) -> int:
        return len(self._segments)

    @property
    def segments(self) -> list[TraceSegment]:
        return list(self._segments)

    @property
    def exceeds_segment_limit(self) -> bool:
        return self.segments_seen > self.max_segments

    def segment(self, segment_id: int) -> TraceSegment:
        return self._segments[segment_id]

    def add_segment(
        self,
        name: str,
        parent: int = ROOT_SEGMENT_ID,
        start: float | None = None,
    ) -> TraceSegment:
        """Add a child segment under ``parent``.

        Args:
            name: Segment name, usually a metric name.
            parent: Index of the parent segment.
            start: Epoch milliseconds, defaults to now.

        Returns:
            The new segment.
        """
        if parent >= len(self._segments):
            raise IndexError(f"Unknown parent segment {parent}")
        segment = self._segments_append(
            name, parent, time.time() * 1000 if start is None else start
        )
        self._segments[parent].children.append(segment.id)
        return segment

    def set_duration_in_millis(self, duration: float, start_offset: float = 0) -> None:
        """Set the trace duration independently of the wall clock."""
        self._duration = duration
        root = self.root
        root.start = self.start + start_offset
        root.duration = duration

    def get_duration_in_millis(self) -> float:
        if self._duration is not None:
            return self._duration
        return self.root.get_duration_in_millis()

    def end(self, timestamp: float | None = None) -> None:
        if self._duration is None:
            self.root.end(timestamp)

    def to_json(self) -> list[Any]:
        """Serialize to the collector's root node layout."""
        return [
            self.start / 1000,
            {},
            {"nr_flatten_leading": False},
            self._segment_json(self.root),
            {
                "agentAttributes": dict(self.agent_attributes),
                "userAttributes": dict(self.custom_attributes),
                "intrinsics": dict(self.intrinsics),
            },
            [],
        ]

    def _segments_append(
        self, name: str, parent: int | None, start: float
    ) -> TraceSegment:
        # The root is not counted against the cap.
        if parent is not None:
            self.segments_seen += 1
        segment = TraceSegment(
            id=len(self._segments),
            name=name,
            parent=parent,
            start=start,
            collect=parent is None or self.segments_seen <= self.max_segments,
        )
        self._segments.append(segment)
        return segment

    def _segment_json(self, segment: TraceSegment) -> list[Any]:
        start = segment.start - self.start
        children = [
            self._segment_json(self._segments[child])
            for child in segment.children
            if self._segments[child].collect
        ]
        return [
            start,
            start + segment.get_duration_in_millis(),
            segment.name,
            dict(segment.attributes),
            children,
        ]


class Transaction:
    """One logical unit of work.

    The name stays provisional until ``finalize_name`` or ``end`` runs.
    ``end`` is effective once; the ``on_end`` callback receives the
    finished transaction and must copy out whatever it keeps.

    Args:
        apdex_t: Apdex threshold in seconds for this transaction's metrics.
        max_segments: Segment cap for the trace.
        name: Provisional name.
        url: Request path for web transactions.
        web: False for background work.
        priority: Priority assigned upstream, None to roll one.
        on_end: Called exactly once with the transaction when it ends.
    """

    def __init__(
        self,
        apdex_t: float = 0.1,
        max_segments: int = 900,
        name: str | None = None,
        url: str | None = None,
        web: bool = True,
        priority: float | None = None,
        on_end: Callable[["Transaction"], None] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:16]
        self.trace_id = uuid.uuid4().hex
        self.url = url
        self.web = web
        self.start_time = time.time()
        self.priority = priority
        self.sampled = False
        self.ignore = False
        self.force_ignore: bool | None = None
        self.status_code: int | None = None
        self.metrics = Metrics(apdex_t)
        self.trace = Trace(max_segments, start=self.start_time * 1000)
        self.synthetics_data: SyntheticsData | None = None
        self.exceptions: list[ErrorRecord] = []
        self.custom_attributes: dict[str, AttributeValue] = {}
        self._partial_name = name
        self._name: str | None = None
        self._on_end = on_end
        self._ended = False

    @property
    def name(self) -> str | None:
        """Final name, or None while the name is provisional."""
        return self._name

    @property
    def partial_name(self) -> str | None:
        return self._partial_name

    @partial_name.setter
    def partial_name(self, value: str) -> None:
        self._partial_name = value

    @property
    def is_active(self) -> bool:
        return not self._ended

    @property
    def is_synthetic(self) -> bool:
        return self.synthetics_data is not None

    def is_ignored(self) -> bool:
        """force_ignore, when set, overrides ignore."""
        if self.force_ignore is not None:
            return self.force_ignore
        return self.ignore

    def get_duration_in_millis(self) -> float:
        return self.trace.get_duration_in_millis()

    def calculate_priority(self, sampler: Sampler) -> None:
        """Roll a priority and ask the sampler whether to trace in full.

        Sampled transactions get ``priority + 1`` so they always outrank
        unsampled ones. Priorities are truncated to six decimals.
        """
        if self.priority is not None:
            return
        priority = random.random()
        self.sampled = sampler.should_sample(priority)
        if self.sampled:
            priority += 1
        self.priority = int(priority * 1e6) / 1e6

    def finalize_name(self, name: str | None = None) -> str:
        if self._name is not None:
            return self._name
        base = name or self._partial_name
        if base is None:
            base = self.url or "*"
        if base.startswith(("WebTransaction/", "OtherTransaction/")):
            self._name = base
        elif self.web:
            self._name = "WebTransaction/Uri/" + base.lstrip("/")
        else:
            self._name = "OtherTransaction/Custom/" + base.lstrip("/")
        return self._name

    def add_exception(self, exc: BaseException, **attributes: AttributeValue) -> None:
        self.exceptions.append(
            ErrorRecord(
                timestamp=time.time(),
                message=str(exc),
                error_type=type(exc).__name__,
                attributes=attributes,
            )
        )

    def end(self, timestamp: float | None = None) -> bool:
        """Finish the transaction.

        Args:
            timestamp: Epoch milliseconds, defaults to now.

        Returns:
            False if the transaction had already ended.
        """
        if self._ended:
            return False
        self._ended = True
        self.trace.end(timestamp)
        self.finalize_name()
        self._record_metrics()
        if self._on_end is not None:
            self._on_end(self)
        return True

    def _record_metrics(self) -> None:
        duration = self.get_duration_in_millis()
        name = self._name or ""
        self.metrics.measure_milliseconds(name, duration)
        if self.web:
            self.metrics.measure_milliseconds("WebTransaction", duration)
            self.metrics.measure_milliseconds("HttpDispatcher", duration)
            apdex_name = "Apdex/" + name.removeprefix("WebTransaction/")
            for metric in (apdex_name, "Apdex"):
                apdex = self.metrics.get_or_create_apdex_metric(metric)
                if self.exceptions:
                    apdex.increment_frustrating()
                else:
                    apdex.record_duration(duration / 1000)
        else:
            self.metrics.measure_milliseconds("OtherTransaction/all", duration)
