"""Timeslice metrics and the metric_data harvest aggregator."""

import threading
import time
from dataclasses import dataclass
from typing import Any

from harvestpy.core.harvest import Aggregator

FROM_MILLIS = 1e-3


@dataclass
class MetricStats:
    """Accumulated timings for one metric name and scope.

    Durations are stored in seconds, which is what the collector expects.
    """

    call_count: int = 0
    total: float = 0.0
    exclusive: float = 0.0
    min: float = 0.0
    max: float = 0.0
    sum_of_squares: float = 0.0

    def record_value(self, total: float, exclusive: float | None = None) -> None:
        """Record one call taking ``total`` seconds."""
        if exclusive is None:
            exclusive = total
        if self.call_count == 0 or total < self.min:
            self.min = total
        if total > self.max:
            self.max = total
        self.call_count += 1
        self.total += total
        self.exclusive += exclusive
        self.sum_of_squares += total * total

    def increment_call_count(self, count: int = 1) -> None:
        self.call_count += count

    def merge(self, other: "MetricStats") -> None:
        if other.call_count == 0:
            return
        if self.call_count == 0 or other.min < self.min:
            self.min = other.min
        if other.max > self.max:
            self.max = other.max
        self.call_count += other.call_count
        self.total += other.total
        self.exclusive += other.exclusive
        self.sum_of_squares += other.sum_of_squares

    def to_json(self) -> list[float]:
        return [
            self.call_count,
            self.total,
            self.exclusive,
            self.min,
            self.max,
            self.sum_of_squares,
        ]


@dataclass
class ApdexStats:
    """Satisfying / tolerating / frustrating counts for an apdex metric."""

    apdex_t: float
    satisfying: int = 0
    tolerating: int = 0
    frustrating: int = 0

    def record_duration(self, duration: float) -> None:
        """Classify one duration (seconds) against apdex_t."""
        if duration <= self.apdex_t:
            self.satisfying += 1
        elif duration <= 4 * self.apdex_t:
            self.tolerating += 1
        else:
            self.frustrating += 1

    def increment_frustrating(self) -> None:
        self.frustrating += 1

    def merge(self, other: "ApdexStats") -> None:
        self.satisfying += other.satisfying
        self.tolerating += other.tolerating
        self.frustrating += other.frustrating

    def to_json(self) -> list[float]:
        return [
            self.satisfying,
            self.tolerating,
            self.frustrating,
            self.apdex_t,
            self.apdex_t,
            0,
        ]


Stats = MetricStats | ApdexStats


class Metrics:
    """A collection of metrics keyed by name and optional scope.

    Args:
        apdex_t: Default apdex threshold in seconds for apdex metrics.
        started: Start of the collection window, epoch seconds.
    """

    def __init__(self, apdex_t: float, started: float | None = None) -> None:
        self.apdex_t = apdex_t
        self.started = time.time() if started is None else started
        self._unscoped: dict[str, Stats] = {}
        self._scoped: dict[str, dict[str, Stats]] = {}

    def __len__(self) -> int:
        return len(self._unscoped) + sum(len(s) for s in self._scoped.values())

    @property
    def empty(self) -> bool:
        return len(self) == 0

    def get_metric(self, name: str, scope: str | None = None) -> Stats | None:
        if scope:
            return self._scoped.get(scope, {}).get(name)
        return self._unscoped.get(name)

    def get_or_create_metric(self, name: str, scope: str | None = None) -> MetricStats:
        bucket = self._bucket(scope)
        stats = bucket.get(name)
        if stats is None:
            stats = bucket[name] = MetricStats()
        if not isinstance(stats, MetricStats):
            raise TypeError(f"Metric {name} is an apdex metric")
        return stats

    def get_or_create_apdex_metric(
        self, name: str, apdex_t: float | None = None
    ) -> ApdexStats:
        stats = self._unscoped.get(name)
        if stats is None:
            stats = ApdexStats(self.apdex_t if apdex_t is None else apdex_t)
            self._unscoped[name] = stats
        if not isinstance(stats, ApdexStats):
            raise TypeError(f"Metric {name} is not an apdex metric")
        return stats

    def measure_milliseconds(
        self,
        name: str,
        duration_ms: float,
        exclusive_ms: float | None = None,
        scope: str | None = None,
    ) -> MetricStats:
        """Record a duration given in milliseconds."""
        stats = self.get_or_create_metric(name, scope)
        exclusive = None if exclusive_ms is None else exclusive_ms * FROM_MILLIS
        stats.record_value(duration_ms * FROM_MILLIS, exclusive)
        return stats

    def merge(self, other: "Metrics", adjust_start_time: bool = True) -> None:
        """Fold another collection into this one.

        Args:
            other: Metrics to merge in.
            adjust_start_time: Keep the earlier of the two start times.
        """
        if adjust_start_time and other.started < self.started:
            self.started = other.started
        self._merge_bucket(self._unscoped, other._unscoped)
        for scope, stats in other._scoped.items():
            self._merge_bucket(self._scoped.setdefault(scope, {}), stats)

    def to_json(self) -> list[list[Any]]:
        data: list[list[Any]] = []
        for name, stats in self._unscoped.items():
            data.append([{"name": name}, stats.to_json()])
        for scope, bucket in self._scoped.items():
            for name, stats in bucket.items():
                data.append([{"name": name, "scope": scope}, stats.to_json()])
        return data

    def _bucket(self, scope: str | None) -> dict[str, Stats]:
        if scope:
            return self._scoped.setdefault(scope, {})
        return self._unscoped

    @staticmethod
    def _merge_bucket(target: dict[str, Stats], source: dict[str, Stats]) -> None:
        for name, stats in source.items():
            existing = target.get(name)
            if existing is None:
                if isinstance(stats, ApdexStats):
                    existing = target[name] = ApdexStats(stats.apdex_t)
                else:
                    existing = target[name] = MetricStats()
            existing.merge(stats)  # type: ignore[arg-type]


class MetricAggregator(Aggregator):
    """Buffers timeslice metrics for ``metric_data``.

    The payload is ``[run_id, begin_s, end_s, metrics]``. Merging back a
    retained harvest folds its stats into the current window and keeps the
    earlier start time, so nothing is counted twice or lost.
    """

    method = "metric_data"

    def __init__(self, apdex_t: float, period: float, **kwargs: Any) -> None:
        super().__init__(period=period, **kwargs)
        self._lock = threading.Lock()
        self._metrics = Metrics(apdex_t)

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def apdex_t(self) -> float:
        return self._metrics.apdex_t

    @apdex_t.setter
    def apdex_t(self, value: float) -> None:
        self._metrics.apdex_t = value

    def __len__(self) -> int:
        return len(self._metrics)

    def merge(self, metrics: Metrics) -> None:
        """Merge metrics recorded elsewhere (one transaction, for example)."""
        with self._lock:
            self._metrics.merge(metrics, adjust_start_time=False)

    def get_or_create_metric(self, name: str, scope: str | None = None) -> MetricStats:
        with self._lock:
            return self._metrics.get_or_create_metric(name, scope)

    def record_supportability(self, name: str, value: float | None = None) -> None:
        """Record an agent-internal ``Supportability/`` metric."""
        with self._lock:
            stats = self._metrics.get_or_create_metric("Supportability/" + name)
            if value is None:
                stats.increment_call_count()
            else:
                stats.record_value(value)

    def _to_payload(self, run_id: str) -> list[Any] | None:
        if self._metrics.empty:
            return None
        return [run_id, self._metrics.started, time.time(), self._metrics.to_json()]

    def _get_merge_data(self) -> Metrics:
        return self._metrics

    def _merge(self, data: Metrics) -> None:
        with self._lock:
            data.merge(self._metrics, adjust_start_time=False)
            self._metrics = data

    def clear(self) -> None:
        with self._lock:
            self._metrics = Metrics(self._metrics.apdex_t)
