"""Bounded priority reservoir for event buffers.

Keeps the ``limit`` highest-priority items seen since the last clear. When
the reservoir is full, a new item only gets in by evicting the current
lowest-priority item, so memory use is predictable under any load.
"""

import heapq
import itertools
from collections.abc import Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class PriorityReservoir(Generic[T]):
    """Min-heap of (priority, item) capped at ``limit`` entries.

    Args:
        limit: Maximum number of items to keep.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.seen = 0
        self._heap: list[tuple[float, int, T]] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def __iter__(self) -> Iterator[T]:
        for _, _, item in sorted(self._heap, key=lambda e: (-e[0], e[1])):
            yield item

    @property
    def full(self) -> bool:
        return len(self._heap) >= self.limit

    def add(self, item: T, priority: float) -> bool:
        """Offer an item to the reservoir.

        Args:
            item: The item to keep.
            priority: Higher priorities are kept first.

        Returns:
            True if the item was kept.
        """
        self.seen += 1
        return self._push(item, priority)

    def merge(self, other: "PriorityReservoir[T]") -> None:
        """Re-add another reservoir's items and its ``seen`` count."""
        self.seen += other.seen
        for priority, _, item in other._heap:
            self._push(item, priority)

    def _push(self, item: T, priority: float) -> bool:
        if self.limit <= 0:
            return False
        entry = (priority, next(self._counter), item)
        if len(self._heap) < self.limit:
            heapq.heappush(self._heap, entry)
            return True
        if priority <= self._heap[0][0]:
            return False
        heapq.heapreplace(self._heap, entry)
        return True
