"""Adaptive sampler deciding which transactions get a full trace.

The sampler holds the number of sampled transactions near a target per
period. Admission is a single comparison against a maintained threshold,
so ``should_sample`` is safe to call on every transaction start.
"""

import asyncio
import logging
import threading

logger = logging.getLogger(__name__)


class AdaptiveSampler:
    """Admission control that targets a fixed number of samples per period.

    In standard mode a background task calls ``_reset`` every
    ``sampling_period`` seconds once ``start()`` is called from a running
    event loop. In serverless mode no task runs; ``maybe_update_window``
    resets the sampler when a transaction starts outside the current window.

    Args:
        target: Desired number of sampled transactions per period.
        period: Length of a sampling period, in seconds.
        serverless: True when no timers may run between invocations.
    """

    def __init__(self, target: int, period: float, serverless: bool = False) -> None:
        self._serverless = serverless
        self._lock = threading.Lock()
        self._seen = 0
        self._sampled = 0
        self._sampling_threshold = 0.0
        self._sampling_target = target
        self._max_samples = 2 * target
        self._reset_count = 0
        self._window_start: float | None = None
        self._sampling_period = period
        self._reset_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def seen(self) -> int:
        return self._seen

    @property
    def sampled(self) -> int:
        return self._sampled

    @property
    def sampling_threshold(self) -> float:
        return self._sampling_threshold

    @property
    def max_samples(self) -> int:
        return self._max_samples

    @property
    def reset_count(self) -> int:
        return self._reset_count

    @property
    def sampling_target(self) -> int:
        return self._sampling_target

    @sampling_target.setter
    def sampling_target(self, target: int) -> None:
        with self._lock:
            self._sampling_target = target
            self._max_samples = 2 * target
            self._adjust_stats(target)
        logger.debug("Sampling target changed to %d.", target)

    @property
    def sampling_period(self) -> float:
        return self._sampling_period

    @sampling_period.setter
    def sampling_period(self, period: float) -> None:
        self._sampling_period = period
        if not self._serverless and self._started:
            self._cancel_reset_task()
            self._schedule_reset_task()

    def start(self) -> None:
        """Start the period reset task on the running event loop."""
        if self._serverless or self._started:
            return
        self._started = True
        self._schedule_reset_task()

    def stop(self) -> None:
        """Cancel the period reset task."""
        self._started = False
        self._cancel_reset_task()

    def should_sample(self, roll: float) -> bool:
        """Decide whether a transaction should be sampled.

        Args:
            roll: Uniform random number in [0, 1).

        Returns:
            True if the transaction is admitted.
        """
        with self._lock:
            self._seen += 1
            if roll >= self._sampling_threshold:
                self._increment_sampled()
                return True
            return False

    def maybe_update_window(self, timestamp: float) -> bool:
        """Open a new window in serverless mode when ``timestamp`` is past it.

        Args:
            timestamp: Transaction start time, in seconds.

        Returns:
            True if a new window was opened and the sampler reset.
        """
        with self._lock:
            start = self._window_start
            if start is not None and timestamp - start < self._sampling_period:
                return False
            self._window_start = timestamp
            self._reset_stats()
        return True

    def _reset(self) -> None:
        with self._lock:
            self._reset_stats()

    def _reset_stats(self) -> None:
        # The first period is a plain "take the first N" window: the
        # threshold starts at 0 and _increment_sampled closes it at N.
        self._reset_count += 1
        self._adjust_stats(self._sampling_target)
        self._seen = 0
        self._sampled = 0

    def _increment_sampled(self) -> None:
        self._sampled += 1
        if self._sampled >= self._sampling_target:
            adjusted_target = 0.0
            if self._reset_count > 0:
                target = self._sampling_target
                ratio = target / self._sampled
                max_ratio = target / self._max_samples
                adjusted_target = target**ratio - target**max_ratio
            self._adjust_stats(adjusted_target)

    def _adjust_stats(self, target: float) -> None:
        if self._seen:
            ratio = min(target / self._seen, 1)
            self._sampling_threshold = 1 - ratio

    def _schedule_reset_task(self) -> None:
        if not self._sampling_period:
            return
        loop = asyncio.get_running_loop()
        self._reset_task = loop.create_task(self._reset_loop(self._sampling_period))

    def _cancel_reset_task(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()
            self._reset_task = None

    async def _reset_loop(self, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            self._reset()
