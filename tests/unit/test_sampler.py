"""Tests for the adaptive sampler."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given
from hypothesis import strategies as st

from harvestpy.core.sampler import AdaptiveSampler

rolls = st.lists(
    st.floats(min_value=0.0, max_value=1.0, exclude_max=True), max_size=200
)


def _fill(sampler: AdaptiveSampler, count: int, roll: float = 0.5) -> int:
    return sum(sampler.should_sample(roll) for _ in range(count))


class TestFirstWindow:
    """Before the first reset the sampler takes the first N transactions."""

    @pytest.mark.core
    def test_takes_exactly_target_of_25(self) -> None:
        """With target 10, exactly the first 10 of 25 transactions are sampled."""
        sampler = AdaptiveSampler(target=10, period=60)
        decisions = [sampler.should_sample(0.5) for _ in range(25)]

        assert decisions[:10] == [True] * 10
        assert decisions[10:] == [False] * 15
        assert sampler.seen == 25
        assert sampler.sampled == 10

    @pytest.mark.core
    def test_threshold_closes_at_target(self) -> None:
        """Reaching the target in the first window closes the threshold to 1."""
        sampler = AdaptiveSampler(target=3, period=60)
        _fill(sampler, 3)
        assert sampler.sampling_threshold == 1

    @pytest.mark.core
    @given(target=st.integers(min_value=1, max_value=50), values=rolls)
    def test_never_exceeds_target(self, target: int, values: list[float]) -> None:
        """The first window samples min(target, seen) transactions."""
        sampler = AdaptiveSampler(target=target, period=60)
        for value in values:
            sampler.should_sample(value)
        assert sampler.sampled == min(target, len(values))


class TestReset:
    """Tests for the per-period reset."""

    @pytest.mark.core
    def test_reset_sets_threshold_from_previous_window(self) -> None:
        """The new threshold is 1 - target/seen of the window that ended."""
        sampler = AdaptiveSampler(target=10, period=60)
        _fill(sampler, 25)
        sampler._reset()

        assert sampler.sampling_threshold == pytest.approx(0.6)
        assert sampler.seen == 0
        assert sampler.sampled == 0
        assert sampler.reset_count == 1

    @pytest.mark.core
    def test_reset_with_nothing_seen_keeps_threshold(self) -> None:
        """An empty window leaves the threshold untouched."""
        sampler = AdaptiveSampler(target=10, period=60)
        sampler._reset()
        assert sampler.sampling_threshold == 0

    @pytest.mark.core
    def test_exponential_backoff_after_target(self) -> None:
        """Reaching the target after a reset applies the backoff formula."""
        sampler = AdaptiveSampler(target=10, period=60)
        sampler._reset()
        sampler._seen = 99
        sampler._sampled = 9

        assert sampler.should_sample(0.99) is True
        assert sampler.seen == 100
        assert sampler.sampled == 10
        # adjusted target = 10**(10/10) - 10**(10/20)
        assert sampler.sampling_threshold == pytest.approx(0.9316227766016838)

    @pytest.mark.core
    @given(
        target=st.integers(min_value=1, max_value=30),
        windows=st.lists(rolls, min_size=1, max_size=4),
    )
    def test_never_exceeds_max_samples(
        self, target: int, windows: list[list[float]]
    ) -> None:
        """No window ever samples more than twice the target."""
        sampler = AdaptiveSampler(target=target, period=60)
        for values in windows:
            for value in values:
                sampler.should_sample(value)
                assert sampler.sampled <= sampler.max_samples
                assert sampler.sampling_threshold >= 0
            sampler._reset()


class TestSettings:
    """Tests for live target and period changes."""

    @pytest.mark.core
    def test_target_change_updates_max_samples(self) -> None:
        sampler = AdaptiveSampler(target=10, period=60)
        sampler.sampling_target = 4
        assert sampler.sampling_target == 4
        assert sampler.max_samples == 8

    @pytest.mark.core
    def test_target_change_recomputes_threshold(self) -> None:
        """The threshold is recomputed from the current window's seen count."""
        sampler = AdaptiveSampler(target=10, period=60)
        _fill(sampler, 20)
        sampler.sampling_target = 5
        assert sampler.sampling_threshold == pytest.approx(0.75)


class TestServerless:
    """Tests for the invocation-driven window in serverless mode."""

    @pytest.mark.core
    def test_first_transaction_opens_window(self) -> None:
        sampler = AdaptiveSampler(target=10, period=60, serverless=True)
        assert sampler.maybe_update_window(1000.0) is True
        assert sampler.reset_count == 1

    @pytest.mark.core
    def test_transaction_inside_window_does_not_reset(self) -> None:
        sampler = AdaptiveSampler(target=10, period=60, serverless=True)
        sampler.maybe_update_window(1000.0)
        _fill(sampler, 3)
        assert sampler.maybe_update_window(1059.0) is False
        assert sampler.seen == 3

    @pytest.mark.core
    def test_transaction_past_window_resets(self) -> None:
        sampler = AdaptiveSampler(target=10, period=60, serverless=True)
        sampler.maybe_update_window(1000.0)
        _fill(sampler, 3)
        assert sampler.maybe_update_window(1060.0) is True
        assert sampler.seen == 0
        assert sampler.reset_count == 2

    @pytest.mark.core
    def test_concurrent_starts_open_one_window(self) -> None:
        """Threads racing into a new window reset the sampler once."""
        sampler = AdaptiveSampler(target=10, period=60, serverless=True)
        barrier = threading.Barrier(8)

        def start_transaction() -> bool:
            barrier.wait()
            return sampler.maybe_update_window(1000.0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            opened = list(pool.map(lambda _: start_transaction(), range(8)))

        assert opened.count(True) == 1
        assert sampler.reset_count == 1

    @pytest.mark.core
    def test_start_runs_no_timer(self) -> None:
        """start() is a no-op in serverless mode, even without a loop."""
        sampler = AdaptiveSampler(target=10, period=60, serverless=True)
        sampler.start()
        assert sampler._reset_task is None


class TestResetTimer:
    """Tests for the background reset task."""

    @pytest.mark.asyncio
    async def test_timer_resets_periodically(self) -> None:
        sampler = AdaptiveSampler(target=10, period=0.01)
        sampler.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            sampler.stop()
        assert sampler.reset_count >= 1

    @pytest.mark.asyncio
    async def test_stop_cancels_timer(self) -> None:
        sampler = AdaptiveSampler(target=10, period=0.01)
        sampler.start()
        sampler.stop()
        count = sampler.reset_count
        await asyncio.sleep(0.05)
        assert sampler.reset_count == count
        assert sampler._reset_task is None

    @pytest.mark.asyncio
    async def test_period_change_reschedules(self) -> None:
        sampler = AdaptiveSampler(target=10, period=3600)
        sampler.start()
        first = sampler._reset_task
        try:
            sampler.sampling_period = 0.01
            assert sampler._reset_task is not first
            await asyncio.sleep(0.1)
        finally:
            sampler.stop()
        assert sampler.reset_count >= 1
