"""Tests for marketpulse/statistics.py."""

import math

import pytest

from marketpulse.statistics import (
    RollingWindow,
    distribution_stats,
    mean,
    percentile,
    percentile_rank,
    stddev,
    zscore,
)


class TestMeanAndStddev:
    """Tests for mean and population stddev."""

    def test_mean_basic(self):
        assert mean([1, 2, 3, 4]) == 2.5

    def test_mean_empty(self):
        assert mean([]) == 0.0

    def test_mean_ignores_non_finite(self):
        assert mean([1.0, float("nan"), 3.0, float("inf")]) == 2.0

    def test_population_stddev(self):
        """Population stddev divides by N, not N-1."""
        assert stddev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)

    def test_stddev_constant_series(self):
        assert stddev([5, 5, 5]) == 0.0

    def test_stddev_empty(self):
        assert stddev([]) == 0.0


class TestZScore:
    """Tests for zscore."""

    def test_basic(self):
        assert zscore(14, 10, 2) == 2.0

    def test_negative(self):
        assert zscore(6, 10, 2) == -2.0

    def test_zero_std_returns_zero(self):
        assert zscore(100, 10, 0) == 0.0

    @pytest.mark.parametrize(
        "sample,mu,std",
        [(float("nan"), 1, 1), (1, float("inf"), 1), (1, 1, float("nan"))],
    )
    def test_non_finite_returns_zero(self, sample, mu, std):
        result = zscore(sample, mu, std)
        assert result == 0.0
        assert math.isfinite(result)


class TestPercentile:
    """Tests for percentile and percentile_rank."""

    def test_median_interpolates(self):
        assert percentile([1, 2, 3, 4], 50) == 2.5

    def test_bounds(self):
        values = [10, 20, 30]
        assert percentile(values, 0) == 10
        assert percentile(values, 100) == 30

    def test_unsorted_input(self):
        assert percentile([30, 10, 20], 50) == 20

    def test_single_value(self):
        assert percentile([7], 90) == 7

    def test_empty(self):
        assert percentile([], 90) == 0.0

    def test_percentile_rank(self):
        assert percentile_rank([1, 2, 3, 4], 2) == 50.0

    def test_percentile_rank_empty(self):
        assert percentile_rank([], 2) == 0.0


class TestDistributionStats:
    """Tests for distribution_stats."""

    def test_summary(self):
        stats = distribution_stats([1, 2, 3, 4, 5])
        assert stats.mean == 3
        assert stats.min == 1
        assert stats.max == 5
        assert stats.count == 5
        assert stats.std == pytest.approx(math.sqrt(2))
        assert stats.percentile90 == pytest.approx(4.6)

    def test_empty(self):
        stats = distribution_stats([])
        assert stats.count == 0
        assert stats.mean == 0.0


class TestRollingWindow:
    """Tests for RollingWindow."""

    def test_trim_drops_expired(self):
        window = RollingWindow(duration_ms=1000)
        window.add("a", 0)
        window.add("b", 500)
        window.add("c", 1500)

        dropped = window.trim(1200)

        assert dropped == 1
        assert window.values() == ["b", "c"]

    def test_trim_keeps_boundary(self):
        window = RollingWindow(duration_ms=1000)
        window.add("a", 0)
        window.add("b", 500)
        window.add("c", 1500)

        assert window.trim(1600) == 2
        assert window.trim(2500) == 0
        assert window.values() == ["c"]

    def test_out_of_order_insert(self):
        window = RollingWindow(duration_ms=10_000)
        window.add("late", 300)
        window.add("early", 100)
        window.add("middle", 200)

        assert window.values() == ["early", "middle", "late"]

    def test_values_with_clock_trims(self):
        window = RollingWindow(duration_ms=100)
        window.add("old", 0)
        window.add("new", 150)

        assert window.values(now=200) == ["new"]
        assert len(window) == 1

    def test_max_items(self):
        window = RollingWindow(duration_ms=10_000, max_items=2)
        for i in range(5):
            window.add(i, i)

        assert window.values() == [3, 4]
