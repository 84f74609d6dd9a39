"""
Tests for the statistics engine
"""

import math

import pytest
import numpy as np

from terrain_density.common.stats import (
    summarize,
    percentile,
    percentiles,
    display_range,
    compute_field_stats,
)


# ============== Fixtures ==============

@pytest.fixture
def samples():
    rng = np.random.default_rng(11)
    return rng.normal(0.0, 10.0, size=1000).astype(np.float32)


# ============== Summary Tests ==============

class TestSummarize:
    """Test count/min/max/mean/std."""

    def test_known_values(self):
        s = summarize([1.0, 2.0, 3.0, 4.0])
        assert s.count == 4
        assert s.min == 1.0
        assert s.max == 4.0
        assert s.mean == pytest.approx(2.5)
        assert s.std == pytest.approx(math.sqrt(1.25))

    def test_empty_is_nan(self):
        s = summarize(np.array([], dtype=np.float32))
        assert s.count == 0
        assert math.isnan(s.min) and math.isnan(s.max)
        assert math.isnan(s.mean) and math.isnan(s.std)

    def test_constant_has_zero_std(self):
        s = summarize(np.full(50, 3.0, dtype=np.float32))
        assert s.std == 0.0


# ============== Percentile Tests ==============

class TestPercentile:
    """Test interpolated percentiles."""

    def test_extremes(self, samples):
        assert percentile(samples, 0.0) == float(samples.min())
        assert percentile(samples, 1.0) == float(samples.max())
        assert percentile(samples, -0.5) == float(samples.min())
        assert percentile(samples, 1.5) == float(samples.max())

    def test_interpolation(self):
        # idx = 0.25 * 4 = 1.0 -> exactly the second value
        assert percentile([10.0, 20.0, 30.0, 40.0, 50.0], 0.25) == pytest.approx(20.0)
        # idx = 0.5 * 3 = 1.5 -> halfway between 20 and 30
        assert percentile([40.0, 10.0, 30.0, 20.0], 0.5) == pytest.approx(25.0)

    def test_monotonic(self, samples):
        values = [percentile(samples, p) for p in np.linspace(0.0, 1.0, 101)]
        assert all(b >= a for a, b in zip(values, values[1:]))

    def test_does_not_mutate_input(self, samples):
        original = samples.copy()
        percentile(samples, 0.3)
        np.testing.assert_array_equal(samples, original)

    def test_empty_is_nan(self):
        assert math.isnan(percentile([], 0.5))

    def test_nan_p_is_nan(self, samples):
        assert math.isnan(percentile(samples, float("nan")))
        assert math.isnan(percentiles(samples, [float("nan")])["pnan"])

    def test_percentiles_keys(self):
        result = percentiles(np.arange(101, dtype=np.float64), [0.01, 0.5, 0.99])
        assert result == {"p1": pytest.approx(1.0), "p50": pytest.approx(50.0), "p99": pytest.approx(99.0)}


# ============== Display Range Tests ==============

class TestDisplayRange:
    """Test the robust visualisation window."""

    def test_ordered(self, samples):
        lo, hi = display_range(samples)
        assert lo <= hi
        assert lo == pytest.approx(percentile(samples, 0.01))
        assert hi == pytest.approx(percentile(samples, 0.99))

    def test_outliers_excluded(self):
        values = np.concatenate([np.linspace(0.0, 1.0, 1000), [1e6]])
        lo, hi = display_range(values)
        assert hi < 10.0

    def test_constant_falls_back_to_min_max(self):
        lo, hi = display_range(np.full(10, 7.0))
        assert lo == 7.0 and hi == 7.0

    def test_degenerate_percentiles_fall_back(self):
        # 99% of samples equal: p01 == p99 but min < max
        values = np.concatenate([np.zeros(500), [5.0]])
        lo, hi = display_range(values)
        assert (lo, hi) == (0.0, 5.0)


# ============== Field Stats Tests ==============

class TestComputeFieldStats:
    """Test the combined stats record."""

    def test_consistent_with_helpers(self, samples):
        fs = compute_field_stats(samples)
        assert fs.count == samples.size
        assert fs.p50 == pytest.approx(percentile(samples, 0.5))
        assert fs.p01 <= fs.p10 <= fs.p50 <= fs.p90 <= fs.p99
        assert (fs.display_min, fs.display_max) == pytest.approx(display_range(samples))

    def test_to_dict_replaces_nan(self):
        fs = compute_field_stats(np.array([], dtype=np.float32))
        d = fs.to_dict()
        assert d["count"] == 0
        assert d["mean"] is None
