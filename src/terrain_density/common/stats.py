"""
Summary statistics and percentiles for density samples.

Stats are always recomputed from the full buffer; nothing is updated
incrementally. Empty input never raises: numeric fields come back NaN
and callers check `count > 0`.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Any, Iterable, Tuple

import numpy as np

# Quantiles stored on FieldStats
STAT_PERCENTILES = (0.01, 0.10, 0.50, 0.90, 0.99)


@dataclass(frozen=True)
class Summary:
    count: int
    min: float
    max: float
    mean: float
    std: float


@dataclass(frozen=True)
class FieldStats:
    """
    Full statistics for one field state.

    display_min/display_max is the recommended slice visualisation window:
    p01..p99, or min..max when that window is degenerate.
    """
    count: int
    min: float
    max: float
    mean: float
    std: float
    p01: float
    p10: float
    p50: float
    p90: float
    p99: float
    display_min: float
    display_max: float

    def to_dict(self) -> Dict[str, Any]:
        return {k: (None if isinstance(v, float) and math.isnan(v) else v) for k, v in asdict(self).items()}

    def describe(self) -> str:
        return (
            f"min={self.min:.3f}, max={self.max:.3f}, mean={self.mean:.3f}, std={self.std:.3f}, "
            f"p01={self.p01:.3f}, p10={self.p10:.3f}, p50={self.p50:.3f}, p90={self.p90:.3f}, "
            f"p99={self.p99:.3f} (display [{self.display_min:.3f}..{self.display_max:.3f}])"
        )


def _as_samples(samples) -> np.ndarray:
    if samples is None:
        raise ValueError("samples must not be None")
    return np.asarray(samples).ravel()


def summarize(samples) -> Summary:
    """
    Count, min, max, mean and population std of the samples.

    Two passes: min/max/sum first, then squared deviations from the mean.
    Accumulation is float64 regardless of sample dtype.
    """
    values = _as_samples(samples)
    n = values.size
    if n == 0:
        nan = float("nan")
        return Summary(count=0, min=nan, max=nan, mean=nan, std=nan)

    v64 = values.astype(np.float64, copy=False)
    mean = float(v64.sum()) / n
    dev = v64 - mean
    variance = float(np.dot(dev, dev)) / n

    return Summary(
        count=int(n),
        min=float(values.min()),
        max=float(values.max()),
        mean=mean,
        std=math.sqrt(variance),
    )


def _percentile_sorted(sorted_values: np.ndarray, p: float) -> float:
    n = sorted_values.size
    if n == 0 or math.isnan(p):
        return float("nan")
    if p <= 0:
        return float(sorted_values[0])
    if p >= 1:
        return float(sorted_values[-1])

    idx = p * (n - 1)
    lo = int(math.floor(idx))
    hi = int(math.ceil(idx))
    if lo == hi:
        return float(sorted_values[lo])
    t = idx - lo
    a = float(sorted_values[lo])
    return a + (float(sorted_values[hi]) - a) * t


def percentile(samples, p: float) -> float:
    """
    Linear-interpolated percentile, p in [0, 1].

    Sorts a copy; the caller's buffer is left untouched.
    p <= 0 returns the minimum and p >= 1 the maximum.
    A NaN p gives NaN, like an empty sample set.
    """
    values = _as_samples(samples)
    if values.size == 0 or math.isnan(p):
        return float("nan")
    if p <= 0:
        return float(values.min())
    if p >= 1:
        return float(values.max())
    return _percentile_sorted(np.sort(values), p)


def percentiles(samples, ps: Iterable[float]) -> Dict[str, float]:
    """Several percentiles from one sort, keyed like 'p1', 'p50', 'p99.5'."""
    sorted_values = np.sort(_as_samples(samples))
    result = {}
    for p in ps:
        key = f"p{p * 100:.1f}".rstrip("0").rstrip(".")
        result[key] = _percentile_sorted(sorted_values, p)
    return result


def _display_window(p01: float, p99: float, vmin: float, vmax: float) -> Tuple[float, float]:
    if p99 <= p01 or math.isnan(p01) or math.isnan(p99):
        return vmin, vmax
    return p01, p99


def display_range(samples) -> Tuple[float, float]:
    """(p01, p99), or (min, max) when p99 <= p01."""
    values = _as_samples(samples)
    sorted_values = np.sort(values)
    if sorted_values.size == 0:
        nan = float("nan")
        return nan, nan
    return _display_window(
        _percentile_sorted(sorted_values, 0.01),
        _percentile_sorted(sorted_values, 0.99),
        float(sorted_values[0]),
        float(sorted_values[-1]),
    )


def compute_field_stats(samples) -> FieldStats:
    """Summary, the standard quantiles and the display window from one sort."""
    values = _as_samples(samples)
    s = summarize(values)
    sorted_values = np.sort(values)
    p01, p10, p50, p90, p99 = (_percentile_sorted(sorted_values, p) for p in STAT_PERCENTILES)
    display_min, display_max = _display_window(p01, p99, s.min, s.max)

    return FieldStats(
        count=s.count,
        min=s.min,
        max=s.max,
        mean=s.mean,
        std=s.std,
        p01=p01,
        p10=p10,
        p50=p50,
        p90=p90,
        p99=p99,
        display_min=display_min,
        display_max=display_max,
    )
