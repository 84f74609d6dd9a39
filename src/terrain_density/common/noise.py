"""
Deterministic 2D gradient (Perlin) noise, vectorised over numpy arrays.

The permutation table is fixed, so noise is a pure function of its
coordinates; callers randomise patterns by offsetting coordinates with
values drawn from their seeded generator.
"""

import numpy as np

# Fixed table seed; changing it changes every generated world.
_PERMUTATION_SEED = 0


def _build_permutation(seed: int) -> np.ndarray:
    p = np.arange(256, dtype=np.int64)
    rng = np.random.default_rng(seed)
    rng.shuffle(p)
    return np.concatenate([p, p])


_PERM = _build_permutation(_PERMUTATION_SEED)

# Eight unit-ish gradient directions
_GRAD_X = np.array([1.0, -1.0, 1.0, -1.0, 1.0, -1.0, 0.0, 0.0])
_GRAD_Y = np.array([1.0, 1.0, -1.0, -1.0, 0.0, 0.0, 1.0, -1.0])


def _fade(t: np.ndarray) -> np.ndarray:
    return t * t * t * (t * (t * 6.0 - 15.0) + 10.0)


def _gradient(h: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    g = h & 7
    return _GRAD_X[g] * x + _GRAD_Y[g] * y


def perlin_2d(x, y) -> np.ndarray:
    """
    Gradient noise at (x, y), roughly within [0, 1] and 0.5 on lattice points.

    Args:
        x, y: Coordinates (scalars or broadcastable arrays)

    Returns:
        float64 array of the broadcast shape
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    x, y = np.broadcast_arrays(x, y)

    x0 = np.floor(x)
    y0 = np.floor(y)
    xf = x - x0
    yf = y - y0
    xi = x0.astype(np.int64) & 255
    yi = y0.astype(np.int64) & 255

    u = _fade(xf)
    v = _fade(yf)

    aa = _PERM[_PERM[xi] + yi]
    ab = _PERM[_PERM[xi] + yi + 1]
    ba = _PERM[_PERM[xi + 1] + yi]
    bb = _PERM[_PERM[xi + 1] + yi + 1]

    n00 = _gradient(aa, xf, yf)
    n10 = _gradient(ba, xf - 1.0, yf)
    n01 = _gradient(ab, xf, yf - 1.0)
    n11 = _gradient(bb, xf - 1.0, yf - 1.0)

    nx0 = n00 + u * (n10 - n00)
    nx1 = n01 + u * (n11 - n01)
    n = nx0 + v * (nx1 - nx0)

    # Raw range is about [-1, 1]
    return np.clip(0.5 + 0.5 * n, 0.0, 1.0)
