"""
Signed distance primitives used to carve and compose the density field.

Convention: negative inside, positive outside, in world units.
Every function broadcasts over points shaped (..., 3); primitive
parameters are plain 3-vectors and scalars.
"""

import numpy as np

# Segments with squared length at or below this collapse to a point
DEGENERATE_SEGMENT_EPS = 1e-8


def _vec(v) -> np.ndarray:
    return np.asarray(v, dtype=np.float64)


def sphere(p, center, radius: float):
    """Distance to a sphere: |p - center| - radius."""
    return np.linalg.norm(_vec(p) - _vec(center), axis=-1) - radius


def box(p, center, half_extents):
    """Exact distance to an axis-aligned box."""
    q = np.abs(_vec(p) - _vec(center)) - _vec(half_extents)
    outside = np.linalg.norm(np.maximum(q, 0.0), axis=-1)
    inside = np.minimum(np.max(q, axis=-1), 0.0)
    return outside + inside


def capsule(p, a, b, radius: float):
    """
    Distance to a capsule around segment AB.

    The projection of p onto AB is clamped to [0, 1]; a degenerate
    segment (|b - a|^2 <= 1e-8) is treated as the point a.
    """
    a = _vec(a)
    ba = _vec(b) - a
    pa = _vec(p) - a
    denom = float(np.dot(ba, ba))
    if denom <= DEGENERATE_SEGMENT_EPS:
        h = np.zeros(pa.shape[:-1])
    else:
        h = np.asarray(np.clip(np.tensordot(pa, ba, axes=([-1], [0])) / denom, 0.0, 1.0))
    return np.linalg.norm(pa - ba * h[..., None], axis=-1) - radius


def capsule_components(px, py, pz, a, b, radius: float):
    """
    capsule() evaluated on separate coordinate arrays.

    Avoids stacking a (..., 3) array for full-grid passes; px, py, pz
    only need to be broadcastable against each other.
    """
    ax, ay, az = (float(c) for c in a)
    bax, bay, baz = (float(b[0]) - ax, float(b[1]) - ay, float(b[2]) - az)
    pax, pay, paz = px - ax, py - ay, pz - az
    denom = bax * bax + bay * bay + baz * baz
    if denom <= DEGENERATE_SEGMENT_EPS:
        h = 0.0
    else:
        h = np.clip((pax * bax + pay * bay + paz * baz) / denom, 0.0, 1.0)
    dx = pax - bax * h
    dy = pay - bay * h
    dz = paz - baz * h
    return np.sqrt(dx * dx + dy * dy + dz * dz) - radius


def sphere_components(px, py, pz, center, radius: float):
    """sphere() evaluated on separate coordinate arrays."""
    dx = px - float(center[0])
    dy = py - float(center[1])
    dz = pz - float(center[2])
    return np.sqrt(dx * dx + dy * dy + dz * dz) - radius


def smooth_min(d1, d2, k: float):
    """
    Polynomial smooth union of two distances (k > 0).

    Smaller k gives a sharper transition; as k -> 0 this approaches min().
    """
    if k <= 0:
        raise ValueError(f"smooth_min requires k > 0 (got {k})")
    d1 = np.asarray(d1, dtype=np.float64)
    d2 = np.asarray(d2, dtype=np.float64)
    h = np.clip(0.5 + 0.5 * (d2 - d1) / k, 0.0, 1.0)
    return d2 + (d1 - d2) * h - k * h * (1.0 - h)


def smoothstep(edge0: float, edge1: float, x):
    """Hermite smoothstep between edge0 and edge1."""
    t = np.clip((np.asarray(x, dtype=np.float64) - edge0) / (edge1 - edge0 + 1e-10), 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)
