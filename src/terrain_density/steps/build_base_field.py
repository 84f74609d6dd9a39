"""
BuildBaseField: allocate the density field and fill it with a heightfield.

The surface height at (x, z) is a base level plus a gentle slope across
the grid, a low-frequency noise term and a higher-frequency "ridge" term.
Density is height - world_y, so everything below the surface is solid.
"""

import logging

import numpy as np

from ..common.config import WorldGenSettings
from ..common.context import GenerationContext, StepResult
from ..common.noise import perlin_2d
from ..common.voxel import ScalarField3D
from .registry import register_step

logger = logging.getLogger(__name__)

STEP_NAME = "BuildBaseField"

# Fractions of the world height
BASE_HEIGHT = 0.45
NOISE_AMPLITUDE = 0.18
RIDGE_AMPLITUDE = 0.10
SLOPE_X = 0.07
SLOPE_Z = 0.04

# Cycles per world unit
NOISE_FREQUENCY = 0.035
RIDGE_FREQUENCY = 0.08

NOISE_OFFSET_SCALE = 10000.0


def compute_surface_height(
    size_x: int,
    size_z: int,
    voxel_size: float,
    y_max: float,
    offsets,
) -> np.ndarray:
    """
    Surface height in world units for every (x, z) column.

    Args:
        size_x, size_z: Grid size along X and Z
        voxel_size: World units per cell
        y_max: World height of the grid (size_y * voxel_size)
        offsets: (ox, oz, ox2, oz2) noise-space offsets

    Returns:
        (size_z, size_x) float64 array
    """
    ox, oz, ox2, oz2 = offsets
    x = np.arange(size_x, dtype=np.float64)[None, :]
    z = np.arange(size_z, dtype=np.float64)[:, None]
    wx = x * voxel_size
    wz = z * voxel_size

    n = perlin_2d(wx * NOISE_FREQUENCY + ox, wz * NOISE_FREQUENCY + oz) - 0.5
    ridge = np.abs(perlin_2d(wx * RIDGE_FREQUENCY + ox2, wz * RIDGE_FREQUENCY + oz2) * 2.0 - 1.0)

    hx = (x / max(1, size_x - 1) - 0.5) * (SLOPE_X * y_max)
    hz = (z / max(1, size_z - 1) - 0.5) * (SLOPE_Z * y_max)

    return (
        BASE_HEIGHT * y_max
        + hx + hz
        + n * (NOISE_AMPLITUDE * y_max)
        + ridge * (RIDGE_AMPLITUDE * y_max)
    )


@register_step(STEP_NAME)
def generate(settings: WorldGenSettings, ctx: GenerationContext) -> StepResult:
    """Create ctx.field and fill it with the base terrain."""
    sx, sy, sz = (int(n) for n in settings.grid_size)
    vs = float(settings.voxel_size)

    ctx.invalidate_stats()
    field = ScalarField3D(sx, sy, sz, vs)
    ctx.field = field

    # Four draws from the shared stream, always in this order
    offsets = tuple(float(ctx.rng.random()) * NOISE_OFFSET_SCALE for _ in range(4))
    ctx.blackboard.base_noise_offsets = offsets

    y_max = sy * vs
    height = compute_surface_height(sx, sz, vs, y_max, offsets)
    logger.debug(f"Surface height range: [{height.min():.2f}..{height.max():.2f}]")

    def density(x, y, z):
        return height[:, None, :] - y * vs

    field.fill_vectorized(density)

    stats = ctx.refresh_stats()
    solid = int(np.count_nonzero(field.data > 0.0))
    ctx.run_log.info(f"{STEP_NAME} stats: {stats.describe()}")

    return StepResult(
        notes=f"grid={sx}x{sy}x{sz}, voxelSize={vs}, solid={solid}",
        counters={"cells": field.count, "solidCells": solid},
    )
