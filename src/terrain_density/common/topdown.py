"""
Top-down (XZ) views of a density field.

Both maps are flat size_x * size_z buffers indexed x + size_x * z,
matching the slice exporter's layout.
"""

import numpy as np

from .context import GenerationContext
from .io import export_grayscale_slice
from .voxel import ScalarField3D


def compute_surface_height_world(field: ScalarField3D) -> np.ndarray:
    """
    World height of the highest solid cell in each (x, z) column.

    Columns without any solid cell report 0.
    """
    solid = field.volume > 0.0  # (z, y, x)
    flipped = solid[:, ::-1, :]
    top_from_end = np.argmax(flipped, axis=1)  # first solid from the top
    has_solid = solid.any(axis=1)
    top_y = (field.size_y - 1) - top_from_end
    height = np.where(has_solid, top_y * field.voxel_size, 0.0)
    return height.astype(np.float32).ravel()


def compute_solid_occupancy(field: ScalarField3D) -> np.ndarray:
    """Fraction of solid cells along Y for each (x, z) column, in [0, 1]."""
    counts = np.count_nonzero(field.volume > 0.0, axis=1)
    return (counts / max(1, field.size_y)).astype(np.float32).ravel()


def export_surface_and_occupancy(ctx: GenerationContext, prefix: str = ""):
    """Write surface_height.png and solid_occupancy.png for the context field."""
    if ctx.field is None:
        raise ValueError("Context has no density field")
    if not ctx.settings.export_top_down_maps:
        return []

    f = ctx.field
    max_y_world = max(1e-4, (f.size_y - 1) * f.voxel_size)
    written = []

    height_name = f"{prefix}surface_height.png"
    export_grayscale_slice(
        ctx.output_path / height_name,
        compute_surface_height_world(f), f.size_x, f.size_z, 0.0, max_y_world,
    )
    written.append(height_name)

    occupancy_name = f"{prefix}solid_occupancy.png"
    export_grayscale_slice(
        ctx.output_path / occupancy_name,
        compute_solid_occupancy(f), f.size_x, f.size_z, 0.0, 1.0,
    )
    written.append(occupancy_name)

    ctx.slice_files.extend(written)
    return written
