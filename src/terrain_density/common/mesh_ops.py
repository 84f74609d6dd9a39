"""
Surface extraction utilities.

The implicit surface of a density field is its zero level set; this
module meshes it with marching cubes and counts solid components.
"""

import logging
from pathlib import Path
from typing import Optional

from scipy.ndimage import label as ndimage_label

try:
    import trimesh
    TRIMESH_AVAILABLE = True
except ImportError:
    TRIMESH_AVAILABLE = False

try:
    from skimage.measure import marching_cubes
    SKIMAGE_AVAILABLE = True
except ImportError:
    SKIMAGE_AVAILABLE = False

from .context import GenerationContext
from .voxel import ScalarField3D

logger = logging.getLogger(__name__)


def count_solid_components(field: ScalarField3D) -> int:
    """Number of face-connected solid (> 0) regions in the field."""
    _, n_components = ndimage_label(field.volume > 0.0)
    return int(n_components)


def extract_surface(field: ScalarField3D, level: float = 0.0) -> Optional["trimesh.Trimesh"]:
    """
    Mesh the `level` isosurface of the field.

    Vertices are returned in world coordinates (XYZ order).

    Args:
        field: Density field
        level: Iso value (0 = solid/air boundary)

    Returns:
        Trimesh, or None if the field never crosses `level`
    """
    if not (SKIMAGE_AVAILABLE and TRIMESH_AVAILABLE):
        raise ImportError("Surface extraction requires scikit-image and trimesh")

    volume = field.volume
    if not (volume.min() < level < volume.max()):
        logger.warning(f"Field does not cross level {level}; no surface to extract")
        return None

    vs = field.voxel_size
    try:
        verts, faces, _, _ = marching_cubes(
            volume,
            level=level,
            spacing=(vs, vs, vs),
            allow_degenerate=False,
        )
    except ValueError as e:
        logger.error(f"Marching cubes failed: {e}")
        return None

    # marching cubes works in ZYX; swapping axes also flips winding
    verts = verts[:, ::-1]
    faces = faces[:, ::-1]
    mesh = trimesh.Trimesh(vertices=verts, faces=faces, process=True)
    logger.info(f"Extracted surface: {len(mesh.vertices)} vertices, {len(mesh.faces)} faces")
    return mesh


def export_surface_mesh(ctx: GenerationContext, file_name: str = "surface.ply") -> Optional[str]:
    """Extract the zero surface of ctx.field and write it next to the other outputs."""
    if ctx.field is None or ctx.output_path is None:
        return None

    mesh = extract_surface(ctx.field, level=0.0)
    if mesh is None:
        ctx.run_log.warn("Surface mesh skipped: field has no solid/air boundary")
        return None

    path = Path(ctx.output_path) / file_name
    path.parent.mkdir(parents=True, exist_ok=True)
    mesh.export(str(path))
    ctx.blackboard.surface_mesh_file = file_name
    ctx.run_log.info(f"Exported surface mesh: {file_name} ({len(mesh.vertices)} vertices, {len(mesh.faces)} faces)")
    return file_name
