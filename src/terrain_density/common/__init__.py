"""
Common modules shared by the pipeline and every generation step.

World Model (all steps rely on this):
- Cell (x, y, z) sits at world position (x, y, z) * voxel_size
- Density > 0 is solid, <= 0 is air; the surface is the zero level set
- Storage is flat, index = x + size_x * (y + size_y * z)
"""

from .config import WorldGenSettings, CarveParams, ComposeParams, RunIdMode, DEFAULT_STEPS
from .errors import (
    TerrainDensityError, InvalidConfiguration, OutOfRange, InvalidArgument, StepFailure,
)
from .voxel import ScalarField3D, run_slab_pass
from .stats import FieldStats, Summary, summarize, percentile, percentiles, display_range, compute_field_stats
from .context import (
    GenerationContext, StepReport, StepResult, Blackboard, RunLog,
    derive_seed, make_rng, rand_range,
)
from .io import resolve_run_output_path, export_density_slices, export_grayscale_slice, write_outputs
from .topdown import compute_surface_height_world, compute_solid_occupancy
from .mesh_ops import extract_surface, count_solid_components

__all__ = [
    'WorldGenSettings', 'CarveParams', 'ComposeParams', 'RunIdMode', 'DEFAULT_STEPS',
    'TerrainDensityError', 'InvalidConfiguration', 'OutOfRange', 'InvalidArgument', 'StepFailure',
    'ScalarField3D', 'run_slab_pass',
    'FieldStats', 'Summary', 'summarize', 'percentile', 'percentiles', 'display_range', 'compute_field_stats',
    'GenerationContext', 'StepReport', 'StepResult', 'Blackboard', 'RunLog',
    'derive_seed', 'make_rng', 'rand_range',
    'resolve_run_output_path', 'export_density_slices', 'export_grayscale_slice', 'write_outputs',
    'compute_surface_height_world', 'compute_solid_occupancy',
    'extract_surface', 'count_solid_components',
]
