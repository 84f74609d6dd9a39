"""
Terrain Density - seed-driven 3D density fields for procedural terrain.

A run builds one ScalarField3D through an ordered list of named steps:
- BuildBaseField: noise heightfield turned into density
- CarvePrimitives: tunnels, cave pockets and an arch cut out as SDF voids
- ComposeMasses: landmasses, terraces, overhangs and floating islands

Usage:
    terrain-density --seed 42 --grid 96 48 96 --output runs
"""

__version__ = "0.1.0"

from .pipeline import run, RunResult, RunState, StepPipeline
from .common.config import WorldGenSettings

__all__ = ["run", "RunResult", "RunState", "StepPipeline", "WorldGenSettings", "__version__"]
