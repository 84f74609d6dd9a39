"""
Generation steps.

Importing this package registers BuildBaseField, CarvePrimitives and
ComposeMasses in STEP_REGISTRY.
"""

from .registry import STEP_REGISTRY, StepFn, register_step, get_step, step_names
from . import build_base_field, carve_primitives, compose_masses

__all__ = [
    "STEP_REGISTRY",
    "StepFn",
    "register_step",
    "get_step",
    "step_names",
    "build_base_field",
    "carve_primitives",
    "compose_masses",
]
