"""
Name -> step function table.

A step is a plain function `generate(settings, ctx) -> StepResult`.
The pipeline holds an ordered list of names and resolves each one here.
"""

from typing import Callable, Dict, List

from ..common.config import WorldGenSettings
from ..common.context import GenerationContext, StepResult
from ..common.errors import InvalidConfiguration

StepFn = Callable[[WorldGenSettings, GenerationContext], StepResult]

STEP_REGISTRY: Dict[str, StepFn] = {}


def register_step(name: str):
    """Decorator adding a step function to the registry under `name`."""
    def decorator(fn: StepFn) -> StepFn:
        if name in STEP_REGISTRY and STEP_REGISTRY[name] is not fn:
            raise ValueError(f"Step '{name}' is already registered")
        STEP_REGISTRY[name] = fn
        return fn
    return decorator


def get_step(name: str) -> StepFn:
    try:
        return STEP_REGISTRY[name]
    except KeyError:
        raise InvalidConfiguration(f"Unknown step '{name}'", {"known": ", ".join(step_names())})


def step_names() -> List[str]:
    return sorted(STEP_REGISTRY)
