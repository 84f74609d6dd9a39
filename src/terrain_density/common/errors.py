"""Exception types for density field generation.

Each error kind maps to one failure mode of a run:
configuration problems abort before any step, coordinate/buffer misuse
fails the calling operation, and step errors fail the run.
"""

from typing import Any, Dict, Optional


class TerrainDensityError(Exception):
    """Base exception for all terrain_density errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class InvalidConfiguration(TerrainDensityError, ValueError):
    """Raised when settings are malformed (bad dimensions, ranges, step names)."""
    pass


class OutOfRange(TerrainDensityError, IndexError):
    """Raised when voxel coordinates fall outside the grid."""
    pass


class InvalidArgument(TerrainDensityError, ValueError):
    """Raised when a caller-supplied buffer or argument has the wrong shape."""
    pass


class StepFailure(TerrainDensityError, RuntimeError):
    """Raised when a generation step fails; wraps the original exception."""

    def __init__(
        self,
        step_name: str,
        step_index: int,
        cause: BaseException,
    ):
        super().__init__(
            f"Step '{step_name}' failed: {type(cause).__name__}: {cause}",
            {"step": step_name, "index": step_index},
        )
        self.step_name = step_name
        self.step_index = step_index
        self.cause = cause
