"""
Shared state for one generation run.

A GenerationContext is created per run and owned by that run only:
field, seeded generator, settings copy, step reports, run log and the
typed blackboard steps use to leave results for later steps and reports.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

from .config import WorldGenSettings
from .stats import FieldStats, compute_field_stats
from .voxel import ScalarField3D

if TYPE_CHECKING:
    from ..steps.carve_primitives import CarvePlan
    from ..steps.compose_masses import ComposePlan

logger = logging.getLogger(__name__)


def derive_seed(seed: int, offset: int) -> int:
    """Sub-seed for a step: seed + offset wrapped to 32 bits."""
    return (int(seed) + int(offset)) & 0xFFFFFFFF


def make_rng(seed: int) -> np.random.Generator:
    """Seeded generator; negative seeds wrap like derive_seed()."""
    return np.random.default_rng(int(seed) & 0xFFFFFFFF)


def rand_range(rng: np.random.Generator, lo: float, hi: float) -> float:
    """Uniform draw in [lo, hi]; swapped bounds are tolerated."""
    if hi < lo:
        lo, hi = hi, lo
    return lo + (hi - lo) * float(rng.random())


@dataclass
class StepReport:
    """One pipeline slot: name, timing and what the step reported."""
    name: str
    elapsed_ms: float
    status: str = "ok"  # ok | skipped | failed
    notes: Optional[str] = None
    counters: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "status": self.status,
            "notes": self.notes,
            "counters": dict(self.counters) if self.counters else None,
        }


@dataclass
class StepResult:
    """
    What a step hands back to the pipeline.

    `skipped` marks a step that had nothing to do (e.g. no field yet);
    it is reported but not treated as a failure.
    """
    notes: Optional[str] = None
    counters: Dict[str, int] = field(default_factory=dict)
    skipped: bool = False


@dataclass
class Blackboard:
    """Typed notes steps leave for later steps and for reporting."""
    base_noise_offsets: Optional[Tuple[float, float, float, float]] = None
    carve_plan: Optional["CarvePlan"] = None
    compose_plan: Optional["ComposePlan"] = None
    solid_components: Optional[int] = None
    surface_mesh_file: Optional[str] = None


class RunLog:
    """
    Append-only textual run log.

    Lines look like "[12:00:01] INFO: message"; every line is also
    forwarded to the module logger when `echo` is set.
    """

    def __init__(self, echo: bool = True):
        self.echo = echo
        self._lines: List[str] = []

    def _append(self, level: str, python_level: int, message: str) -> None:
        message = "" if message is None else str(message)
        self._lines.append(f"[{datetime.now():%H:%M:%S}] {level}: {message}")
        if self.echo:
            logger.log(python_level, message)

    def info(self, message: str) -> None:
        self._append("INFO", logging.INFO, message)

    def warn(self, message: str) -> None:
        self._append("WARN", logging.WARNING, message)

    def error(self, message: str) -> None:
        self._append("ERROR", logging.ERROR, message)

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class GenerationContext:
    """
    Mutable pipeline state for a single run.

    The settings are deep-copied so steps can never alter the caller's
    object. `has_stats` tracks whether `stats` matches the current field
    contents; any step that mutates the field clears it first.
    """

    def __init__(
        self,
        settings: WorldGenSettings,
        seed: Optional[int] = None,
        output_path: Optional[Path] = None,
    ):
        self.settings = copy.deepcopy(settings)
        self.seed = int(settings.seed if seed is None else seed)
        self.rng = make_rng(self.seed)
        self.output_path = Path(output_path) if output_path is not None else None

        self.field: Optional[ScalarField3D] = None
        self.has_stats = False
        self.stats: Optional[FieldStats] = None
        self.slice_files: List[str] = []

        self.blackboard = Blackboard()
        self.step_reports: List[StepReport] = []
        self.run_log = RunLog(echo=self.settings.log_to_console)

    def invalidate_stats(self) -> None:
        self.has_stats = False

    def refresh_stats(self) -> FieldStats:
        """Recompute stats from the current field contents."""
        if self.field is None:
            raise ValueError("No density field to summarise")
        self.stats = compute_field_stats(self.field.data)
        self.has_stats = True
        return self.stats

    def ensure_stats(self) -> Optional[FieldStats]:
        """Stats for the current field, recomputed only when stale; None without a field."""
        if self.field is None:
            return None
        if not self.has_stats or self.stats is None:
            return self.refresh_stats()
        return self.stats
