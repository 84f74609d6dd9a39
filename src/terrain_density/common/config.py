"""
Configuration and constants for density field generation.

World Model:
- Grid cell (x, y, z) sits at world position (x, y, z) * voxel_size
- Positive density = solid, non-positive = air (surface at 0)
- Same (seed, settings, step list) => identical field, every run
"""

from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Tuple
import json
from pathlib import Path

from .errors import InvalidConfiguration


DEFAULT_STEPS = ["BuildBaseField", "CarvePrimitives", "ComposeMasses"]


class RunIdMode(Enum):
    """
    How the per-run output folder is named.

    TIMESTAMP (default): 20240131_120000_seed12345
        - Every run gets a fresh folder
    SEED_ONLY: seed12345
        - Re-running a seed overwrites its previous outputs
    """
    TIMESTAMP = "timestamp"
    SEED_ONLY = "seed_only"


@dataclass
class CarveParams:
    """Parameters for the CarvePrimitives step (world units)."""
    tunnel_count: int = 3
    tunnel_radius: float = 6.0

    cave_pocket_count: int = 4
    cave_pocket_radius_range: Tuple[float, float] = (6.0, 14.0)

    arch_height: float = 70.0
    arch_radius: float = 12.0
    arch_thickness: float = 10.0

    # <= 0 is treated as 1.0
    carve_strength: float = 1.0
    carve_seed_offset: int = 1337


@dataclass
class ComposeParams:
    """Parameters for the ComposeMasses step (world units)."""
    major_mass_count_min: int = 2
    major_mass_count_max: int = 4
    major_mass_radius_range: Tuple[float, float] = (30.0, 60.0)
    major_mass_height_range: Tuple[float, float] = (30.0, 70.0)
    major_mass_edge_falloff: float = 0.5
    mass_placement_max_tries: int = 64
    mass_min_separation: float = 80.0
    overlap_allowed_percent: float = 0.15

    # Accepted for compatibility; placement sampling stays uniform.
    edge_bias: float = 0.0

    enable_terraces: bool = True
    terrace_bands: int = 6
    terrace_strength: float = 3.0
    terrace_noise_freq: float = 0.02
    terrace_noise_amp: float = 2.0

    overhang_count: int = 3
    overhang_radius_range: Tuple[float, float] = (10.0, 20.0)
    overhang_height_range: Tuple[float, float] = (40.0, 80.0)
    overhang_carve_thickness: float = 8.0

    floating_island_count: int = 3
    floating_island_radius_range: Tuple[float, float] = (6.0, 12.0)
    floating_island_height_range: Tuple[float, float] = (90.0, 115.0)
    floating_island_density_boost: float = 30.0

    compose_seed_offset: int = 7331


_RANGE_FIELDS = {
    CarveParams: ("cave_pocket_radius_range",),
    ComposeParams: (
        "major_mass_radius_range",
        "major_mass_height_range",
        "overhang_radius_range",
        "overhang_height_range",
        "floating_island_radius_range",
        "floating_island_height_range",
    ),
}


def _params_from_dict(cls, data: Dict[str, Any]):
    data = dict(data)
    for name in _RANGE_FIELDS[cls]:
        if name in data:
            data[name] = tuple(data[name])
    try:
        return cls(**data)
    except TypeError as e:
        raise InvalidConfiguration(f"Invalid {cls.__name__} fields: {e}")


@dataclass
class WorldGenSettings:
    """
    Global configuration for one generation run.

    The pipeline never mutates a settings object; the context keeps its
    own copy for the duration of the run.
    """

    # Determinism
    seed: int = 12345

    # World
    grid_size: Tuple[int, int, int] = (128, 64, 128)
    voxel_size: float = 2.0

    # Pipeline: ordered registry names; None marks an empty slot
    steps: List[Optional[str]] = field(default_factory=lambda: list(DEFAULT_STEPS))

    # Threads used for the per-cell passes
    workers: int = 1

    # Debug output
    output_root: str = "WorldGenOutput"
    run_id_mode: RunIdMode = RunIdMode.TIMESTAMP
    log_to_console: bool = True
    export_density_slices: bool = True
    debug_slice_ys: List[int] = field(default_factory=lambda: [16, 32, 48])
    debug_slice_zs: List[int] = field(default_factory=lambda: [64])
    debug_slice_xs: List[int] = field(default_factory=lambda: [64])
    export_before_after_slices: bool = False
    export_top_down_maps: bool = False
    export_surface_mesh: bool = False

    carve: CarveParams = field(default_factory=CarveParams)
    compose: ComposeParams = field(default_factory=ComposeParams)

    @property
    def world_size(self) -> Tuple[float, float, float]:
        """World extent in world units (grid_size * voxel_size)."""
        return tuple(n * self.voxel_size for n in self.grid_size)

    def get_settings_summary(self) -> str:
        return (
            f"seed={self.seed}, gridSize={tuple(self.grid_size)}, voxelSize={self.voxel_size}, "
            f"outputRoot='{self.output_root}', runIdMode={self.run_id_mode.value}"
        )

    def validate(self, known_steps: Optional[List[str]] = None) -> None:
        """
        Check the settings before a run starts.

        Args:
            known_steps: Registered step names; unknown names are rejected

        Raises:
            InvalidConfiguration: On the first problem found
        """
        if len(self.grid_size) != 3:
            raise InvalidConfiguration("grid_size must have 3 entries", {"grid_size": self.grid_size})
        for axis, n in zip("xyz", self.grid_size):
            if int(n) != n or n <= 0:
                raise InvalidConfiguration(f"grid_size.{axis} must be a positive integer", {axis: n})
        if not self.voxel_size > 0:
            raise InvalidConfiguration("voxel_size must be positive", {"voxel_size": self.voxel_size})
        if self.workers < 1:
            raise InvalidConfiguration("workers must be >= 1", {"workers": self.workers})

        if known_steps is not None:
            for name in self.steps:
                if name is not None and name not in known_steps:
                    raise InvalidConfiguration(f"Unknown step '{name}'", {"known": ", ".join(known_steps)})

        c = self.carve
        _check_count("carve.tunnel_count", c.tunnel_count)
        _check_count("carve.cave_pocket_count", c.cave_pocket_count)
        _check_range("carve.cave_pocket_radius_range", c.cave_pocket_radius_range)
        _check_non_negative("carve.tunnel_radius", c.tunnel_radius)
        _check_non_negative("carve.arch_radius", c.arch_radius)
        _check_non_negative("carve.arch_thickness", c.arch_thickness)

        m = self.compose
        _check_count("compose.major_mass_count_min", m.major_mass_count_min)
        _check_count("compose.major_mass_count_max", m.major_mass_count_max)
        if m.major_mass_count_max < m.major_mass_count_min:
            raise InvalidConfiguration(
                "compose.major_mass_count_max must be >= major_mass_count_min",
                {"min": m.major_mass_count_min, "max": m.major_mass_count_max},
            )
        if m.mass_placement_max_tries < 1:
            raise InvalidConfiguration("compose.mass_placement_max_tries must be >= 1")
        _check_non_negative("compose.mass_min_separation", m.mass_min_separation)
        if not 0.0 <= m.overlap_allowed_percent <= 1.0:
            raise InvalidConfiguration(
                "compose.overlap_allowed_percent must be within [0, 1]",
                {"value": m.overlap_allowed_percent},
            )
        if m.terrace_bands < 1:
            raise InvalidConfiguration("compose.terrace_bands must be >= 1")
        _check_non_negative("compose.terrace_noise_freq", m.terrace_noise_freq)
        _check_count("compose.overhang_count", m.overhang_count)
        _check_count("compose.floating_island_count", m.floating_island_count)
        for name in _RANGE_FIELDS[ComposeParams]:
            _check_range(f"compose.{name}", getattr(m, name))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["run_id_mode"] = self.run_id_mode.value
        data["grid_size"] = list(self.grid_size)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorldGenSettings":
        data = dict(data)
        if "run_id_mode" in data:
            try:
                data["run_id_mode"] = RunIdMode(data["run_id_mode"])
            except ValueError:
                raise InvalidConfiguration(f"Unknown run_id_mode '{data['run_id_mode']}'")
        if "grid_size" in data:
            data["grid_size"] = tuple(data["grid_size"])
        if "carve" in data:
            data["carve"] = _params_from_dict(CarveParams, data["carve"])
        if "compose" in data:
            data["compose"] = _params_from_dict(ComposeParams, data["compose"])
        try:
            return cls(**data)
        except TypeError as e:
            raise InvalidConfiguration(f"Invalid settings fields: {e}")

    @classmethod
    def from_json(cls, path: Path) -> "WorldGenSettings":
        """Load settings from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        """Save settings to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def _check_count(name: str, value: int) -> None:
    if value < 0:
        raise InvalidConfiguration(f"{name} must be >= 0", {name: value})


def _check_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise InvalidConfiguration(f"{name} must be >= 0", {name: value})


def _check_range(name: str, value: Tuple[float, float]) -> None:
    if len(value) != 2:
        raise InvalidConfiguration(f"{name} must be a (min, max) pair", {name: value})
    lo, hi = value
    if lo < 0 or hi < lo:
        raise InvalidConfiguration(f"{name} must satisfy 0 <= min <= max", {name: value})

