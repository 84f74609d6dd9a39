"""
ComposeMasses: add large landmasses, terraces, overhangs and floating islands.

Placement happens first, from a sub-generator seeded with
seed + compose_seed_offset:
    1. Major masses by rejection sampling on XZ separation
    2. Overhang voids (spheres that only cut below a cutoff height)
    3. Floating islands, kept apart from each other and from mass centres

Then a single pass per cell, in this order:
    masses (additive ellipsoid) -> terraces (additive bands + noise)
    -> overhangs (min, below cutoff) -> islands (additive by penetration depth)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..common import sdf
from ..common.config import ComposeParams, WorldGenSettings
from ..common.context import GenerationContext, StepResult, derive_seed, make_rng, rand_range
from ..common.io import export_density_slices
from ..common.noise import perlin_2d
from ..common.topdown import export_surface_and_occupancy
from ..common.voxel import ScalarField3D, run_slab_pass
from .registry import register_step

logger = logging.getLogger(__name__)

STEP_NAME = "ComposeMasses"

AFFECTED_EPS = 1e-6

# Density added at the core of every major mass
MASS_ADD_STRENGTH = 40.0

# Masses never come out flatter than this fraction of their radius
MIN_HEIGHT_TO_RADIUS = 0.85

# Islands keep at least this XZ distance from any mass centre
ISLAND_MASS_CLEARANCE = 25.0
ISLAND_SEPARATION_MIN = 10.0
ISLAND_SEPARATION_MAX = 60.0

NOISE_OFFSET_SCALE = 10000.0


@dataclass(frozen=True)
class MajorMass:
    center: Tuple[float, float, float]
    radius: float
    height: float
    add_strength: float
    edge_falloff: float

    def to_dict(self) -> Dict:
        return {
            "center": list(self.center),
            "radius": self.radius,
            "height": self.height,
            "add_strength": self.add_strength,
            "edge_falloff": self.edge_falloff,
        }


@dataclass(frozen=True)
class Overhang:
    center: Tuple[float, float, float]
    radius: float
    cutoff_y: float

    def to_dict(self) -> Dict:
        return {"center": list(self.center), "radius": self.radius, "cutoff_y": self.cutoff_y}


@dataclass(frozen=True)
class FloatingIsland:
    center: Tuple[float, float, float]
    radius: float
    boost: float

    def to_dict(self) -> Dict:
        return {"center": list(self.center), "radius": self.radius, "boost": self.boost}


@dataclass(frozen=True)
class TerraceSettings:
    strength: float
    band_height: float
    noise_freq: float
    noise_amp: float
    noise_offset: Tuple[float, float]


@dataclass
class ComposePlan:
    seed: int
    target_masses: int
    required_separation: float
    masses: List[MajorMass] = field(default_factory=list)
    overhangs: List[Overhang] = field(default_factory=list)
    islands: List[FloatingIsland] = field(default_factory=list)
    terraces: Optional[TerraceSettings] = None

    def to_dict(self) -> Dict:
        diag = placement_diagnostics(self)
        return {
            "seed": self.seed,
            "target_masses": self.target_masses,
            "required_separation": self.required_separation,
            "masses": [m.to_dict() for m in self.masses],
            "overhangs": [o.to_dict() for o in self.overhangs],
            "islands": [i.to_dict() for i in self.islands],
            "terraces": None if self.terraces is None else {
                "strength": self.terraces.strength,
                "band_height": self.terraces.band_height,
                "noise_freq": self.terraces.noise_freq,
                "noise_amp": self.terraces.noise_amp,
            },
            "diagnostics": diag,
        }


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _xz_dist_sq(a, b) -> float:
    dx = a[0] - b[0]
    dz = a[2] - b[2]
    return dx * dx + dz * dz


def place_major_masses(
    rng: np.random.Generator,
    params: ComposeParams,
    world_max,
) -> Tuple[List[MajorMass], int, float]:
    """
    Rejection-sample major masses on XZ separation.

    Running out of tries before reaching the target is normal; the
    masses placed so far are kept.

    Returns:
        (masses, target count, required XZ separation)
    """
    max_x, max_y, max_z = world_max
    lo, hi = sorted((params.major_mass_count_min, params.major_mass_count_max))
    target = int(rng.integers(lo, hi + 1))
    tries = max(1, params.mass_placement_max_tries)
    required_sep = params.mass_min_separation * (1.0 - _clamp(params.overlap_allowed_percent, 0.0, 1.0))
    required_sq = required_sep * required_sep

    masses: List[MajorMass] = []
    for _ in range(tries):
        if len(masses) >= target:
            break
        candidate = (
            rand_range(rng, 0.0, max_x),
            rand_range(rng, 0.35 * max_y, 0.65 * max_y),
            rand_range(rng, 0.0, max_z),
        )
        if any(_xz_dist_sq(candidate, m.center) < required_sq for m in masses):
            continue

        radius = rand_range(rng, *params.major_mass_radius_range)
        height = rand_range(rng, *params.major_mass_height_range)
        height = max(height, MIN_HEIGHT_TO_RADIUS * radius)
        masses.append(MajorMass(
            center=candidate,
            radius=max(1.0, radius),
            height=max(1.0, height),
            add_strength=MASS_ADD_STRENGTH,
            edge_falloff=max(0.0, params.major_mass_edge_falloff),
        ))

    return masses, target, required_sep


def place_overhangs(rng: np.random.Generator, params: ComposeParams, world_max) -> List[Overhang]:
    max_x, max_y, max_z = world_max
    overhangs = []
    for _ in range(max(0, params.overhang_count)):
        radius = max(1.0, rand_range(rng, *params.overhang_radius_range))
        cx = rand_range(rng, 0.0, max_x)
        cz = rand_range(rng, 0.0, max_z)
        cutoff_y = _clamp(rand_range(rng, *params.overhang_height_range), 0.0, max_y)
        cy = _clamp(cutoff_y - max(0.0, params.overhang_carve_thickness) * 0.5, 0.0, max_y)
        overhangs.append(Overhang((cx, cy, cz), radius, cutoff_y))
    return overhangs


def place_floating_islands(
    rng: np.random.Generator,
    params: ComposeParams,
    world_max,
    masses: List[MajorMass],
    required_sep: float,
) -> List[FloatingIsland]:
    """Islands away from mass centres and from each other, within the try budget."""
    max_x, max_y, max_z = world_max
    count = max(0, params.floating_island_count)
    tries = max(1, params.mass_placement_max_tries)
    island_sep = _clamp(required_sep * 0.5, ISLAND_SEPARATION_MIN, ISLAND_SEPARATION_MAX)
    island_sep_sq = island_sep * island_sep
    clearance_sq = ISLAND_MASS_CLEARANCE * ISLAND_MASS_CLEARANCE

    islands: List[FloatingIsland] = []
    for _ in range(tries):
        if len(islands) >= count:
            break
        radius = max(1.0, rand_range(rng, *params.floating_island_radius_range))
        cx = rand_range(rng, 0.0, max_x)
        cz = rand_range(rng, 0.0, max_z)
        cy = _clamp(rand_range(rng, *params.floating_island_height_range), 0.0, max_y)
        center = (cx, cy, cz)

        if any(_xz_dist_sq(center, i.center) < island_sep_sq for i in islands):
            continue
        if any(_xz_dist_sq(center, m.center) < clearance_sq for m in masses):
            continue
        islands.append(FloatingIsland(center, radius, params.floating_island_density_boost))

    return islands


def build_compose_plan(params: ComposeParams, seed: int, world_max) -> ComposePlan:
    """
    Place everything ComposeMasses adds, in a fixed draw order.

    Args:
        params: Compose parameters
        seed: Already-derived sub-seed
        world_max: World coordinates of the last cell on each axis

    Returns:
        ComposePlan
    """
    rng = make_rng(seed)
    max_y = world_max[1]

    terrace_offset = (
        float(rng.random()) * NOISE_OFFSET_SCALE,
        float(rng.random()) * NOISE_OFFSET_SCALE,
    )

    masses, target, required_sep = place_major_masses(rng, params, world_max)
    overhangs = place_overhangs(rng, params, world_max)
    islands = place_floating_islands(rng, params, world_max, masses, required_sep)

    strength = params.terrace_strength if params.enable_terraces else 0.0
    terraces = None
    if strength != 0.0:
        bands = max(1, params.terrace_bands)
        terraces = TerraceSettings(
            strength=strength,
            band_height=max_y / bands if max_y > 0 else 1.0,
            noise_freq=params.terrace_noise_freq,
            noise_amp=params.terrace_noise_amp,
            noise_offset=terrace_offset,
        )

    return ComposePlan(
        seed=seed,
        target_masses=target,
        required_separation=required_sep,
        masses=masses,
        overhangs=overhangs,
        islands=islands,
        terraces=terraces,
    )


def placement_diagnostics(plan: ComposePlan) -> Dict:
    """Mass overlap pairs and closest centre distances (XZ)."""
    masses = plan.masses
    overlap_pairs = 0
    min_mass_dist = None
    for i in range(len(masses)):
        for j in range(i + 1, len(masses)):
            d = math.sqrt(_xz_dist_sq(masses[i].center, masses[j].center))
            if d < masses[i].radius + masses[j].radius:
                overlap_pairs += 1
            min_mass_dist = d if min_mass_dist is None else min(min_mass_dist, d)

    min_island_dist = None
    islands = plan.islands
    for i in range(len(islands)):
        for j in range(i + 1, len(islands)):
            d = math.sqrt(_xz_dist_sq(islands[i].center, islands[j].center))
            min_island_dist = d if min_island_dist is None else min(min_island_dist, d)

    return {
        "mass_overlap_pairs": overlap_pairs,
        "min_mass_center_distance": min_mass_dist,
        "min_island_center_distance": min_island_dist,
    }


def compose_field(field: ScalarField3D, plan: ComposePlan, workers: int = 1) -> int:
    """
    Apply a compose plan to the field in place.

    Overhangs, like carve voids, only lower cells inside their sphere and
    below their cutoff; an unrestricted min would also touch cells outside.

    Returns:
        Number of cells whose value changed by more than AFFECTED_EPS
    """
    volume = field.volume
    terraces = plan.terraces

    def compose_slab(z0: int, z1: int) -> int:
        px, py, pz = field.world_coords(z0, z1)
        before = volume[z0:z1].astype(np.float64)
        d = before.copy()

        for m in plan.masses:
            cx, cy, cz = m.center
            r = max(0.01, m.radius)
            h = max(0.01, m.height)
            dh2 = (px - cx) ** 2 + (pz - cz) ** 2
            dv2 = (py - cy) ** 2
            f = 1.0 - dh2 / (r * r) - dv2 / (h * h)
            edge = np.clip(f, 0.0, 1.0)
            if m.edge_falloff > 0.01:
                edge = sdf.smoothstep(0.0, 1.0, edge)
            d = d + np.where(f > 0.0, edge * m.add_strength, 0.0)

        if terraces is not None:
            t = py / terraces.band_height
            frac = t - np.floor(t)
            mask = np.clip(1.0 - np.abs(frac - 0.5) * 2.0, 0.0, 1.0)
            d = d + mask * terraces.strength
            if terraces.noise_freq > 0 and terraces.noise_amp != 0:
                ox, oz = terraces.noise_offset
                n = perlin_2d(px * terraces.noise_freq + ox, pz * terraces.noise_freq + oz) - 0.5
                d = d + n * terraces.noise_amp

        for o in plan.overhangs:
            s = sdf.sphere_components(px, py, pz, o.center, o.radius)
            d = np.where((s <= 0.0) & (py <= o.cutoff_y), np.minimum(d, s), d)

        for isl in plan.islands:
            s = sdf.sphere_components(px, py, pz, isl.center, isl.radius)
            depth = np.clip(-s / max(0.01, isl.radius), 0.0, 1.0)
            d = d + np.where(s < 0.0, isl.boost * depth, 0.0)

        after = d.astype(np.float32)
        volume[z0:z1] = after
        return int(np.count_nonzero(np.abs(after.astype(np.float64) - before) > AFFECTED_EPS))

    return sum(run_slab_pass(field, compose_slab, workers))


def _log_placements(ctx: GenerationContext, plan: ComposePlan) -> None:
    for i, m in enumerate(plan.masses):
        cx, cy, cz = m.center
        ctx.run_log.info(
            f"  mass[{i}] center=({cx:.1f}, {cy:.1f}, {cz:.1f}) radius={m.radius:.1f} height={m.height:.1f}"
        )
    for i, o in enumerate(plan.overhangs):
        cx, cy, cz = o.center
        ctx.run_log.info(f"  overhang[{i}] center=({cx:.1f}, {cy:.1f}, {cz:.1f}) radius={o.radius:.1f} cutoffY={o.cutoff_y:.1f}")
    for i, isl in enumerate(plan.islands):
        cx, cy, cz = isl.center
        ctx.run_log.info(f"  island[{i}] center=({cx:.1f}, {cy:.1f}, {cz:.1f}) radius={isl.radius:.1f}")


@register_step(STEP_NAME)
def generate(settings: WorldGenSettings, ctx: GenerationContext) -> StepResult:
    """Build the compose plan from the settings and apply it to ctx.field."""
    if ctx.field is None:
        ctx.run_log.warn(f"{STEP_NAME}: no density field; run BuildBaseField first")
        return StepResult(notes="No density field", skipped=True)

    params = settings.compose
    f = ctx.field
    if abs(params.edge_bias) > 1e-6:
        ctx.run_log.warn(f"{STEP_NAME}: edge_bias={params.edge_bias} is ignored; placement stays uniform")

    seed = derive_seed(ctx.seed, params.compose_seed_offset)
    plan = build_compose_plan(params, seed, f.world_max)
    ctx.blackboard.compose_plan = plan

    diag = placement_diagnostics(plan)
    ctx.run_log.info(
        f"{STEP_NAME} placed {len(plan.masses)}/{plan.target_masses} masses "
        f"(requiredSep={plan.required_separation:.2f}, overlapPairs={diag['mass_overlap_pairs']}), "
        f"{len(plan.overhangs)} overhangs, {len(plan.islands)}/{params.floating_island_count} islands, seed={seed}"
    )
    if len(plan.masses) < plan.target_masses:
        ctx.run_log.warn(
            f"{STEP_NAME}: only {len(plan.masses)} of {plan.target_masses} masses fit "
            f"within {params.mass_placement_max_tries} tries"
        )
    _log_placements(ctx, plan)

    before = ctx.ensure_stats()
    ctx.run_log.info(f"{STEP_NAME} BEFORE: {before.describe()}")
    if settings.export_before_after_slices and ctx.output_path is not None:
        export_density_slices(ctx, prefix="before_compose_")

    ctx.invalidate_stats()
    affected = compose_field(f, plan, settings.workers)

    after = ctx.refresh_stats()
    ctx.run_log.info(f"{STEP_NAME} AFTER: {after.describe()}")
    if ctx.output_path is not None:
        if settings.export_before_after_slices:
            export_density_slices(ctx, prefix="after_compose_")
        export_surface_and_occupancy(ctx)

    notes = (
        f"masses={len(plan.masses)}/{plan.target_masses}, overhangs={len(plan.overhangs)}, "
        f"islands={len(plan.islands)}, terraces={'on' if plan.terraces is not None else 'off'}, "
        f"affected={affected}"
    )
    return StepResult(
        notes=notes,
        counters={
            "majorMasses": len(plan.masses),
            "overhangs": len(plan.overhangs),
            "floatingIslands": len(plan.islands),
            "affectedVoxels": affected,
        },
    )
