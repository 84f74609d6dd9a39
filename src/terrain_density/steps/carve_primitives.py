"""
CarvePrimitives: cut tunnels, cave pockets and one arch out of the field.

All voids are built up front from a sub-generator seeded with
seed + carve_seed_offset, so the layout does not depend on how much of
the shared stream earlier steps consumed. The field is then updated in
one pass per cell:

    d = min(d, sdf(p) * carve_strength)   for every void with sdf(p) <= 0

A void only claims the cells inside it; cells outside every void keep
their value. Carving can only lower a value, never raise it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..common import sdf
from ..common.config import CarveParams, WorldGenSettings
from ..common.context import GenerationContext, StepResult, derive_seed, make_rng, rand_range
from ..common.io import export_density_slices
from ..common.voxel import ScalarField3D, run_slab_pass
from .registry import register_step

logger = logging.getLogger(__name__)

STEP_NAME = "CarvePrimitives"

# Minimum change for a cell to count as affected
AFFECTED_EPS = 1e-6

MIN_RADIUS = 0.01

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class CapsuleVoid:
    a: Vec3
    b: Vec3
    radius: float

    def to_dict(self) -> Dict:
        return {"a": list(self.a), "b": list(self.b), "radius": self.radius}


@dataclass(frozen=True)
class SphereVoid:
    center: Vec3
    radius: float

    def to_dict(self) -> Dict:
        return {"center": list(self.center), "radius": self.radius}


@dataclass(frozen=True)
class ArchVoid:
    """Capsule that only carves cells with world y <= max_y."""
    a: Vec3
    b: Vec3
    radius: float
    max_y: float

    def to_dict(self) -> Dict:
        return {"a": list(self.a), "b": list(self.b), "radius": self.radius, "max_y": self.max_y}


@dataclass
class CarvePlan:
    """Every void of one carve pass, fixed before the pass starts."""
    seed: int
    carve_strength: float
    tunnels: List[CapsuleVoid] = field(default_factory=list)
    pockets: List[SphereVoid] = field(default_factory=list)
    arch: Optional[ArchVoid] = None

    def to_dict(self) -> Dict:
        return {
            "seed": self.seed,
            "carve_strength": self.carve_strength,
            "tunnels": [t.to_dict() for t in self.tunnels],
            "pockets": [p.to_dict() for p in self.pockets],
            "arch": self.arch.to_dict() if self.arch is not None else None,
        }


@dataclass
class CarveCounts:
    affected: int = 0
    solid_to_air: int = 0

    def __add__(self, other: "CarveCounts") -> "CarveCounts":
        return CarveCounts(self.affected + other.affected, self.solid_to_air + other.solid_to_air)


def effective_carve_strength(value: float) -> float:
    """Non-positive strengths fall back to 1."""
    return value if value > 0 else 1.0


def build_carve_plan(params: CarveParams, seed: int, world_max: Vec3) -> CarvePlan:
    """
    Place all voids for one carve pass.

    Draw order is fixed (tunnels, pockets, arch) so a given seed always
    yields the same plan.

    Args:
        params: Carve parameters
        seed: Already-derived sub-seed
        world_max: World coordinates of the last cell on each axis

    Returns:
        CarvePlan
    """
    rng = make_rng(seed)
    max_x, max_y, max_z = world_max
    plan = CarvePlan(seed=seed, carve_strength=effective_carve_strength(params.carve_strength))

    # Tunnels alternate between running along X (even) and along Z (odd)
    tunnel_radius = max(MIN_RADIUS, params.tunnel_radius)
    for i in range(max(0, params.tunnel_count)):
        y_a = rand_range(rng, 0.45 * max_y, 0.65 * max_y)
        y_b = y_a + rand_range(rng, -0.05 * max_y, 0.05 * max_y)
        if i % 2 == 0:
            z0 = rand_range(rng, 0.15 * max_z, 0.85 * max_z)
            z1 = rand_range(rng, 0.15 * max_z, 0.85 * max_z)
            a, b = (0.0, y_a, z0), (max_x, y_b, z1)
        else:
            x0 = rand_range(rng, 0.15 * max_x, 0.85 * max_x)
            x1 = rand_range(rng, 0.15 * max_x, 0.85 * max_x)
            a, b = (x0, y_a, 0.0), (x1, y_b, max_z)
        plan.tunnels.append(CapsuleVoid(a, b, tunnel_radius))

    lo, hi = params.cave_pocket_radius_range
    r_min = max(MIN_RADIUS, min(lo, hi))
    r_max = max(r_min, max(lo, hi))
    for _ in range(max(0, params.cave_pocket_count)):
        r = rand_range(rng, r_min, r_max)
        center = (
            rand_range(rng, r, max(r, max_x - r)),
            rand_range(rng, 0.25 * max_y, 0.60 * max_y),
            rand_range(rng, r, max(r, max_z - r)),
        )
        plan.pockets.append(SphereVoid(center, r))

    center_z = rand_range(rng, 0.35 * max_z, 0.65 * max_z)
    center_x = rand_range(rng, 0.35 * max_x, 0.65 * max_x)
    arch_y = float(np.clip(params.arch_height, 0.0, max_y))
    arch_r = max(MIN_RADIUS, params.arch_radius)
    half_span = 1.6 * arch_r
    a = (float(np.clip(center_x - half_span, 0.0, max_x)), arch_y, center_z)
    b = (float(np.clip(center_x + half_span, 0.0, max_x)), arch_y, center_z)
    max_carve_y = float(np.clip(arch_y + max(0.0, params.arch_thickness), 0.0, max_y))
    plan.arch = ArchVoid(a, b, arch_r, max_carve_y)

    return plan


def carve_field(
    field: ScalarField3D,
    tunnels: List[CapsuleVoid],
    pockets: List[SphereVoid],
    arch: Optional[ArchVoid],
    carve_strength: float = 1.0,
    workers: int = 1,
) -> CarveCounts:
    """
    Apply voids to the field in place.

    Unlike an unrestricted running min, a void only lowers the cells where
    its scaled SDF is <= 0. Solid cells just outside a void keep their
    value instead of being pulled down to their distance from it. Which
    cells end up solid is the same either way.

    Args:
        field: Density field (mutated)
        tunnels, pockets, arch: Voids to carve
        carve_strength: Scale applied to every void SDF
        workers: Threads for the Z-slab pass

    Returns:
        CarveCounts for the whole field
    """
    strength = effective_carve_strength(carve_strength)
    volume = field.volume

    def carve_slab(z0: int, z1: int) -> CarveCounts:
        px, py, pz = field.world_coords(z0, z1)
        before = volume[z0:z1].astype(np.float64)
        d = before.copy()

        for t in tunnels:
            s = sdf.capsule_components(px, py, pz, t.a, t.b, t.radius) * strength
            d = np.where(s <= 0.0, np.minimum(d, s), d)

        for p in pockets:
            s = sdf.sphere_components(px, py, pz, p.center, p.radius) * strength
            d = np.where(s <= 0.0, np.minimum(d, s), d)

        if arch is not None:
            s = sdf.capsule_components(px, py, pz, arch.a, arch.b, arch.radius) * strength
            d = np.where((s <= 0.0) & (py <= arch.max_y), np.minimum(d, s), d)

        after = d.astype(np.float32)
        volume[z0:z1] = after
        return CarveCounts(
            affected=int(np.count_nonzero(np.abs(after.astype(np.float64) - before) > AFFECTED_EPS)),
            solid_to_air=int(np.count_nonzero((before > 0.0) & (after <= 0.0))),
        )

    return sum(run_slab_pass(field, carve_slab, workers), CarveCounts())


@register_step(STEP_NAME)
def generate(settings: WorldGenSettings, ctx: GenerationContext) -> StepResult:
    """Build the carve plan from the settings and apply it to ctx.field."""
    if ctx.field is None:
        ctx.run_log.warn(f"{STEP_NAME}: no density field; run BuildBaseField first")
        return StepResult(notes="No density field", skipped=True)

    params = settings.carve
    f = ctx.field
    seed = derive_seed(ctx.seed, params.carve_seed_offset)
    plan = build_carve_plan(params, seed, f.world_max)
    ctx.blackboard.carve_plan = plan

    before = ctx.ensure_stats()
    ctx.run_log.info(f"{STEP_NAME} BEFORE: {before.describe()}")
    if settings.export_before_after_slices and ctx.output_path is not None:
        export_density_slices(ctx, prefix="before_")

    logger.debug(
        f"Carving {len(plan.tunnels)} tunnels, {len(plan.pockets)} pockets, 1 arch "
        f"(seed={seed}, strength={plan.carve_strength})"
    )

    ctx.invalidate_stats()
    counts = carve_field(f, plan.tunnels, plan.pockets, plan.arch, plan.carve_strength, settings.workers)

    after = ctx.refresh_stats()
    ctx.run_log.info(f"{STEP_NAME} AFTER: {after.describe()}")
    if settings.export_before_after_slices and ctx.output_path is not None:
        export_density_slices(ctx, prefix="after_")

    notes = (
        f"carveStrength={plan.carve_strength:.3f}, tunnelRadius={params.tunnel_radius:.3f}, "
        f"archRadius={params.arch_radius:.3f}, solidToAir={counts.solid_to_air}, affected={counts.affected}"
    )
    return StepResult(
        notes=notes,
        counters={
            "tunnels": len(plan.tunnels),
            "cavePockets": len(plan.pockets),
            "affectedVoxels": counts.affected,
            "solidToAir": counts.solid_to_air,
        },
    )
