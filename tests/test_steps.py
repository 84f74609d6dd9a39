"""
Tests for the generation steps

Tests cover:
- BuildBaseField heightfield and determinism
- CarvePrimitives plan layout and the carve pass
- ComposeMasses placement rules and the compose pass
- Worker-count invariance of the per-cell passes
"""

import math

import pytest
import numpy as np

from terrain_density.common import sdf
from terrain_density.common.config import WorldGenSettings, CarveParams, ComposeParams
from terrain_density.common.context import GenerationContext, derive_seed
from terrain_density.common.errors import InvalidConfiguration
from terrain_density.common.voxel import ScalarField3D
from terrain_density.steps import STEP_REGISTRY, build_base_field, carve_primitives, compose_masses, get_step, register_step
from terrain_density.steps.carve_primitives import (
    SphereVoid,
    build_carve_plan,
    carve_field,
)
from terrain_density.steps.compose_masses import (
    ComposePlan,
    FloatingIsland,
    Overhang,
    TerraceSettings,
    build_compose_plan,
    compose_field,
    placement_diagnostics,
)


# ============== Fixtures ==============

@pytest.fixture
def small_settings():
    """Small grid, no file output."""
    return WorldGenSettings(
        seed=4242,
        grid_size=(24, 16, 20),
        voxel_size=2.0,
        log_to_console=False,
        export_density_slices=False,
    )


@pytest.fixture
def base_ctx(small_settings):
    """Context with the base field already built."""
    ctx = GenerationContext(small_settings)
    build_base_field.generate(ctx.settings, ctx)
    return ctx


def constant_field(size, value, voxel_size=1.0):
    f = ScalarField3D(size[0], size[1], size[2], voxel_size)
    f.data[:] = value
    return f


def cell_points(field):
    """World XYZ of every cell in storage order, shape (count, 3)."""
    px, py, pz = field.world_coords()
    shape = field.volume.shape
    return np.stack([np.broadcast_to(c, shape).ravel() for c in (px, py, pz)], axis=-1)


# ============== Registry Tests ==============

class TestRegistry:
    """Test the step table."""

    def test_default_steps_registered(self):
        for name in ("BuildBaseField", "CarvePrimitives", "ComposeMasses"):
            assert name in STEP_REGISTRY

    def test_functions(self):
        assert STEP_REGISTRY["CarvePrimitives"] is carve_primitives.generate

    def test_get_step(self):
        assert get_step("ComposeMasses") is compose_masses.generate

    def test_get_unknown_step(self):
        with pytest.raises(InvalidConfiguration):
            get_step("NoSuchStep")

    def test_duplicate_name_rejected(self):
        with pytest.raises(ValueError):
            register_step("BuildBaseField")(lambda settings, ctx: None)
        assert STEP_REGISTRY["BuildBaseField"] is build_base_field.generate


# ============== BuildBaseField Tests ==============

class TestBuildBaseField:
    """Test the base heightfield."""

    def test_creates_field(self, base_ctx, small_settings):
        f = base_ctx.field
        assert f.shape == tuple(small_settings.grid_size)
        assert f.voxel_size == small_settings.voxel_size

    def test_solid_below_air_above(self, base_ctx):
        vol = base_ctx.field.volume
        assert np.all(vol[:, 0, :] > 0.0)
        assert np.all(vol[:, -1, :] <= 0.0)

    def test_density_falls_one_voxel_per_cell(self, base_ctx):
        vol = base_ctx.field.volume.astype(np.float64)
        np.testing.assert_allclose(np.diff(vol, axis=1), -base_ctx.field.voxel_size, atol=1e-4)

    def test_stats_fresh(self, base_ctx):
        assert base_ctx.has_stats
        assert base_ctx.stats.count == base_ctx.field.count
        assert base_ctx.stats.max == pytest.approx(float(base_ctx.field.data.max()))

    def test_offsets_recorded(self, base_ctx):
        offsets = base_ctx.blackboard.base_noise_offsets
        assert len(offsets) == 4
        assert all(0.0 <= o < 10000.0 for o in offsets)

    def test_deterministic(self, small_settings):
        a = GenerationContext(small_settings)
        b = GenerationContext(small_settings)
        build_base_field.generate(a.settings, a)
        build_base_field.generate(b.settings, b)
        np.testing.assert_array_equal(a.field.data, b.field.data)

    def test_seed_changes_field(self, small_settings):
        a = GenerationContext(small_settings)
        b = GenerationContext(small_settings, seed=small_settings.seed + 1)
        build_base_field.generate(a.settings, a)
        build_base_field.generate(b.settings, b)
        assert not np.array_equal(a.field.data, b.field.data)

    def test_counters(self, small_settings):
        ctx = GenerationContext(small_settings)
        result = build_base_field.generate(ctx.settings, ctx)
        assert result.counters["cells"] == ctx.field.count
        assert result.counters["solidCells"] == int(np.count_nonzero(ctx.field.data > 0))


# ============== Carve Pass Tests ==============

class TestCarveField:
    """Test the carve pass on hand-built voids."""

    def test_corner_sphere(self):
        f = constant_field((4, 4, 4), 5.0)
        counts = carve_field(f, [], [SphereVoid((0.0, 0.0, 0.0), 2.0)], None, carve_strength=1.0)

        inside = 0
        for z in range(4):
            for y in range(4):
                for x in range(4):
                    if math.sqrt(x * x + y * y + z * z) <= 2.0:
                        inside += 1
                        assert f.get(x, y, z) <= 0.0
                    else:
                        assert f.get(x, y, z) == 5.0

        assert counts.affected == inside
        assert counts.solid_to_air == inside

    def test_only_decreases_and_counts_match(self):
        rng = np.random.default_rng(21)
        f = ScalarField3D(14, 10, 12, 1.5)
        f.data[:] = rng.normal(0.0, 10.0, f.count).astype(np.float32)
        before = f.data.copy()

        params = CarveParams(tunnel_count=2, tunnel_radius=3.0, cave_pocket_count=3,
                             cave_pocket_radius_range=(2.0, 5.0), arch_height=6.0,
                             arch_radius=3.0, arch_thickness=2.0, carve_strength=1.5)
        plan = build_carve_plan(params, 77, f.world_max)
        counts = carve_field(f, plan.tunnels, plan.pockets, plan.arch, plan.carve_strength)

        # Independent evaluation with the point-array SDFs
        pts = cell_points(f)
        expected = before.astype(np.float64)
        for t in plan.tunnels:
            s = sdf.capsule(pts, t.a, t.b, t.radius) * plan.carve_strength
            expected = np.where(s <= 0.0, np.minimum(expected, s), expected)
        for p in plan.pockets:
            s = sdf.sphere(pts, p.center, p.radius) * plan.carve_strength
            expected = np.where(s <= 0.0, np.minimum(expected, s), expected)
        a = plan.arch
        s = sdf.capsule(pts, a.a, a.b, a.radius) * plan.carve_strength
        expected = np.where((s <= 0.0) & (pts[:, 1] <= a.max_y), np.minimum(expected, s), expected)
        expected = expected.astype(np.float32)

        np.testing.assert_allclose(f.data, expected, atol=1e-5)
        assert np.all(f.data <= before)
        changed = np.abs(f.data.astype(np.float64) - before.astype(np.float64)) > 1e-6
        assert counts.affected == int(np.count_nonzero(changed))
        assert counts.affected > 0

    def test_arch_respects_max_y(self):
        f = constant_field((9, 9, 3), 5.0)
        arch = carve_primitives.ArchVoid((0.0, 4.0, 1.0), (8.0, 4.0, 1.0), 3.0, max_y=4.0)
        carve_field(f, [], [], arch)
        assert f.get(4, 4, 1) <= 0.0
        assert f.get(4, 5, 1) == 5.0

    @pytest.mark.parametrize("workers", [2, 5])
    def test_worker_count_invariant(self, workers):
        params = CarveParams(tunnel_count=3, tunnel_radius=2.5, cave_pocket_radius_range=(2.0, 4.0))
        a = ScalarField3D(16, 12, 18, 1.0)
        a.fill_vectorized(lambda x, y, z: 6.0 - y + 0.1 * x - 0.05 * z)
        b = ScalarField3D(16, 12, 18, 1.0)
        b.data[:] = a.data

        plan = build_carve_plan(params, 5, a.world_max)
        ca = carve_field(a, plan.tunnels, plan.pockets, plan.arch, workers=1)
        cb = carve_field(b, plan.tunnels, plan.pockets, plan.arch, workers=workers)
        np.testing.assert_array_equal(a.data, b.data)
        assert ca == cb


# ============== Carve Plan Tests ==============

class TestCarvePlan:
    """Test void placement."""

    def test_layout(self):
        params = CarveParams(tunnel_count=3, cave_pocket_count=5, cave_pocket_radius_range=(4.0, 8.0))
        world_max = (100.0, 60.0, 80.0)
        plan = build_carve_plan(params, 1, world_max)

        assert len(plan.tunnels) == 3
        assert plan.tunnels[0].a[0] == 0.0 and plan.tunnels[0].b[0] == 100.0
        assert plan.tunnels[1].a[2] == 0.0 and plan.tunnels[1].b[2] == 80.0
        for t in plan.tunnels:
            assert 0.45 * 60.0 <= t.a[1] <= 0.65 * 60.0

        assert len(plan.pockets) == 5
        for p in plan.pockets:
            assert 4.0 <= p.radius <= 8.0
            assert p.radius <= p.center[0] <= 100.0 - p.radius

        assert plan.arch is not None
        assert plan.arch.max_y == pytest.approx(min(60.0, params.arch_height + params.arch_thickness))

    def test_deterministic(self):
        params = CarveParams()
        assert build_carve_plan(params, 9, (50.0, 30.0, 50.0)) == build_carve_plan(params, 9, (50.0, 30.0, 50.0))

    def test_non_positive_strength_is_one(self):
        plan = build_carve_plan(CarveParams(carve_strength=0.0), 1, (10.0, 10.0, 10.0))
        assert plan.carve_strength == 1.0

    def test_to_dict(self):
        d = build_carve_plan(CarveParams(tunnel_count=1), 1, (10.0, 10.0, 10.0)).to_dict()
        assert len(d["tunnels"]) == 1
        assert d["arch"]["radius"] == CarveParams().arch_radius


# ============== CarvePrimitives Step Tests ==============

class TestCarvePrimitivesStep:
    """Test the CarvePrimitives step against a base field."""

    def test_counters_and_stats(self, base_ctx):
        before = base_ctx.field.data.copy()
        result = carve_primitives.generate(base_ctx.settings, base_ctx)

        changed = np.count_nonzero(np.abs(base_ctx.field.data.astype(np.float64) - before) > 1e-6)
        assert result.counters["affectedVoxels"] == changed
        assert result.counters["tunnels"] == base_ctx.settings.carve.tunnel_count
        assert result.counters["cavePockets"] == base_ctx.settings.carve.cave_pocket_count
        assert np.all(base_ctx.field.data <= before)
        assert base_ctx.has_stats
        assert base_ctx.stats.min == pytest.approx(float(base_ctx.field.data.min()))
        assert base_ctx.blackboard.carve_plan is not None
        assert "solidToAir=" in result.notes

    def test_does_not_consume_shared_rng(self, small_settings):
        a = GenerationContext(small_settings)
        b = GenerationContext(small_settings)
        build_base_field.generate(a.settings, a)
        build_base_field.generate(b.settings, b)
        carve_primitives.generate(a.settings, a)
        assert a.rng.random() == b.rng.random()

    def test_uses_derived_seed(self, base_ctx):
        carve_primitives.generate(base_ctx.settings, base_ctx)
        expected = derive_seed(base_ctx.seed, base_ctx.settings.carve.carve_seed_offset)
        assert base_ctx.blackboard.carve_plan.seed == expected

    def test_skips_without_field(self, small_settings):
        ctx = GenerationContext(small_settings)
        result = carve_primitives.generate(ctx.settings, ctx)
        assert result.skipped
        assert ctx.field is None


# ============== Compose Pass Tests ==============

class TestComposeField:
    """Test the compose pass on hand-built plans."""

    def test_overhang_only_below_cutoff(self):
        f = constant_field((11, 11, 11), 5.0)
        plan = ComposePlan(seed=0, target_masses=0, required_separation=0.0,
                           overhangs=[Overhang((5.0, 5.0, 5.0), 3.0, cutoff_y=5.0)])
        compose_field(f, plan)
        assert f.get(5, 5, 5) == pytest.approx(-3.0)
        assert f.get(5, 3, 5) == pytest.approx(-1.0)
        assert f.get(5, 6, 5) == 5.0
        assert f.get(0, 0, 0) == 5.0

    def test_island_boost_by_depth(self):
        f = constant_field((11, 11, 11), 0.0)
        plan = ComposePlan(seed=0, target_masses=0, required_separation=0.0,
                           islands=[FloatingIsland((5.0, 5.0, 5.0), 2.0, boost=30.0)])
        affected = compose_field(f, plan)
        assert f.get(5, 5, 5) == pytest.approx(30.0)
        assert f.get(6, 5, 5) == pytest.approx(15.0)
        assert f.get(8, 5, 5) == 0.0
        assert affected == int(np.count_nonzero(f.data))

    def test_terrace_bands(self):
        f = constant_field((2, 9, 2), 0.0)
        plan = ComposePlan(seed=0, target_masses=0, required_separation=0.0,
                           terraces=TerraceSettings(strength=3.0, band_height=4.0, noise_freq=0.0,
                                                    noise_amp=0.0, noise_offset=(0.0, 0.0)))
        compose_field(f, plan)
        assert f.get(0, 0, 0) == pytest.approx(0.0)
        assert f.get(0, 1, 0) == pytest.approx(1.5)
        assert f.get(0, 2, 0) == pytest.approx(3.0)
        assert f.get(1, 6, 1) == pytest.approx(3.0)

    @pytest.mark.parametrize("workers", [2, 4])
    def test_worker_count_invariant(self, workers):
        params = ComposeParams(floating_island_height_range=(5.0, 20.0), overhang_height_range=(5.0, 20.0))
        a = ScalarField3D(20, 12, 22, 2.0)
        a.fill_vectorized(lambda x, y, z: 10.0 - 2.0 * y + 0.0 * x * z)
        b = ScalarField3D(20, 12, 22, 2.0)
        b.data[:] = a.data

        plan = build_compose_plan(params, 3, a.world_max)
        assert compose_field(a, plan, workers=1) == compose_field(b, plan, workers=workers)
        np.testing.assert_array_equal(a.data, b.data)


# ============== Compose Plan Tests ==============

class TestComposePlan:
    """Test placement rules."""

    def test_mass_separation(self):
        params = ComposeParams(major_mass_count_min=4, major_mass_count_max=4, mass_placement_max_tries=500,
                               mass_min_separation=30.0, overlap_allowed_percent=0.0)
        plan = build_compose_plan(params, 12, (300.0, 100.0, 300.0))
        assert plan.required_separation == pytest.approx(30.0)
        assert 1 <= len(plan.masses) <= 4
        for i, m in enumerate(plan.masses):
            assert m.height >= 0.85 * m.radius - 1e-9
            assert m.add_strength == 40.0
            for other in plan.masses[i + 1:]:
                d = math.hypot(m.center[0] - other.center[0], m.center[2] - other.center[2])
                assert d >= 30.0

    def test_overlap_shrinks_separation(self):
        params = ComposeParams(mass_min_separation=80.0, overlap_allowed_percent=0.25)
        plan = build_compose_plan(params, 1, (200.0, 100.0, 200.0))
        assert plan.required_separation == pytest.approx(60.0)

    def test_islands_avoid_masses_and_each_other(self):
        params = ComposeParams(floating_island_count=5, mass_placement_max_tries=400,
                               mass_min_separation=40.0, overlap_allowed_percent=0.0)
        plan = build_compose_plan(params, 8, (400.0, 150.0, 400.0))
        for isl in plan.islands:
            for m in plan.masses:
                assert math.hypot(isl.center[0] - m.center[0], isl.center[2] - m.center[2]) >= 25.0
        for i, isl in enumerate(plan.islands):
            for other in plan.islands[i + 1:]:
                assert math.hypot(isl.center[0] - other.center[0], isl.center[2] - other.center[2]) >= 20.0

    def test_overhang_cutoff_in_world(self):
        params = ComposeParams(overhang_count=4, overhang_height_range=(10.0, 500.0))
        plan = build_compose_plan(params, 2, (100.0, 60.0, 100.0))
        assert len(plan.overhangs) == 4
        for o in plan.overhangs:
            assert 0.0 <= o.cutoff_y <= 60.0
            assert o.center[1] <= o.cutoff_y

    def test_terraces_disabled(self):
        plan = build_compose_plan(ComposeParams(enable_terraces=False), 1, (50.0, 50.0, 50.0))
        assert plan.terraces is None

    def test_deterministic(self):
        params = ComposeParams()
        assert build_compose_plan(params, 31, (200.0, 100.0, 200.0)) == build_compose_plan(params, 31, (200.0, 100.0, 200.0))

    def test_diagnostics(self):
        plan = build_compose_plan(ComposeParams(), 31, (200.0, 100.0, 200.0))
        diag = placement_diagnostics(plan)
        assert diag["mass_overlap_pairs"] >= 0
        if len(plan.masses) >= 2:
            assert diag["min_mass_center_distance"] >= plan.required_separation


# ============== ComposeMasses Step Tests ==============

class TestComposeMassesStep:
    """Test the ComposeMasses step."""

    def test_single_mass_raises_max_by_strength(self):
        settings = WorldGenSettings(
            grid_size=(40, 40, 40),
            voxel_size=1.0,
            log_to_console=False,
            compose=ComposeParams(
                major_mass_count_min=1,
                major_mass_count_max=1,
                mass_placement_max_tries=1,
                major_mass_radius_range=(15.0, 15.0),
                major_mass_height_range=(15.0, 15.0),
                major_mass_edge_falloff=0.0,
                enable_terraces=False,
                overhang_count=0,
                floating_island_count=0,
            ),
        )
        ctx = GenerationContext(settings)
        ctx.field = constant_field((40, 40, 40), 0.0)
        before = ctx.refresh_stats()

        result = compose_masses.generate(ctx.settings, ctx)

        after = ctx.ensure_stats()
        assert result.counters["majorMasses"] == 1
        assert after.max == pytest.approx(before.max + 40.0, abs=0.5)
        assert after.min == before.min
        assert result.counters["affectedVoxels"] == int(np.count_nonzero(np.abs(ctx.field.data) > 1e-6))

    def test_edge_bias_warns(self, base_ctx):
        base_ctx.settings.compose.edge_bias = 0.5
        compose_masses.generate(base_ctx.settings, base_ctx)
        assert any("edge_bias" in line for line in base_ctx.run_log.lines)

    def test_counters_and_plan(self, base_ctx):
        result = compose_masses.generate(base_ctx.settings, base_ctx)
        plan = base_ctx.blackboard.compose_plan
        assert result.counters["majorMasses"] == len(plan.masses)
        assert result.counters["overhangs"] == len(plan.overhangs)
        assert result.counters["floatingIslands"] == len(plan.islands)
        assert plan.seed == derive_seed(base_ctx.seed, base_ctx.settings.compose.compose_seed_offset)
        assert base_ctx.has_stats

    def test_skips_without_field(self, small_settings):
        ctx = GenerationContext(small_settings)
        assert compose_masses.generate(ctx.settings, ctx).skipped
