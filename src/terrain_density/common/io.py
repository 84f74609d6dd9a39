"""
Run output I/O.

Handles run folder naming, grayscale slice PNGs and the report.txt /
run.json pair written at the end of every run (including failed ones).
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any

import numpy as np
from PIL import Image

from .config import WorldGenSettings, RunIdMode
from .context import GenerationContext
from .errors import InvalidArgument

logger = logging.getLogger(__name__)

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

# Below this window width a slice renders as uniform mid-gray
_DEGENERATE_WINDOW = 1e-9


def make_safe_filename(name: Optional[str], fallback: str = "file") -> str:
    """Replace characters that are invalid in file names with '_'."""
    if name is None or not name.strip():
        return fallback
    cleaned = _INVALID_FILENAME_CHARS.sub("_", name).strip()
    return cleaned or fallback


def get_run_id(settings: WorldGenSettings, now: Optional[datetime] = None) -> str:
    if settings.run_id_mode == RunIdMode.SEED_ONLY:
        return f"seed{settings.seed}"
    now = now or datetime.now()
    return f"{now:%Y%m%d_%H%M%S}_seed{settings.seed}"


def resolve_run_output_path(
    settings: WorldGenSettings,
    base_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> Path:
    """
    Output folder for one run: <base_dir>/<output_root>/<run_id>.

    Args:
        settings: Run settings (output_root, run_id_mode, seed)
        base_dir: Parent directory (defaults to the working directory)
        now: Timestamp for TIMESTAMP run ids

    Returns:
        Path (not created)
    """
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
    root_name = make_safe_filename((settings.output_root or "").strip(), "WorldGenOutput")
    return base_dir / root_name / make_safe_filename(get_run_id(settings, now), "run")


def normalize_slice(
    values: np.ndarray,
    width: int,
    height: int,
    vmin: float,
    vmax: float,
) -> np.ndarray:
    """
    Map a flat width*height buffer to an 8-bit (height, width) image.

    Row y of the buffer lands on image row height-1-y, so +y points up.
    """
    if width <= 0 or height <= 0:
        raise InvalidArgument(f"Slice size must be positive (got {width}x{height})")
    values = np.asarray(values)
    if values.size != width * height:
        raise InvalidArgument(
            "values must hold width*height samples",
            {"expected": width * height, "got": values.size},
        )

    grid = values.reshape(height, width).astype(np.float64)
    denom = vmax - vmin
    if not np.isfinite(denom) or abs(denom) < _DEGENERATE_WINDOW:
        t = np.full_like(grid, 0.5)
    else:
        t = np.clip((grid - vmin) / denom, 0.0, 1.0)

    return np.round(t[::-1] * 255.0).astype(np.uint8)


def export_grayscale_slice(
    path: Path,
    values: np.ndarray,
    width: int,
    height: int,
    vmin: float,
    vmax: float,
) -> Path:
    """Write a float slice as a grayscale PNG using the [vmin, vmax] window."""
    pixels = normalize_slice(values, width, height, vmin, vmax)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(pixels).save(path)
    return path


def export_density_slices(ctx: GenerationContext, prefix: str = "") -> List[str]:
    """
    Export the configured XZ / XY / YZ slices of the context field.

    Out-of-range slice indices are logged and skipped. Files are named
    like density_xz_y032.png and recorded on ctx.slice_files.

    Returns:
        File names written (relative to ctx.output_path)
    """
    if ctx.field is None:
        raise ValueError("Context has no density field to slice")
    if ctx.output_path is None:
        raise ValueError("Context has no output path")

    stats = ctx.ensure_stats()
    vmin, vmax = stats.display_min, stats.display_max
    f = ctx.field
    s = ctx.settings
    prefix = prefix or ""
    exported = []

    planes = (
        ("xz", "y", s.debug_slice_ys, f.size_y, f.size_x, f.size_z, f.slice_xz),
        ("xy", "z", s.debug_slice_zs, f.size_z, f.size_x, f.size_y, f.slice_xy),
        ("yz", "x", s.debug_slice_xs, f.size_x, f.size_y, f.size_z, f.slice_yz),
    )
    for plane, axis, indices, axis_size, width, height, extract in planes:
        buffer = np.empty(width * height, dtype=np.float32)
        for i in indices or []:
            if not 0 <= i < axis_size:
                ctx.run_log.warn(f"Skipping {plane.upper()} slice: {axis}={i} out of range [0..{axis_size - 1}]")
                continue
            extract(i, buffer)
            name = f"{prefix}density_{plane}_{axis}{i:03d}.png"
            export_grayscale_slice(ctx.output_path / name, buffer, width, height, vmin, vmax)
            exported.append(name)
            ctx.slice_files.append(name)

    ctx.run_log.info(f"Exported {len(exported)} density slice PNG(s) using display range [{vmin:.3f}..{vmax:.3f}]")
    return exported


def build_report_text(ctx: GenerationContext, state: str, now: Optional[datetime] = None) -> str:
    """Human-readable run summary (report.txt)."""
    now = now or datetime.now()
    lines = [
        "WorldGen Report",
        f"Timestamp: {now:%Y-%m-%d %H:%M:%S}",
        f"State: {state}",
        f"OutputPath: {ctx.output_path}",
        f"Settings: {ctx.settings.get_settings_summary()}",
        "",
        "Density:",
        f"  gridSize: {tuple(ctx.settings.grid_size)}",
    ]

    if ctx.field is None:
        lines.append("  (no density field)")
    else:
        ds = ctx.ensure_stats()
        lines.append(f"  count: {ds.count}")
        lines.append(f"  min/max: {ds.min:.3f} / {ds.max:.3f}")
        lines.append(f"  mean/std: {ds.mean:.3f} / {ds.std:.3f}")
        lines.append(
            f"  p01/p10/p50/p90/p99: {ds.p01:.3f} / {ds.p10:.3f} / {ds.p50:.3f} / {ds.p90:.3f} / {ds.p99:.3f}"
        )
        lines.append(f"  displayMin/displayMax: {ds.display_min:.3f} / {ds.display_max:.3f}")
        if ctx.slice_files:
            lines.append("  exportedSlices:")
            lines.extend(f"    - {name}" for name in ctx.slice_files)
        else:
            lines.append("  exportedSlices: (none)")

    lines.append("")
    lines.append("Steps:")
    if not ctx.step_reports:
        lines.append("  (none)")
    for r in ctx.step_reports:
        suffix = f" ({r.notes})" if r.notes and r.notes.strip() else ""
        lines.append(f"  - {r.name}: {r.elapsed_ms:.2f} ms [{r.status}]{suffix}")
        for key, value in (r.counters or {}).items():
            lines.append(f"      * {key}: {value}")

    lines.append("")
    lines.append("Run Log:")
    lines.append(ctx.run_log.text())
    return "\n".join(lines) + "\n"


def build_run_metadata(ctx: GenerationContext, state: str) -> Dict[str, Any]:
    """Machine-readable run summary (run.json)."""
    bb = ctx.blackboard
    return {
        "seed": ctx.seed,
        "state": state,
        "grid_size": list(ctx.settings.grid_size),
        "voxel_size": ctx.settings.voxel_size,
        "world_size": list(ctx.settings.world_size),
        "output_path": str(ctx.output_path) if ctx.output_path is not None else None,
        "output_root": ctx.settings.output_root,
        "run_id_mode": ctx.settings.run_id_mode.value,
        "steps": [name if name is not None else "<null>" for name in ctx.settings.steps],
        "step_reports": [r.to_dict() for r in ctx.step_reports],
        "stats": ctx.stats.to_dict() if ctx.has_stats and ctx.stats is not None else None,
        "slice_files": list(ctx.slice_files),
        "carve_plan": bb.carve_plan.to_dict() if bb.carve_plan is not None else None,
        "compose_plan": bb.compose_plan.to_dict() if bb.compose_plan is not None else None,
        "solid_components": bb.solid_components,
        "surface_mesh_file": bb.surface_mesh_file,
    }


def write_outputs(ctx: GenerationContext, state: str) -> List[Path]:
    """Write report.txt and run.json into ctx.output_path."""
    if ctx.output_path is None:
        raise ValueError("Context has no output path")
    ctx.output_path.mkdir(parents=True, exist_ok=True)

    report_path = ctx.output_path / "report.txt"
    report_path.write_text(build_report_text(ctx, state), encoding="utf-8")

    run_json_path = ctx.output_path / "run.json"
    with open(run_json_path, 'w') as f:
        json.dump(build_run_metadata(ctx, state), f, indent=2)

    logger.info(f"Wrote {report_path.name} and {run_json_path.name} to {ctx.output_path}")
    return [report_path, run_json_path]
