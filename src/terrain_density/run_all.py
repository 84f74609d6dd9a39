#!/usr/bin/env python3
"""
Terrain Density - Command line entry point

Build one density field and write its slices and reports.

Usage:
    terrain-density --seed 42 --grid 96 48 96
    terrain-density --config settings.json --steps BuildBaseField CarvePrimitives --seed-only
    python -m terrain_density.run_all --save-config settings.json
"""

import argparse
import logging
import sys
from pathlib import Path

from .common.config import WorldGenSettings, RunIdMode
from .common.errors import InvalidConfiguration
from .pipeline import run
from .steps import step_names

logger = logging.getLogger(__name__)

NULL_STEP_ARG = "none"


def build_settings(args: argparse.Namespace) -> WorldGenSettings:
    """Settings from --config (or defaults) with command line overrides applied."""
    settings = WorldGenSettings.from_json(args.config) if args.config else WorldGenSettings()

    if args.seed is not None:
        settings.seed = args.seed
    if args.grid is not None:
        settings.grid_size = tuple(args.grid)
    if args.voxel_size is not None:
        settings.voxel_size = args.voxel_size
    if args.workers is not None:
        settings.workers = args.workers
    if args.steps is not None:
        settings.steps = [None if s.lower() == NULL_STEP_ARG else s for s in args.steps]
    if args.output_root is not None:
        settings.output_root = args.output_root
    if args.seed_only:
        settings.run_id_mode = RunIdMode.SEED_ONLY
    if args.no_slices:
        settings.export_density_slices = False
    if args.before_after:
        settings.export_before_after_slices = True
    if args.top_down:
        settings.export_top_down_maps = True
    if args.mesh:
        settings.export_surface_mesh = True
    if args.quiet_run_log:
        settings.log_to_console = False
    return settings


def main():
    parser = argparse.ArgumentParser(
        description="Terrain Density - Generate a procedural 3D density field"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Settings JSON file (see --save-config)"
    )
    parser.add_argument(
        "--seed", "-s",
        type=int,
        default=None,
        help="Random seed"
    )
    parser.add_argument(
        "--grid", "-g",
        type=int,
        nargs=3,
        metavar=("X", "Y", "Z"),
        help="Grid size in cells"
    )
    parser.add_argument(
        "--voxel-size",
        type=float,
        default=None,
        help="World units per cell"
    )
    parser.add_argument(
        "--steps",
        nargs="+",
        default=None,
        help=f"Ordered step names ({', '.join(step_names())}); '{NULL_STEP_ARG}' for an empty slot"
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=None,
        help="Threads for the per-cell passes"
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=Path("."),
        help="Directory the output root is created in"
    )
    parser.add_argument(
        "--output-root",
        default=None,
        help="Output root folder name (default: WorldGenOutput)"
    )
    parser.add_argument(
        "--seed-only",
        action="store_true",
        help="Name the run folder seed<N> instead of using a timestamp"
    )
    parser.add_argument("--no-slices", action="store_true", help="Skip density slice PNGs")
    parser.add_argument("--before-after", action="store_true", help="Export slices before/after carve and compose")
    parser.add_argument("--top-down", action="store_true", help="Export surface height and occupancy maps")
    parser.add_argument("--mesh", action="store_true", help="Export the zero isosurface as surface.ply")
    parser.add_argument("--quiet-run-log", action="store_true", help="Keep run log lines out of the console")
    parser.add_argument(
        "--save-config",
        type=Path,
        default=None,
        help="Write the effective settings to this JSON file and exit"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging"
    )

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        settings = build_settings(args)
        if args.save_config:
            settings.save(args.save_config)
            logger.info(f"Settings saved to: {args.save_config}")
            return
        result = run(settings, base_dir=args.output)
    except InvalidConfiguration as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    for report in result.step_reports:
        logger.info(f"  {report.name}: {report.elapsed_ms:.2f} ms [{report.status}]")
    if result.output_path is not None:
        logger.info(f"Outputs: {result.output_path}")

    if not result.ok:
        logger.error(f"Run failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
