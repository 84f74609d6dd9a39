"""
Run orchestration.

`run(settings)` owns one GenerationContext for its whole lifetime and
walks it through Idle -> Preparing -> Running -> Finalizing -> Completed
or Failed. Steps are looked up by name in the step registry and run
strictly in the configured order. The first failing step stops the run.
Report files are still written afterwards, and an error while writing
them never replaces the step's error.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .common.config import WorldGenSettings
from .common.context import GenerationContext, StepReport, StepResult
from .common.errors import InvalidConfiguration, StepFailure
from .common.io import export_density_slices, resolve_run_output_path, write_outputs
from .common.mesh_ops import count_solid_components, export_surface_mesh
from .common.stats import FieldStats
from .common.voxel import ScalarField3D
from .steps import STEP_REGISTRY, StepFn

logger = logging.getLogger(__name__)

NULL_STEP_NAME = "<null step>"


class RunState(Enum):
    IDLE = "Idle"
    PREPARING = "Preparing"
    RUNNING = "Running"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass
class StepOutcome:
    """Result of invoking one step: either a StepResult or the exception it raised."""
    name: str
    index: int
    elapsed_ms: float
    result: Optional[StepResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StepPipeline:
    """
    Ordered list of step names resolved against a registry.

    A None entry is an empty slot: it is reported as skipped, not run.

    Raises:
        InvalidConfiguration: A step name is not in the registry
    """

    def __init__(self, steps: List[Optional[str]], registry: Optional[Dict[str, StepFn]] = None):
        self.registry = dict(STEP_REGISTRY if registry is None else registry)
        self.steps = list(steps)

        unknown = [name for name in self.steps if name is not None and name not in self.registry]
        if unknown:
            raise InvalidConfiguration(
                f"Unknown step(s): {', '.join(unknown)}",
                {"known": ", ".join(sorted(self.registry))},
            )
        self._fns = {name: self.registry[name] for name in self.steps if name is not None}

    @property
    def names(self) -> List[str]:
        return [NULL_STEP_NAME if name is None else name for name in self.steps]

    def _invoke(self, index: int, name: str, settings: WorldGenSettings, ctx: GenerationContext) -> StepOutcome:
        fn = self._fns[name]
        start = time.perf_counter()
        try:
            result = fn(settings, ctx)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000.0
            return StepOutcome(name, index, elapsed, error=e)
        elapsed = (time.perf_counter() - start) * 1000.0
        return StepOutcome(name, index, elapsed, result=result if result is not None else StepResult())

    def execute(self, ctx: GenerationContext) -> Optional[StepOutcome]:
        """
        Run every slot against ctx, appending one StepReport per slot.

        Returns:
            The failing StepOutcome, or None if every step succeeded
        """
        log = ctx.run_log
        total = len(self.steps)
        if total == 0:
            log.warn("No steps assigned")
            return None

        for i, name in enumerate(self.steps):
            label = f"Step {i + 1}/{total}"
            if name is None:
                log.warn(f"{label}: {NULL_STEP_NAME} skipped")
                ctx.step_reports.append(
                    StepReport(NULL_STEP_NAME, 0.0, status="skipped", notes="Skipped (null reference)")
                )
                continue

            log.info(f"{label}: {name} (starting)")
            outcome = self._invoke(i, name, ctx.settings, ctx)

            if not outcome.ok:
                err = outcome.error
                ctx.step_reports.append(
                    StepReport(name, outcome.elapsed_ms, status="failed", notes=f"Exception: {type(err).__name__}")
                )
                log.error(f"{label}: {name} FAILED after {outcome.elapsed_ms:.2f} ms: {type(err).__name__}: {err}")
                logger.debug("Step traceback", exc_info=err)
                remaining = self.names[i + 1:]
                if remaining:
                    log.warn(f"Aborting: {len(remaining)} remaining step(s) not run")
                for rest in remaining:
                    ctx.step_reports.append(
                        StepReport(rest, 0.0, status="skipped", notes="Not run (earlier step failed)")
                    )
                return outcome

            result = outcome.result
            ctx.step_reports.append(StepReport(
                name,
                outcome.elapsed_ms,
                status="skipped" if result.skipped else "ok",
                notes=result.notes,
                counters=dict(result.counters) if result.counters else None,
            ))
            log.info(f"{label}: {name} (done) in {outcome.elapsed_ms:.2f} ms")

        return None


@dataclass
class RunResult:
    """Everything a finished run leaves behind."""
    state: RunState
    context: GenerationContext
    error: Optional[StepFailure] = None
    output_files: List[Path] = field(default_factory=list)
    transitions: List[RunState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def field(self) -> Optional[ScalarField3D]:
        return self.context.field

    @property
    def stats(self) -> Optional[FieldStats]:
        return self.context.ensure_stats()

    @property
    def step_reports(self) -> List[StepReport]:
        return self.context.step_reports

    @property
    def output_path(self) -> Optional[Path]:
        return self.context.output_path

    def raise_for_status(self) -> None:
        """Re-raise the step failure of a failed run."""
        if self.error is not None:
            raise self.error


def _enter(transitions: List[RunState], state: RunState) -> None:
    logger.debug(f"Run state: {transitions[-1].value} -> {state.value}")
    transitions.append(state)


def _finalize(ctx: GenerationContext, state: RunState, write_files: bool) -> List[Path]:
    """
    Derive what the context allows and write it out.

    After a failure every part is attempted on its own, so a broken
    export never keeps report.txt and run.json from being written.
    """
    s = ctx.settings
    written: List[Path] = []
    best_effort = state == RunState.FAILED

    def attempt(label, fn):
        if not best_effort:
            return fn()
        try:
            return fn()
        except Exception as e:
            logger.debug(f"Ignoring error while {label}: {type(e).__name__}: {e}")
            return None

    def components():
        ctx.blackboard.solid_components = count_solid_components(ctx.field)
        ctx.run_log.info(f"Solid components: {ctx.blackboard.solid_components}")

    if ctx.field is not None:
        attempt("counting solid components", components)

    if not write_files:
        return written

    if ctx.field is not None:
        if s.export_density_slices:
            attempt("exporting density slices", lambda: export_density_slices(ctx))
        if s.export_surface_mesh and attempt("exporting surface mesh", lambda: export_surface_mesh(ctx)) is not None:
            written.append(ctx.output_path / ctx.blackboard.surface_mesh_file)

    written.extend(attempt("writing reports", lambda: write_outputs(ctx, state.value)) or [])
    return written


def run(
    settings: WorldGenSettings,
    base_dir: Optional[Path] = None,
    write_files: bool = True,
    registry: Optional[Dict[str, StepFn]] = None,
    now: Optional[datetime] = None,
) -> RunResult:
    """
    Generate one density field.

    Args:
        settings: Run configuration (never modified)
        base_dir: Directory the output root is created in (default: cwd)
        write_files: Write slices and report files to disk
        registry: Step table to resolve names against (default: STEP_REGISTRY)
        now: Timestamp used for the run id

    Returns:
        RunResult with state COMPLETED or FAILED

    Raises:
        InvalidConfiguration: Settings are invalid; no step is run
    """
    transitions = [RunState.IDLE]
    _enter(transitions, RunState.PREPARING)
    pipeline = StepPipeline(settings.steps, registry)
    settings.validate(known_steps=list(pipeline.registry))
    output_path = resolve_run_output_path(settings, base_dir, now) if write_files else None
    ctx = GenerationContext(settings, output_path=output_path)

    logger.info("=" * 60)
    ctx.run_log.info(f"WorldGen start: {settings.get_settings_summary()}")
    if output_path is not None:
        ctx.run_log.info(f"Output: {output_path}")
    logger.info("=" * 60)

    _enter(transitions, RunState.RUNNING)
    failed = pipeline.execute(ctx)

    _enter(transitions, RunState.FINALIZING)
    if failed is None:
        result = RunResult(RunState.COMPLETED, ctx, transitions=transitions)
        result.output_files = _finalize(ctx, RunState.COMPLETED, write_files)
        ctx.run_log.info(f"WorldGen complete: {len(ctx.step_reports)} step report(s)")
    else:
        error = StepFailure(failed.name, failed.index, failed.error)
        result = RunResult(RunState.FAILED, ctx, error=error, transitions=transitions)
        result.output_files = _finalize(ctx, RunState.FAILED, write_files)
    _enter(transitions, result.state)

    logger.info(f"\n{'=' * 60}")
    logger.info(f"{result.state.value.upper()}: seed={ctx.seed}, steps={len(ctx.step_reports)}")
    logger.info("=" * 60)
    return result
