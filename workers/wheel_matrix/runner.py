"""
Runner — top-level orchestration: definition → jobs → bundle + summary.

Public entry point: ``run_matrix()``.  Expansion and definition errors
abort before any job runs; everything after that is isolated per job.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from wheel_matrix.core.aggregator import Aggregator
from wheel_matrix.core.axes import MatrixCell
from wheel_matrix.core.errors import MatrixError
from wheel_matrix.core.executor import CellExecutor, CommandRunner, ExecutionContext
from wheel_matrix.core.expander import expand
from wheel_matrix.core.jobs import BuildJob, JobPlanner, cell_view
from wheel_matrix.io.loader import definition_matrix, load_definition
from wheel_matrix.io.schema import (
    ArtifactBundle,
    BuildResult,
    MatrixDefinition,
    RunSummary,
    now_iso,
)
from wheel_matrix.io.writer import stage_bundle, write_outputs
from wheel_matrix.policy.profile import Profile
from wheel_matrix.policy.verdict import FailureReason, JobStatus, RunStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class RunReport:
    summary: RunSummary
    bundle: ArtifactBundle
    results: List[BuildResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.summary.status == RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


def expand_definition(definition: MatrixDefinition) -> List[MatrixCell]:
    axes, includes, excludes = definition_matrix(definition)
    return expand(axes, includes, excludes)


def _execute_isolated(
    executor: CellExecutor,
    job: BuildJob,
    workspace_root: Path,
    base_env: Optional[Mapping[str, str]],
    runner: Optional[CommandRunner],
    artifact_patterns: Optional[List[str]],
) -> BuildResult:
    ctx = ExecutionContext.isolated(workspace_root, job, base_env=base_env, runner=runner)
    return executor.execute(job, ctx, artifact_patterns=artifact_patterns)


def _crashed(job: BuildJob, exc: BaseException) -> BuildResult:
    return BuildResult(
        job_id=job.job_id,
        display_name=job.display_name,
        cell=cell_view(job.cell),
        status=JobStatus.FAILED,
        failure_reason=FailureReason.EXECUTOR_ERROR,
        failure_detail=f"{type(exc).__name__}: {exc}",
    )


def run_matrix(
    definition: MatrixDefinition,
    profile: Optional[Profile] = None,
    workspace_root: Path = Path("/tmp/wheel_matrix"),
    output_dir: Optional[Path] = None,
    runner: Optional[CommandRunner] = None,
    base_env: Optional[Mapping[str, str]] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    run_id: Optional[str] = None,
) -> RunReport:
    """
    Expand, plan, execute and aggregate one matrix run.

    Parameters
    ----------
    definition:
        The validated matrix definition.
    profile:
        Build policy.  Defaults to ``Profile.v1()``.
    workspace_root:
        Parent of the per-job sandboxes (one sub-directory per cell).
    output_dir:
        Where summary, bundle and staged artifacts are written.  If None,
        nothing is written (useful for API responses and tests).
    runner:
        Command runner for every job.  Defaults to ``SubprocessRunner``.
    base_env:
        Base environment for each job.  Defaults to a copy of ``os.environ``.
    max_workers:
        Jobs executing concurrently.

    Raises
    ------
    MatrixError
        Definition, condition or expansion errors (AmbiguousCellError).
    """
    if profile is None:
        profile = Profile.v1()
    run_id = run_id or uuid.uuid4().hex[:12]
    started_at = now_iso()

    # ── Step 1: expand + plan (fatal errors surface here) ────────────
    cells = expand_definition(definition)
    planner = JobPlanner(definition, profile)
    plan = planner.plan(cells)

    aggregator = Aggregator(run_id, definition.name, profile.profile_id)
    results: List[BuildResult] = list(plan.results)
    aggregator.add_all(plan.results)

    # ── Step 2: execute jobs, aggregate as each completes ────────────
    executor = CellExecutor(profile)
    workspace_root = Path(workspace_root) / run_id
    if plan.jobs:
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {
                pool.submit(
                    _execute_isolated,
                    executor,
                    job,
                    workspace_root,
                    base_env,
                    runner,
                    definition.artifact_patterns,
                ): job
                for job in plan.jobs
            }
            for future in as_completed(futures):
                job = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Job {job.job_id} crashed: {e}", exc_info=True)
                    result = _crashed(job, e)
                aggregator.add(result)
                results.append(result)

    # ── Step 3: summary + outputs ────────────────────────────────────
    bundle = aggregator.bundle()
    summary = aggregator.summary(started_at=started_at, finished_at=now_iso())
    results.sort(key=lambda r: r.job_id)

    if output_dir is not None:
        output_dir = Path(output_dir)
        write_outputs(summary, bundle, results, output_dir)
        stage_bundle(bundle, output_dir)

    logger.info(
        f"Run {run_id} finished: {summary.status.value} "
        f"(succeeded={summary.counts.succeeded}, failed={summary.counts.failed}, "
        f"skipped={summary.counts.skipped}, artifacts={summary.counts.artifacts}, "
        f"conflicts={len(summary.conflicts)})"
    )
    return RunReport(summary=summary, bundle=bundle, results=results)


# ── CLI ──────────────────────────────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for wheel_matrix."""
    parser = argparse.ArgumentParser(
        description="wheel_matrix — build-matrix orchestrator for multi-platform wheels",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_expand = sub.add_parser("expand", help="Print the expanded matrix as JSON")
    p_expand.add_argument("definition", type=Path, help="Matrix definition (YAML or JSON)")

    p_run = sub.add_parser("run", help="Execute the matrix")
    p_run.add_argument("definition", type=Path, help="Matrix definition (YAML or JSON)")
    p_run.add_argument(
        "-o", "--output-dir",
        type=Path,
        default=Path("wheelhouse"),
        help="Directory for the summary, bundle and staged artifacts",
    )
    p_run.add_argument(
        "-w", "--workspace",
        type=Path,
        default=Path("/tmp/wheel_matrix"),
        help="Root for per-job sandboxes",
    )
    p_run.add_argument(
        "-j", "--jobs",
        type=int,
        default=DEFAULT_MAX_WORKERS,
        help="Jobs to run concurrently",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        definition = load_definition(args.definition)
        if args.command == "expand":
            cells = expand_definition(definition)
            print(json.dumps(
                [cell_view(c).model_dump(mode="json") for c in cells],
                indent=2,
            ))
            return 0

        report = run_matrix(
            definition,
            workspace_root=args.workspace,
            output_dir=args.output_dir,
            max_workers=args.jobs,
        )
    except MatrixError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2

    s = report.summary
    print(f"Run {s.run_id}: {s.status.value}")
    print(f"Jobs: {s.counts.total} "
          f"(succeeded={s.counts.succeeded}, "
          f"failed={s.counts.failed}, "
          f"skipped={s.counts.skipped})")
    print(f"Artifacts: {s.counts.artifacts}")
    for job_id, job in s.jobs.items():
        if job.failure_reason is not None:
            print(f"  FAILED {job_id}: {job.failure_reason.value} — {job.failure_detail}")
    for conflict in s.conflicts:
        print(f"  CONFLICT {conflict.artifact_name}: "
              f"{', '.join(c.source_job_id for c in conflict.claims)}")
    print(f"Outputs written to: {args.output_dir}")
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
