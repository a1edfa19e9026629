"""
Executor — run one BuildJob inside its own execution context.

Per job:
  setup → toolchain → build      (planned command steps, in order)
  enumerate → validate → stage   (built-in steps)

Fail-fast within a job: the first failing step fails the job and every
later step is recorded NOT_REACHED.  Steps the planner gated off are
recorded SKIPPED_BY_CONDITION and never affect the job status.

Each job has its own workspace (output/, logs/, staging/) and its own
environment map, computed once and never mutated by later steps.
"""
from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import string
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from wheel_matrix.core.errors import StepFailure
from wheel_matrix.core.jobs import BuildJob, PlannedStep, cell_view, render_template
from wheel_matrix.core.validation import validate_artifact
from wheel_matrix.io.schema import (
    ArtifactRecord,
    BuildResult,
    StepRecord,
    ValidationFailure,
    hash_file,
)
from wheel_matrix.policy.profile import Profile
from wheel_matrix.policy.verdict import (
    ALLOWED_TRANSITIONS,
    FailureReason,
    JobState,
    JobStatus,
    StepPhase,
    StepStatus,
    judge_artifacts,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Command execution boundary
# =============================================================================

@dataclass(frozen=True)
class CommandResult:
    """Structured outcome of one external command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CommandRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        cwd: Path,
        env: Mapping[str, str],
        timeout: float,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs commands on the local host with ``subprocess.run``."""

    def run(
        self,
        argv: Sequence[str],
        cwd: Path,
        env: Mapping[str, str],
        timeout: float,
    ) -> CommandResult:
        t0 = time.monotonic()
        try:
            result = subprocess.run(
                list(argv),
                cwd=str(cwd),
                env=dict(env),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            return CommandResult(
                exit_code=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
        except subprocess.TimeoutExpired as e:
            stdout = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            return CommandResult(
                exit_code=-1,
                stdout=stdout,
                stderr=f"TIMEOUT after {timeout:.1f}s",
                duration_ms=int((time.monotonic() - t0) * 1000),
                timed_out=True,
            )
        except OSError as e:
            return CommandResult(
                exit_code=127,
                stderr=str(e),
                duration_ms=int((time.monotonic() - t0) * 1000),
            )


# =============================================================================
# Execution context
# =============================================================================

@dataclass
class ExecutionContext:
    """
    Isolated sandbox for one job: a private directory tree, a private base
    environment and the command runner to use.
    """

    root: Path
    base_env: Mapping[str, str] = field(default_factory=dict)
    runner: CommandRunner = field(default_factory=SubprocessRunner)
    path_separator: str = os.pathsep

    @classmethod
    def isolated(
        cls,
        workspace_root: Path,
        job: BuildJob,
        base_env: Optional[Mapping[str, str]] = None,
        runner: Optional[CommandRunner] = None,
    ) -> "ExecutionContext":
        """Create a fresh workspace for ``job`` under ``workspace_root``."""
        root = Path(workspace_root) / job.cell.slug
        if root.exists():
            shutil.rmtree(root)
        ctx = cls(
            root=root,
            base_env=dict(os.environ if base_env is None else base_env),
            runner=runner or SubprocessRunner(),
        )
        ctx.ensure_dirs()
        return ctx

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def staging_dir(self) -> Path:
        return self.root / "staging"

    def ensure_dirs(self):
        for d in (self.output_dir, self.logs_dir, self.staging_dir):
            d.mkdir(parents=True, exist_ok=True)

    def placeholders(self) -> Dict[str, str]:
        return {
            "output_dir": str(self.output_dir),
            "staging_dir": str(self.staging_dir),
            "workspace": str(self.root),
        }


# =============================================================================
# Job lifecycle
# =============================================================================

class JobLifecycle:
    """Pending → Running → {Succeeded | Failed}; anything else raises."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.state = JobState.PENDING
        self.history: List[JobState] = [JobState.PENDING]

    def transition(self, new_state: JobState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"job {self.job_id}: illegal transition {self.state.value} → {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


# =============================================================================
# CellExecutor
# =============================================================================

BUILTIN_STEPS: Tuple[Tuple[str, StepPhase], ...] = (
    ("enumerate artifacts", StepPhase.ENUMERATE),
    ("validate artifacts", StepPhase.VALIDATE),
    ("stage artifacts", StepPhase.STAGE),
)


def build_job_env(
    job: BuildJob,
    base_env: Mapping[str, str],
    path_separator: str,
    placeholders: Mapping[str, str],
) -> Mapping[str, str]:
    """
    Compute the job's environment once: base environment, toolchain
    install directories prepended to PATH, and job identity variables.
    """
    env: Dict[str, str] = dict(base_env)
    if job.toolchain is not None and job.toolchain.path_entries:
        expanded = [
            string.Template(p).safe_substitute(env) for p in job.toolchain.path_entries
        ]
        current = env.get("PATH", "")
        env["PATH"] = path_separator.join(expanded + ([current] if current else []))
    env["WHEEL_MATRIX_JOB_ID"] = job.job_id
    env["WHEEL_MATRIX_OUTPUT_DIR"] = placeholders["output_dir"]
    return MappingProxyType(env)


class CellExecutor:
    """Executes a BuildJob and produces exactly one BuildResult."""

    def __init__(self, profile: Profile, clock: Callable[[], float] = time.monotonic):
        self.profile = profile
        self.clock = clock

    # -----------------------------------------------------------------
    # Command steps
    # -----------------------------------------------------------------

    def _write_logs(
        self,
        ctx: ExecutionContext,
        index: int,
        step: PlannedStep,
        result: CommandResult,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Only write log files if they have content."""
        stem = f"{index:02d}-{step.phase.value}"
        stdout_rel = None
        stderr_rel = None
        if result.stdout:
            p = ctx.logs_dir / f"{stem}.stdout"
            p.write_text(result.stdout)
            stdout_rel = p.relative_to(ctx.root).as_posix()
        if result.stderr:
            p = ctx.logs_dir / f"{stem}.stderr"
            p.write_text(result.stderr)
            stderr_rel = p.relative_to(ctx.root).as_posix()
        return stdout_rel, stderr_rel

    def _run_step(
        self,
        ctx: ExecutionContext,
        job_env: Mapping[str, str],
        index: int,
        step: PlannedStep,
        remaining: float,
    ) -> Tuple[StepRecord, Optional[StepFailure]]:
        placeholders = ctx.placeholders()
        argv = [render_template(a, placeholders, strict=False) for a in step.command.argv]
        env = dict(job_env)
        for key, value in step.command.env.items():
            env[key] = render_template(value, placeholders, strict=False)

        result = ctx.runner.run(argv, cwd=ctx.root, env=env, timeout=remaining)
        stdout_rel, stderr_rel = self._write_logs(ctx, index, step, result)

        if result.timed_out:
            status = StepStatus.TIMEOUT
        elif result.exit_code == 0:
            status = StepStatus.SUCCEEDED
        else:
            status = StepStatus.FAILED

        record = StepRecord(
            name=step.name,
            phase=step.phase,
            status=status,
            command=" ".join(argv),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            stdout_path=stdout_rel,
            stderr_path=stderr_rel,
        )
        if result.ok:
            return record, None

        tail = result.stderr[-self.profile.stderr_tail_chars:].strip()
        return record, StepFailure(step.name, result.exit_code, tail, result.timed_out)

    # -----------------------------------------------------------------
    # Built-in steps
    # -----------------------------------------------------------------

    def _enumerate(self, ctx: ExecutionContext, patterns: Sequence[str]) -> List[Path]:
        # Top level only: staging is flat, so names must be unique.
        found = []
        for path in sorted(ctx.output_dir.iterdir()):
            if path.is_file() and any(fnmatch.fnmatch(path.name, p) for p in patterns):
                found.append(path)
        return found

    def _validate(
        self,
        job: BuildJob,
        files: List[Path],
    ) -> Tuple[List[Tuple[Path, str, int]], List[ValidationFailure]]:
        accepted = []
        failures: List[ValidationFailure] = []
        for path in files:
            reasons = validate_artifact(path, job.cell, self.profile)
            if reasons:
                logger.warning(
                    f"Job {job.job_id}: {path.name} failed validation "
                    f"({', '.join(r.value for r in reasons)})"
                )
                failures.append(ValidationFailure(name=path.name, path=str(path), reasons=reasons))
                continue
            accepted.append((path, hash_file(path), path.stat().st_size))
        return accepted, failures

    def _stage(
        self,
        ctx: ExecutionContext,
        accepted: List[Tuple[Path, str, int]],
    ) -> List[ArtifactRecord]:
        records = []
        for path, sha256, size in accepted:
            dest = ctx.staging_dir / path.name
            shutil.copy2(path, dest)
            records.append(ArtifactRecord(
                name=path.name,
                sha256=sha256,
                path=str(dest),
                size_bytes=size,
            ))
        return records

    # -----------------------------------------------------------------
    # Execute
    # -----------------------------------------------------------------

    def execute(
        self,
        job: BuildJob,
        ctx: ExecutionContext,
        artifact_patterns: Optional[Sequence[str]] = None,
    ) -> BuildResult:
        patterns = tuple(artifact_patterns or self.profile.artifact_patterns)
        lifecycle = JobLifecycle(job.job_id)
        ctx.ensure_dirs()

        lifecycle.transition(JobState.RUNNING)
        logger.info(f"Job {job.job_id} running: {job.display_name}")
        started = self.clock()
        deadline = started + job.timeout_seconds
        job_env = build_job_env(job, ctx.base_env, ctx.path_separator, ctx.placeholders())

        records: List[StepRecord] = []
        failure: Optional[StepFailure] = None

        for index, step in enumerate(job.steps):
            if failure is not None:
                records.append(StepRecord(
                    name=step.name, phase=step.phase, status=StepStatus.NOT_REACHED,
                    command=step.command.display(),
                ))
                continue
            if not step.run:
                records.append(StepRecord(
                    name=step.name, phase=step.phase, status=StepStatus.SKIPPED_BY_CONDITION,
                    command=step.command.display(),
                ))
                continue

            remaining = deadline - self.clock()
            if remaining <= 0:
                failure = StepFailure(step.name, -1, "job timeout exhausted", timed_out=True)
                records.append(StepRecord(
                    name=step.name, phase=step.phase, status=StepStatus.TIMEOUT,
                    command=step.command.display(),
                ))
                continue

            record, failure = self._run_step(ctx, job_env, index, step, remaining)
            records.append(record)
            if failure is not None:
                logger.warning(f"Job {job.job_id}: {failure}")

        artifacts: List[ArtifactRecord] = []
        validation_failures: List[ValidationFailure] = []
        reason: Optional[FailureReason] = None
        detail: Optional[str] = None

        if failure is not None:
            for name, phase in BUILTIN_STEPS:
                records.append(StepRecord(name=name, phase=phase, status=StepStatus.NOT_REACHED))
            reason = FailureReason.TIMEOUT if failure.timed_out else FailureReason.STEP_FAILED
            detail = str(failure)
        else:
            files = self._enumerate(ctx, patterns)
            records.append(StepRecord(
                name=BUILTIN_STEPS[0][0], phase=StepPhase.ENUMERATE, status=StepStatus.SUCCEEDED,
            ))

            accepted, validation_failures = self._validate(job, files)
            status, reason = judge_artifacts(len(files), len(accepted))
            records.append(StepRecord(
                name=BUILTIN_STEPS[1][0],
                phase=StepPhase.VALIDATE,
                status=StepStatus.SUCCEEDED if status == JobStatus.SUCCEEDED else StepStatus.FAILED,
            ))

            if reason is not None:
                records.append(StepRecord(
                    name=BUILTIN_STEPS[2][0], phase=StepPhase.STAGE, status=StepStatus.NOT_REACHED,
                ))
                if reason == FailureReason.NO_ARTIFACTS:
                    detail = f"no files matching {list(patterns)} in {ctx.output_dir}"
                else:
                    detail = f"all {len(files)} produced files failed validation"
            else:
                try:
                    artifacts = self._stage(ctx, accepted)
                    records.append(StepRecord(
                        name=BUILTIN_STEPS[2][0], phase=StepPhase.STAGE, status=StepStatus.SUCCEEDED,
                    ))
                except OSError as e:
                    records.append(StepRecord(
                        name=BUILTIN_STEPS[2][0], phase=StepPhase.STAGE, status=StepStatus.FAILED,
                    ))
                    reason = FailureReason.STAGING_FAILED
                    detail = str(e)

        final = JobState.FAILED if reason is not None else JobState.SUCCEEDED
        lifecycle.transition(final)
        duration_ms = int((self.clock() - started) * 1000)

        result = BuildResult(
            job_id=job.job_id,
            display_name=job.display_name,
            cell=cell_view(job.cell),
            status=JobStatus.FAILED if reason is not None else JobStatus.SUCCEEDED,
            toolchain=job.toolchain.identity if job.toolchain else None,
            artifacts=artifacts,
            validation_failures=validation_failures,
            steps=records,
            log_dir=str(ctx.logs_dir),
            failure_reason=reason,
            failure_detail=detail,
            duration_ms=duration_ms,
        )
        logger.info(
            f"Job {job.job_id} finished: {result.status.value} "
            f"({len(artifacts)} artifacts, {len(validation_failures)} rejected)"
        )
        return result
