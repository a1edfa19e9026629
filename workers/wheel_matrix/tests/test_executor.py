"""
test_executor — running one BuildJob in an isolated context.

Tests verify invariant properties:
  - fail-fast: the first failing step fails the job, later steps NOT_REACHED
  - gated-off steps are SKIPPED_BY_CONDITION and never fail a job
  - a job succeeds only with at least one validated artifact
  - each job gets its own directories and environment
"""
import itertools
import os
import sys
from pathlib import Path

import pytest

from conftest import ScriptedRunner, base_definition, corrupt_member, fail, make_wheel, time_out, wheel_name
from wheel_matrix.core.executor import (
    CellExecutor,
    CommandResult,
    ExecutionContext,
    JobLifecycle,
    SubprocessRunner,
)
from wheel_matrix.core.jobs import JobPlanner
from wheel_matrix.io.loader import parse_definition
from wheel_matrix.io.schema import hash_file
from wheel_matrix.policy.verdict import FailureReason, JobState, JobStatus, StepPhase, StepStatus
from wheel_matrix.runner import expand_definition

MACOS = "os=macos,python-version=8"
UBUNTU = "os=ubuntu,python-version=8"
WINDOWS = "os=windows,python-version=8"


def _execute(job, tmp_path, runner, profile, base_env=None, clock=None):
    base_env = base_env or {"PATH": "/usr/bin", "HOME": "/home/ci"}
    ctx = ExecutionContext.isolated(tmp_path, job, base_env=base_env, runner=runner)
    executor = CellExecutor(profile) if clock is None else CellExecutor(profile, clock=clock)
    return executor.execute(job, ctx), ctx


def _statuses(result):
    return [(s.phase, s.status) for s in result.steps]


class TestSuccess:

    def test_job_succeeds_with_artifact(self, jobs, tmp_path, runner, profile):
        result, ctx = _execute(jobs[MACOS], tmp_path, runner, profile)

        assert result.status == JobStatus.SUCCEEDED
        assert result.failure_reason is None
        assert [a.name for a in result.artifacts] == [wheel_name("macos")]
        assert result.toolchain == "nightly-2023-11-16"
        staged = Path(result.artifacts[0].path)
        assert staged.parent == ctx.staging_dir
        assert staged.is_file()

    def test_step_records_in_order(self, jobs, tmp_path, runner, profile):
        result, _ = _execute(jobs[MACOS], tmp_path, runner, profile)
        phases = [s.phase for s in result.steps]
        assert phases[0] == StepPhase.SETUP
        assert phases[-3:] == [StepPhase.ENUMERATE, StepPhase.VALIDATE, StepPhase.STAGE]
        assert all(s.status == StepStatus.SUCCEEDED for s in result.steps)

    def test_commands_run_in_planned_order(self, jobs, tmp_path, runner, profile):
        _execute(jobs[MACOS], tmp_path, runner, profile)
        assert runner.commands() == [
            "pip install cibuildwheel",
            "rustup default nightly-2023-11-16",
            "rustup target add aarch64-apple-darwin",
            "rustup target add x86_64-apple-darwin",
            "rustup show",
            "build-wheel macos 8",
        ]

    def test_logs_written_only_with_content(self, jobs, tmp_path, runner, profile):
        result, ctx = _execute(jobs[UBUNTU], tmp_path, runner, profile)
        build = [s for s in result.steps if s.phase == StepPhase.BUILD][0]
        assert build.stdout_path is not None
        assert (ctx.root / build.stdout_path).read_text() == "built demo\n"
        assert build.stderr_path is None
        assert sorted(p.name for p in ctx.logs_dir.iterdir()) == ["01-build.stdout"]


class TestFailures:

    def test_failing_step_fails_fast(self, jobs, tmp_path, profile):
        runner = ScriptedRunner([("rustup target add aarch64", fail(stderr="error: toolchain missing"))])
        result, ctx = _execute(jobs[MACOS], tmp_path, runner, profile)

        assert result.status == JobStatus.FAILED
        assert result.failure_reason == FailureReason.STEP_FAILED
        assert "toolchain missing" in result.failure_detail
        statuses = [s.status for s in result.steps]
        failed_at = statuses.index(StepStatus.FAILED)
        assert all(s == StepStatus.NOT_REACHED for s in statuses[failed_at + 1:])
        assert "build-wheel macos 8" not in runner.commands()
        assert result.last_step_reached == "toolchain: rustup target add aarch64-apple-darwin"

    def test_failure_stderr_logged(self, jobs, tmp_path, profile):
        runner = ScriptedRunner([("build-wheel", fail(exit_code=2, stderr="cargo: linker not found"))])
        result, ctx = _execute(jobs[UBUNTU], tmp_path, runner, profile)
        build = [s for s in result.steps if s.phase == StepPhase.BUILD][0]
        assert build.exit_code == 2
        assert (ctx.root / build.stderr_path).read_text() == "cargo: linker not found"

    def test_step_timeout(self, jobs, tmp_path, profile):
        runner = ScriptedRunner([("build-wheel", time_out())])
        result, _ = _execute(jobs[UBUNTU], tmp_path, runner, profile)
        assert result.failure_reason == FailureReason.TIMEOUT
        assert (StepPhase.BUILD, StepStatus.TIMEOUT) in _statuses(result)

    def test_job_deadline_exhausted(self, jobs, tmp_path, runner, profile):
        ticks = itertools.count(0, 5000)
        result, _ = _execute(jobs[UBUNTU], tmp_path, runner, profile, clock=lambda: next(ticks))
        assert result.failure_reason == FailureReason.TIMEOUT
        assert runner.calls == []

    def test_no_artifacts(self, jobs, tmp_path, profile):
        result, _ = _execute(jobs[UBUNTU], tmp_path, ScriptedRunner(), profile)
        assert result.failure_reason == FailureReason.NO_ARTIFACTS
        assert _statuses(result)[-1] == (StepPhase.STAGE, StepStatus.NOT_REACHED)

    def test_all_artifacts_invalid(self, jobs, tmp_path, profile):
        def _empty_wheel(argv, cwd, env):
            (Path(env["WHEEL_MATRIX_OUTPUT_DIR"]) / wheel_name("linux")).write_bytes(b"")
            return CommandResult(exit_code=0)

        result, _ = _execute(jobs[UBUNTU], tmp_path, ScriptedRunner([("build-wheel", _empty_wheel)]), profile)
        assert result.failure_reason == FailureReason.VALIDATION_FAILED
        assert result.artifacts == []
        assert result.validation_failures[0].reasons == ["EMPTY_FILE"]

    def test_partial_validation_failure_still_succeeds(self, jobs, tmp_path, profile):
        def _mixed(argv, cwd, env):
            out = Path(env["WHEEL_MATRIX_OUTPUT_DIR"])
            make_wheel(out, wheel_name("linux"))
            make_wheel(out, wheel_name("macos"))
            return CommandResult(exit_code=0)

        result, _ = _execute(jobs[UBUNTU], tmp_path, ScriptedRunner([("build-wheel", _mixed)]), profile)
        assert result.status == JobStatus.SUCCEEDED
        assert [a.name for a in result.artifacts] == [wheel_name("linux")]
        assert [f.name for f in result.validation_failures] == [wheel_name("macos")]

    def test_corrupt_wheel_does_not_sink_valid_one(self, jobs, tmp_path, profile):
        broken = wheel_name("linux", dist="broken")

        def _one_corrupt(argv, cwd, env):
            out = Path(env["WHEEL_MATRIX_OUTPUT_DIR"])
            make_wheel(out, wheel_name("linux"))
            corrupt_member(make_wheel(out, broken), "broken-1.0.dist-info/METADATA")
            return CommandResult(exit_code=0)

        result, _ = _execute(jobs[UBUNTU], tmp_path, ScriptedRunner([("build-wheel", _one_corrupt)]), profile)
        assert result.status == JobStatus.SUCCEEDED
        assert [a.name for a in result.artifacts] == [wheel_name("linux")]
        [failure] = result.validation_failures
        assert failure.name == broken
        assert failure.reasons == ["BAD_ARCHIVE"]

    def test_only_top_level_output_enumerated(self, jobs, tmp_path, profile):
        def _nested(argv, cwd, env):
            out = Path(env["WHEEL_MATRIX_OUTPUT_DIR"])
            make_wheel(out, wheel_name("linux"), payload=b"top")
            make_wheel(out / "build" / "tmp", wheel_name("linux"), payload=b"nested")
            return CommandResult(exit_code=0)

        result, ctx = _execute(jobs[UBUNTU], tmp_path, ScriptedRunner([("build-wheel", _nested)]), profile)
        [artifact] = result.artifacts
        assert artifact.sha256 == hash_file(ctx.output_dir / wheel_name("linux"))
        assert artifact.sha256 != hash_file(ctx.output_dir / "build" / "tmp" / wheel_name("linux"))


class TestConditionsAndEnvironment:

    def test_gated_step_recorded_not_run(self, tmp_path, runner, profile):
        definition = parse_definition(base_definition(build=[
            {"name": "build", "run": "build-wheel {os_family} {python-version}"},
            {"name": "win32", "run": "cibuildwheel --platform windows", "if": "matrix.os == 'windows'"},
        ]))
        plan = JobPlanner(definition, profile).plan(expand_definition(definition))
        job = {j.job_id: j for j in plan.jobs}[UBUNTU]

        result, _ = _execute(job, tmp_path, runner, profile)
        assert result.status == JobStatus.SUCCEEDED
        win32 = [s for s in result.steps if s.name == "win32"][0]
        assert win32.status == StepStatus.SKIPPED_BY_CONDITION
        assert "cibuildwheel --platform windows" not in runner.commands()

    def test_toolchain_path_prepended(self, jobs, tmp_path, runner, profile):
        _execute(jobs[MACOS], tmp_path, runner, profile)
        env = runner.calls[-1][1]
        assert env["PATH"] == os.pathsep.join(["/home/ci/.cargo/bin", "/usr/bin"])
        assert env["WHEEL_MATRIX_JOB_ID"] == MACOS

    def test_output_dir_placeholder_filled_at_run_time(self, tmp_path, profile):
        definition = parse_definition(base_definition(build=[{
            "name": "build",
            "run": "cibuildwheel --output-dir {output_dir}",
            "env": {"CIBW_OUTPUT": "{output_dir}"},
        }]))
        plan = JobPlanner(definition, profile).plan(expand_definition(definition))
        job = {j.job_id: j for j in plan.jobs}[UBUNTU]
        runner = ScriptedRunner()

        _, ctx = _execute(job, tmp_path, runner, profile)
        argv, env = runner.calls[-1]
        assert argv[-1] == str(ctx.output_dir)
        assert env["CIBW_OUTPUT"] == str(ctx.output_dir)

    def test_jobs_are_isolated(self, jobs, tmp_path, runner, profile):
        _, ctx_a = _execute(jobs[UBUNTU], tmp_path, runner, profile)
        _, ctx_b = _execute(jobs[WINDOWS], tmp_path, runner, profile)
        assert ctx_a.root != ctx_b.root
        assert [p.name for p in ctx_a.staging_dir.iterdir()] == [wheel_name("linux")]
        assert [p.name for p in ctx_b.staging_dir.iterdir()] == [wheel_name("windows")]

    def test_base_env_not_mutated(self, jobs, tmp_path, runner, profile):
        base = {"PATH": "/usr/bin", "HOME": "/home/ci"}
        _execute(jobs[MACOS], tmp_path, runner, profile, base_env=base)
        assert base == {"PATH": "/usr/bin", "HOME": "/home/ci"}


class TestLifecycle:

    def test_legal_path(self):
        lc = JobLifecycle("j")
        lc.transition(JobState.RUNNING)
        lc.transition(JobState.SUCCEEDED)
        assert lc.history == [JobState.PENDING, JobState.RUNNING, JobState.SUCCEEDED]

    @pytest.mark.parametrize("path", [
        [JobState.SUCCEEDED],
        [JobState.RUNNING, JobState.SUCCEEDED, JobState.FAILED],
        [JobState.RUNNING, JobState.PENDING],
    ])
    def test_illegal_transitions(self, path):
        lc = JobLifecycle("j")
        with pytest.raises(RuntimeError):
            for state in path:
                lc.transition(state)


class TestSubprocessRunner:
    """Uses the running interpreter as the external command."""

    def test_captures_output(self, tmp_path):
        result = SubprocessRunner().run(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            cwd=tmp_path, env=dict(os.environ), timeout=30,
        )
        assert result.ok
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    def test_non_zero_exit(self, tmp_path):
        result = SubprocessRunner().run(
            [sys.executable, "-c", "raise SystemExit(3)"],
            cwd=tmp_path, env=dict(os.environ), timeout=30,
        )
        assert result.exit_code == 3
        assert not result.ok

    def test_timeout(self, tmp_path):
        result = SubprocessRunner().run(
            [sys.executable, "-c", "import time; time.sleep(10)"],
            cwd=tmp_path, env=dict(os.environ), timeout=0.5,
        )
        assert result.timed_out
        assert not result.ok

    def test_missing_program(self, tmp_path):
        result = SubprocessRunner().run(
            ["definitely-not-a-real-program-xyz"], cwd=tmp_path, env=dict(os.environ), timeout=5,
        )
        assert result.exit_code == 127
