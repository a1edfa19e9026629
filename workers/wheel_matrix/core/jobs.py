"""
Jobs — turn expanded cells into immutable BuildJobs.

Every (cell, step) condition is evaluated exactly once here and stored
as a Run/Skip decision on the planned step; the executor never looks at
conditions.  Cells gated off by the cell-level condition become Skipped
results, and cells whose toolchain or templates cannot be resolved
become Failed results.  Neither gets a BuildJob.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from wheel_matrix.core.axes import DERIVED_ATTRIBUTES, MatrixCell
from wheel_matrix.core.conditions import ConditionEngine, ConditionExpr, render
from wheel_matrix.core.errors import MatrixDefinitionError, TemplateError, ToolchainResolutionError
from wheel_matrix.core.toolchain import (
    Command,
    ToolchainEntry,
    ToolchainResolver,
    ToolchainSpec,
)
from wheel_matrix.io.schema import BuildResult, CellView, MatrixDefinition, StepDef
from wheel_matrix.policy.profile import Profile
from wheel_matrix.policy.verdict import FailureReason, JobStatus, StepPhase

logger = logging.getLogger(__name__)

# Filled per job by the executor, left untouched at planning time.
CONTEXT_PLACEHOLDERS = frozenset({"output_dir", "staging_dir", "workspace"})

_PLACEHOLDER_RE = re.compile(r"(?<!\$)\{([A-Za-z_][A-Za-z0-9_.\-]*)(?:\|([^{}]*))?\}")


def render_template(
    text: str,
    values: Mapping[str, str],
    passthrough: frozenset = frozenset(),
    strict: bool = True,
) -> str:
    """
    Substitute ``{key}`` and ``{key|default}`` placeholders.

    Keys in ``passthrough`` are left as-is; any other unknown key without
    a default raises TemplateError (or is left as-is when not ``strict``).
    """
    def _sub(m: re.Match) -> str:
        key, default = m.group(1), m.group(2)
        if key in values:
            return values[key]
        if key in passthrough:
            return m.group(0)
        if default is not None:
            return default
        if not strict:
            return m.group(0)
        raise TemplateError(f"placeholder '{{{key}}}' has no value in {text!r}")

    return _PLACEHOLDER_RE.sub(_sub, text)


def cell_view(cell: MatrixCell) -> CellView:
    return CellView(
        id=cell.id,
        axis_values=dict(cell.axis_values),
        attributes=dict(cell.attributes),
        synthesized=cell.synthesized,
    )


@dataclass(frozen=True)
class PlannedStep:
    name: str
    phase: StepPhase
    command: Command
    run: bool
    condition: str = "true"


@dataclass(frozen=True)
class BuildJob:
    job_id: str
    display_name: str
    cell: MatrixCell
    steps: Tuple[PlannedStep, ...]
    toolchain: Optional[ToolchainSpec] = None
    timeout_seconds: float = 3600.0


@dataclass
class JobPlan:
    jobs: List[BuildJob] = field(default_factory=list)
    results: List[BuildResult] = field(default_factory=list)


@dataclass(frozen=True)
class _StepTemplate:
    name: str
    phase: StepPhase
    run: Tuple[str, ...]
    shell: Optional[str]
    env: Tuple[Tuple[str, str], ...]
    condition: ConditionExpr


class JobPlanner:
    """Compiles a MatrixDefinition once, then plans jobs cell by cell."""

    def __init__(self, definition: MatrixDefinition, profile: Profile):
        self.definition = definition
        self.profile = profile

        known = set(definition.axes) | set(DERIVED_ATTRIBUTES)
        for inc in definition.include:
            known.update(inc.keys())
        self.engine = ConditionEngine(known)

        self.cell_condition = self.engine.compile(definition.if_, "matrix 'if'")
        self.toolchain_condition = self.engine.compile(definition.toolchain.if_, "toolchain 'if'")
        self.setup_steps = [self._compile_step(s, StepPhase.SETUP) for s in definition.setup]
        self.build_steps = [self._compile_step(s, StepPhase.BUILD) for s in definition.build]

        self.resolver = ToolchainResolver(
            version=definition.toolchain.version or profile.toolchain_version,
            table=_toolchain_table(definition, profile),
        )
        self.timeout_seconds = definition.timeout_seconds or profile.job_timeout_seconds

    def _compile_step(self, step: StepDef, phase: StepPhase) -> _StepTemplate:
        condition = self.engine.compile(step.if_, f"step '{step.name}' 'if'")
        if isinstance(step.run, str):
            run, shell = (), step.run
        else:
            run, shell = tuple(step.run), None
        return _StepTemplate(
            name=step.name,
            phase=phase,
            run=run,
            shell=shell,
            env=tuple(sorted(step.env.items())),
            condition=condition,
        )

    # ------------------------------------------------------------------

    def _template_values(self, cell: MatrixCell) -> Dict[str, str]:
        values = cell.context()
        values["cell_id"] = cell.id
        values["job_id"] = cell.id
        return values

    def _decide(self, tpl: _StepTemplate, cell: MatrixCell, values: Mapping[str, str]) -> PlannedStep:
        """
        Render one step for ``cell`` and attach its Run/Skip decision.

        Skipped steps are rendered leniently: a placeholder the cell cannot
        fill does not fail a step that will never run.
        """
        run = self.engine.evaluate(tpl.condition, cell)

        def _r(text: str) -> str:
            return render_template(text, values, CONTEXT_PLACEHOLDERS, strict=run)

        env = {k: _r(v) for k, v in tpl.env}
        if tpl.shell is not None:
            command = Command.parse(_r(tpl.shell), env)
        else:
            argv = [_r(a) for a in tpl.run]
            command = Command(program=argv[0], args=tuple(argv[1:]), env=env)
        return PlannedStep(
            name=_r(tpl.name),
            phase=tpl.phase,
            command=command,
            run=run,
            condition=render(tpl.condition),
        )

    def display_name(self, cell: MatrixCell) -> str:
        if not self.definition.name_template:
            return f"{self.definition.name} [{cell.id}]"
        return render_template(self.definition.name_template, self._template_values(cell))

    def plan_cell(self, cell: MatrixCell) -> Tuple[Optional[BuildJob], Optional[BuildResult]]:
        """Return (job, None) for runnable cells, (None, result) otherwise."""
        if not self.engine.evaluate(self.cell_condition, cell):
            logger.info(f"Cell {cell.id} skipped by matrix condition")
            return None, BuildResult(
                job_id=cell.id,
                display_name=self._safe_display_name(cell),
                cell=cell_view(cell),
                status=JobStatus.SKIPPED,
            )

        values = self._template_values(cell)
        try:
            display_name = self.display_name(cell)
            steps: List[PlannedStep] = [self._decide(t, cell, values) for t in self.setup_steps]

            toolchain: Optional[ToolchainSpec] = None
            if self.engine.evaluate(self.toolchain_condition, cell):
                toolchain = self.resolver.resolve(cell)
                for cmd in toolchain.steps:
                    steps.append(PlannedStep(
                        name=f"toolchain: {cmd.display()}",
                        phase=StepPhase.TOOLCHAIN,
                        command=cmd,
                        run=True,
                        condition=render(self.toolchain_condition),
                    ))

            steps.extend(self._decide(t, cell, values) for t in self.build_steps)
        except ToolchainResolutionError as e:
            logger.error(f"Cell {cell.id}: {e}")
            return None, self._failed(cell, FailureReason.TOOLCHAIN_UNRESOLVED, str(e))
        except TemplateError as e:
            logger.error(f"Cell {cell.id}: {e}")
            return None, self._failed(cell, FailureReason.TEMPLATE_ERROR, str(e))

        job = BuildJob(
            job_id=cell.id,
            display_name=display_name,
            cell=cell,
            steps=tuple(steps),
            toolchain=toolchain,
            timeout_seconds=self.timeout_seconds,
        )
        return job, None

    def plan(self, cells: Sequence[MatrixCell]) -> JobPlan:
        owners: Dict[str, str] = {}
        for cell in cells:
            other = owners.setdefault(cell.slug, cell.id)
            if other != cell.id:
                raise MatrixDefinitionError(
                    f"cells '{other}' and '{cell.id}' share workspace '{cell.slug}'"
                )

        plan = JobPlan()
        for cell in cells:
            job, result = self.plan_cell(cell)
            if job is not None:
                plan.jobs.append(job)
            else:
                plan.results.append(result)
        logger.info(
            f"Planned {len(plan.jobs)} jobs, "
            f"{len(plan.results)} cells resolved without running"
        )
        return plan

    # ------------------------------------------------------------------

    def _safe_display_name(self, cell: MatrixCell) -> str:
        try:
            return self.display_name(cell)
        except TemplateError:
            return f"{self.definition.name} [{cell.id}]"

    def _failed(self, cell: MatrixCell, reason: FailureReason, detail: str) -> BuildResult:
        return BuildResult(
            job_id=cell.id,
            display_name=self._safe_display_name(cell),
            cell=cell_view(cell),
            status=JobStatus.FAILED,
            failure_reason=reason,
            failure_detail=detail,
        )


def _toolchain_table(definition: MatrixDefinition, profile: Profile):
    if not definition.toolchain.table:
        return profile.toolchain_table
    entries = []
    for row in definition.toolchain.table:
        kwargs = dict(
            os_family=row.os_family,
            arch=row.arch,
            installer=row.installer,
            host_triple=row.host_triple,
            targets=tuple(row.targets),
        )
        if row.path_entries is not None:
            kwargs["path_entries"] = tuple(row.path_entries)
        entries.append(ToolchainEntry(**kwargs))
    return tuple(entries)

