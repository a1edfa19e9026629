"""
Errors — exception taxonomy for the matrix orchestrator.

Only definition-time errors (bad definition, ambiguous cells, bad
conditions) abort a run.  Per-job errors are caught by the planner or
executor and turned into a failed BuildResult.
"""
from __future__ import annotations

from typing import Optional


class MatrixError(Exception):
    """Base class for every orchestrator error."""


class MatrixDefinitionError(MatrixError):
    """The matrix definition (axes, overrides, steps) is malformed."""


class AmbiguousCellError(MatrixError):
    """Two overrides resolve to the same cell id with conflicting data."""

    def __init__(self, cell_id: str, message: str):
        self.cell_id = cell_id
        super().__init__(f"{cell_id}: {message}")


class ConditionError(MatrixError):
    """A condition expression cannot be parsed or references unknown attributes."""


class ToolchainResolutionError(MatrixError):
    """No toolchain mapping exists for a cell's (os_family, arch) pair."""

    def __init__(self, os_family: str, arch: str):
        self.os_family = os_family
        self.arch = arch
        super().__init__(f"no toolchain for platform ({os_family}, {arch})")


class TemplateError(MatrixError):
    """A step placeholder cannot be filled from the cell."""


class StepFailure(MatrixError):
    """An external command failed (non-zero exit or timeout)."""

    def __init__(
        self,
        step_name: str,
        exit_code: int,
        stderr_tail: str = "",
        timed_out: bool = False,
    ):
        self.step_name = step_name
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.timed_out = timed_out
        if timed_out:
            msg = f"step '{step_name}' timed out"
        else:
            msg = f"step '{step_name}' exited with {exit_code}"
        if stderr_tail:
            msg = f"{msg}: {stderr_tail}"
        super().__init__(msg)


class AggregationConflict(MatrixError):
    """Two jobs produced same-named artifacts with different content."""

    def __init__(self, artifact_name: str, job_ids: Optional[list] = None):
        self.artifact_name = artifact_name
        self.job_ids = job_ids or []
        super().__init__(
            f"artifact '{artifact_name}' has conflicting content "
            f"from jobs {', '.join(self.job_ids)}"
        )
