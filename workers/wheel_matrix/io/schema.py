"""
Schema — Pydantic models for matrix definitions and run outputs.

Inputs:
  MatrixDefinition     — the declarative matrix file (YAML or JSON).

Outputs (one set per run):
  run_summary.json     — RunSummary, per-job status and reasons.
  artifact_bundle.json — ArtifactBundle, name → hash / source job.

Runtime contract fields (present in every output):
  package_name, orchestrator_version, schema_version.
"""
import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wheel_matrix import ORCHESTRATOR_VERSION, PACKAGE_NAME, SCHEMA_VERSION
from wheel_matrix.policy.verdict import (
    FailureReason,
    JobStatus,
    RunStatus,
    StepPhase,
    StepStatus,
    ValidationReason,
)

Scalar = Union[str, int, float, bool]


def _scalar_to_str(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ── Definition input ─────────────────────────────────────────────────────────

class StepDef(BaseModel):
    """One declared command step."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    run: Union[str, List[str]]
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("run")
    @classmethod
    def _run_not_empty(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("step 'run' must not be empty")
        if isinstance(v, list) and not v:
            raise ValueError("step 'run' must not be empty")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _env_to_str(cls, v):
        if v is None:
            return {}
        return {k: _scalar_to_str(val) for k, val in v.items()}


class ToolchainEntryDef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    os_family: str
    arch: str
    installer: str = "rustup"
    host_triple: Optional[str] = None
    targets: List[str] = Field(default_factory=list)
    path_entries: Optional[List[str]] = None


class ToolchainDef(BaseModel):
    """Toolchain section: pinned version, install gate and optional table."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    version: Optional[str] = None
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    table: Optional[List[ToolchainEntryDef]] = None


class MatrixDefinition(BaseModel):
    """The declarative build matrix, read once at run start."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    name_template: Optional[str] = None
    axes: Dict[str, List[Scalar]]
    include: List[Dict[str, Scalar]] = Field(default_factory=list)
    exclude: List[Dict[str, Scalar]] = Field(default_factory=list)
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    setup: List[StepDef] = Field(default_factory=list)
    toolchain: ToolchainDef = Field(default_factory=ToolchainDef)
    build: List[StepDef] = Field(default_factory=list)
    artifact_patterns: Optional[List[str]] = None
    timeout_seconds: Optional[float] = None

    @field_validator("axes", mode="before")
    @classmethod
    def _axes_to_str(cls, v):
        if not isinstance(v, dict):
            return v
        return {
            name: [_scalar_to_str(x) for x in values] if isinstance(values, list) else values
            for name, values in v.items()
        }

    @field_validator("include", "exclude", mode="before")
    @classmethod
    def _overrides_to_str(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        return [
            {k: _scalar_to_str(x) for k, x in item.items()} if isinstance(item, dict) else item
            for item in v
        ]


# ── Per-job records ──────────────────────────────────────────────────────────

class StepRecord(BaseModel):
    """Outcome of one step, including steps never attempted."""
    name: str
    phase: StepPhase
    status: StepStatus
    command: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None


class ArtifactRecord(BaseModel):
    name: str
    sha256: str
    path: str
    size_bytes: int


class ValidationFailure(BaseModel):
    """A produced file excluded from the job's artifacts."""
    name: str
    path: str
    reasons: List[ValidationReason]


class CellView(BaseModel):
    """Serializable view of a MatrixCell."""
    id: str
    axis_values: Dict[str, str]
    attributes: Dict[str, str]
    synthesized: bool = False


class BuildResult(BaseModel):
    """Produced exactly once per job; immutable afterwards."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    display_name: str
    cell: CellView
    status: JobStatus
    toolchain: Optional[str] = None
    artifacts: List[ArtifactRecord] = Field(default_factory=list)
    validation_failures: List[ValidationFailure] = Field(default_factory=list)
    steps: List[StepRecord] = Field(default_factory=list)
    log_dir: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    duration_ms: int = 0

    @property
    def last_step_reached(self) -> Optional[str]:
        reached = [
            s.name for s in self.steps
            if s.status not in (StepStatus.NOT_REACHED, StepStatus.SKIPPED_BY_CONDITION)
        ]
        return reached[-1] if reached else None


# ── Aggregated outputs ───────────────────────────────────────────────────────

class BundleEntry(BaseModel):
    sha256: str
    source_job_id: str
    path: str


class ArtifactBundle(BaseModel):
    """
    Final artifact set.

    ``entries`` never holds two hashes for one name; names claimed with
    different content by different jobs live in ``conflicts`` with every
    claim tagged by its source job.
    """
    package_name: str = PACKAGE_NAME
    orchestrator_version: str = ORCHESTRATOR_VERSION
    schema_version: str = SCHEMA_VERSION

    entries: Dict[str, BundleEntry] = Field(default_factory=dict)
    conflicts: Dict[str, List[BundleEntry]] = Field(default_factory=dict)

    def name_to_hash(self) -> Dict[str, str]:
        return {name: e.sha256 for name, e in self.entries.items()}


class JobSummary(BaseModel):
    display_name: str
    status: JobStatus
    artifact_count: int = 0
    validation_failure_count: int = 0
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    last_step: Optional[str] = None


class ConflictRecord(BaseModel):
    kind: str = "AggregationConflict"
    artifact_name: str
    claims: List[BundleEntry]


class RunCounts(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    artifacts: int = 0


class RunSummary(BaseModel):
    """Enough to reconstruct why the run succeeded or failed."""
    package_name: str = PACKAGE_NAME
    orchestrator_version: str = ORCHESTRATOR_VERSION
    schema_version: str = SCHEMA_VERSION

    run_id: str
    matrix_name: str
    profile_id: str
    status: RunStatus
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    counts: RunCounts = Field(default_factory=RunCounts)
    jobs: Dict[str, JobSummary] = Field(default_factory=dict)
    conflicts: List[ConflictRecord] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================

def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
