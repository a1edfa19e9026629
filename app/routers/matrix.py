"""
Matrix Router — wheel_matrix v1

Matrix expansion preview, run submission and run status tracking.
Runs are executed by the matrix worker consuming ``matrix:queue``.
"""
import json
import uuid
from dataclasses import replace
from typing import List, Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.config import Settings
from wheel_matrix.core.jobs import JobPlanner, cell_view
from wheel_matrix.io.schema import CellView, MatrixDefinition
from wheel_matrix.policy.profile import Profile
from wheel_matrix.runner import expand_definition
from wheel_matrix.worker import run_key


# =============================================================================
# Dependencies
# =============================================================================

def get_settings() -> Settings:
    return Settings()


def get_redis(settings: Settings = Depends(get_settings)) -> redis.Redis:
    """Get Redis client."""
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def get_profile(settings: Settings = Depends(get_settings)) -> Profile:
    """Planning profile; the job timeout follows DEFAULT_JOB_TIMEOUT."""
    return replace(Profile.v1(), job_timeout_seconds=float(settings.DEFAULT_JOB_TIMEOUT))


# =============================================================================
# Request / Response Models
# =============================================================================

class PlannedJob(BaseModel):
    """One cell as the planner sees it, before anything runs."""
    job_id: str
    display_name: str
    cell: CellView
    will_run: bool = Field(..., description="False if skipped or failed at planning time")
    status: Optional[str] = Field(None, description="Planning-time status when will_run is False")
    failure_reason: Optional[str] = None
    toolchain: Optional[str] = Field(None, description="Pinned toolchain identity, if installed")
    timeout_seconds: Optional[float] = None
    steps: List[str] = Field(default_factory=list, description="Commands that will run")


class ExpandResponse(BaseModel):
    """Expanded matrix for a definition."""
    matrix_name: str
    cell_count: int
    jobs: List[PlannedJob]


class RunSubmitResponse(BaseModel):
    """Response after submitting a matrix run."""
    run_id: str
    matrix_name: str
    status: str
    message: str


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


def _plan(definition: MatrixDefinition, profile: Profile) -> ExpandResponse:
    """Expand and plan; MatrixError propagates to the app-level 400 handler."""
    cells = expand_definition(definition)
    plan = JobPlanner(definition, profile).plan(cells)

    jobs = [
        PlannedJob(
            job_id=job.job_id,
            display_name=job.display_name,
            cell=cell_view(job.cell),
            will_run=True,
            toolchain=job.toolchain.identity if job.toolchain else None,
            timeout_seconds=job.timeout_seconds,
            steps=[s.command.display() for s in job.steps if s.run],
        )
        for job in plan.jobs
    ]
    jobs.extend(
        PlannedJob(
            job_id=r.job_id,
            display_name=r.display_name,
            cell=r.cell,
            will_run=False,
            status=r.status.value,
            failure_reason=r.failure_reason.value if r.failure_reason else None,
        )
        for r in plan.results
    )
    jobs.sort(key=lambda j: j.job_id)
    return ExpandResponse(matrix_name=definition.name, cell_count=len(cells), jobs=jobs)


@router.post("/expand", response_model=ExpandResponse)
async def expand_matrix(definition: MatrixDefinition, profile: Profile = Depends(get_profile)):
    """
    Expand a matrix definition without executing it.

    Returns every cell with its derived attributes, whether its job would
    run, and the resolved command line of each step that would execute.
    """
    return _plan(definition, profile)


@router.post(
    "/runs",
    response_model=RunSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_run(
    definition: MatrixDefinition,
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
    profile: Profile = Depends(get_profile),
):
    """
    Submit a matrix run.

    The definition is expanded up front so that malformed or ambiguous
    matrices are rejected with 400 instead of failing in the worker.
    """
    planned = _plan(definition, profile)
    run_id = uuid.uuid4().hex[:12]

    job_data = {
        "run_id": run_id,
        "job_type": "matrix_run",
        "definition": definition.model_dump(mode="json", by_alias=True, exclude_none=True),
    }
    redis_client.rpush(settings.MATRIX_QUEUE, json.dumps(job_data))

    return RunSubmitResponse(
        run_id=run_id,
        matrix_name=definition.name,
        status="QUEUED",
        message=f"Matrix run queued for '{definition.name}' "
                f"({planned.cell_count} cell(s), "
                f"{sum(1 for j in planned.jobs if j.will_run)} job(s) to execute)",
    )


@router.get("/runs/{run_id}")
async def get_run_status(
    run_id: str,
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """
    Get the status of a matrix run.

    Returns the stored RunSummary once the worker has picked the run up,
    or QUEUED while it still waits in the queue.
    """
    stored = redis_client.get(run_key(run_id))
    if stored is not None:
        return json.loads(stored)  # type: ignore

    queue_data = redis_client.lrange(settings.MATRIX_QUEUE, 0, -1)
    for item in queue_data:  # type: ignore
        job = json.loads(item)
        if job.get("run_id") == run_id:
            return {
                "run_id": run_id,
                "status": "QUEUED",
                "message": "Run is waiting in queue",
            }

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Run {run_id} not found",
    )
