"""
Verdict — status vocabularies and the job-outcome policy.

Two layers:
  1. Step outcome      — did the commands of the job succeed?
  2. Artifact outcome  — did validation leave anything to ship?

A job with failing artifacts still succeeds while at least one artifact
survives; it fails when validation (or the build itself) leaves none.
"""
from enum import Enum, unique
from typing import List, Optional, Tuple


@unique
class JobStatus(str, Enum):
    SKIPPED = "SKIPPED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@unique
class JobState(str, Enum):
    """Lifecycle of a job inside the executor."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
}


@unique
class StepStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SKIPPED_BY_CONDITION = "SKIPPED_BY_CONDITION"
    NOT_REACHED = "NOT_REACHED"


@unique
class StepPhase(str, Enum):
    SETUP = "setup"
    TOOLCHAIN = "toolchain"
    BUILD = "build"
    ENUMERATE = "enumerate"
    VALIDATE = "validate"
    STAGE = "stage"


@unique
class FailureReason(str, Enum):
    STEP_FAILED = "STEP_FAILED"
    TIMEOUT = "TIMEOUT"
    TOOLCHAIN_UNRESOLVED = "TOOLCHAIN_UNRESOLVED"
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    NO_ARTIFACTS = "NO_ARTIFACTS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    STAGING_FAILED = "STAGING_FAILED"
    EXECUTOR_ERROR = "EXECUTOR_ERROR"


@unique
class ValidationReason(str, Enum):
    EMPTY_FILE = "EMPTY_FILE"
    BAD_FILENAME = "BAD_FILENAME"
    PLATFORM_TAG_MISMATCH = "PLATFORM_TAG_MISMATCH"
    BAD_ARCHIVE = "BAD_ARCHIVE"
    MISSING_METADATA = "MISSING_METADATA"
    NON_ELF_EXTENSION = "NON_ELF_EXTENSION"


@unique
class RunStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


def judge_artifacts(
    produced: int,
    accepted: int,
) -> Tuple[JobStatus, Optional[FailureReason]]:
    """
    Decide job status after validation.

    produced:  files found by enumeration
    accepted:  files that passed validation
    """
    if produced == 0:
        return JobStatus.FAILED, FailureReason.NO_ARTIFACTS
    if accepted == 0:
        return JobStatus.FAILED, FailureReason.VALIDATION_FAILED
    return JobStatus.SUCCEEDED, None


def judge_run(job_statuses: List[JobStatus], conflict_count: int) -> RunStatus:
    """Succeeded iff every non-skipped job succeeded and nothing conflicted."""
    if conflict_count:
        return RunStatus.FAILED
    for status in job_statuses:
        if status == JobStatus.FAILED:
            return RunStatus.FAILED
    return RunStatus.SUCCEEDED
