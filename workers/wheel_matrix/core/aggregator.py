"""
Aggregator — fold BuildResults into one ArtifactBundle and a RunSummary.

Safe to call incrementally from several threads: every mutation happens
under one lock, and the final bundle depends only on the set of results,
never on their arrival order.

Bundle rules per artifact name:
  - one content hash claimed by one or more jobs → one entry, sourced
    from the smallest job id
  - two or more content hashes → AggregationConflict; the name moves to
    ``conflicts`` with every claim kept, and the run fails
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from wheel_matrix.core.errors import AggregationConflict
from wheel_matrix.io.schema import (
    ArtifactBundle,
    BuildResult,
    BundleEntry,
    ConflictRecord,
    JobSummary,
    RunCounts,
    RunSummary,
)
from wheel_matrix.policy.verdict import JobStatus, RunStatus, judge_run

logger = logging.getLogger(__name__)


class Aggregator:
    def __init__(self, run_id: str, matrix_name: str, profile_id: str):
        self.run_id = run_id
        self.matrix_name = matrix_name
        self.profile_id = profile_id
        self._lock = threading.Lock()
        self._results: Dict[str, BuildResult] = {}
        # name → sha256 → job_id → staged path
        self._claims: Dict[str, Dict[str, Dict[str, str]]] = {}

    def add(self, result: BuildResult):
        """Record one job's result.  A job id may only report once."""
        with self._lock:
            if result.job_id in self._results:
                raise ValueError(f"duplicate result for job {result.job_id}")
            self._results[result.job_id] = result
            if result.status != JobStatus.SUCCEEDED:
                return
            for artifact in result.artifacts:
                by_hash = self._claims.setdefault(artifact.name, {})
                new_hash = artifact.sha256 not in by_hash
                by_hash.setdefault(artifact.sha256, {})[result.job_id] = artifact.path
                if new_hash and len(by_hash) > 1:
                    logger.error(str(self._conflict(artifact.name, by_hash)))

    def add_all(self, results: Iterable[BuildResult]):
        for result in results:
            self.add(result)

    @staticmethod
    def _conflict(name: str, by_hash: Dict[str, Dict[str, str]]) -> AggregationConflict:
        job_ids = sorted(j for jobs in by_hash.values() for j in jobs)
        return AggregationConflict(name, job_ids)

    # -----------------------------------------------------------------

    def bundle(self) -> ArtifactBundle:
        with self._lock:
            entries: Dict[str, BundleEntry] = {}
            conflicts: Dict[str, List[BundleEntry]] = {}
            for name in sorted(self._claims):
                by_hash = self._claims[name]
                if len(by_hash) == 1:
                    sha256, jobs = next(iter(by_hash.items()))
                    source = min(jobs)
                    entries[name] = BundleEntry(sha256=sha256, source_job_id=source, path=jobs[source])
                else:
                    conflicts[name] = [
                        BundleEntry(sha256=sha256, source_job_id=job_id, path=path)
                        for sha256, jobs in sorted(by_hash.items())
                        for job_id, path in sorted(jobs.items())
                    ]
            return ArtifactBundle(entries=entries, conflicts=conflicts)

    def conflicts(self) -> List[AggregationConflict]:
        with self._lock:
            return [
                self._conflict(name, by_hash)
                for name, by_hash in sorted(self._claims.items())
                if len(by_hash) > 1
            ]

    def summary(
        self,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> RunSummary:
        bundle = self.bundle()
        with self._lock:
            results = [self._results[j] for j in sorted(self._results)]

        counts = RunCounts(total=len(results), artifacts=len(bundle.entries))
        jobs: Dict[str, JobSummary] = {}
        for r in results:
            if r.status == JobStatus.SUCCEEDED:
                counts.succeeded += 1
            elif r.status == JobStatus.FAILED:
                counts.failed += 1
            else:
                counts.skipped += 1
            jobs[r.job_id] = JobSummary(
                display_name=r.display_name,
                status=r.status,
                artifact_count=len(r.artifacts),
                validation_failure_count=len(r.validation_failures),
                failure_reason=r.failure_reason,
                failure_detail=r.failure_detail,
                last_step=r.last_step_reached,
            )

        conflict_records = [
            ConflictRecord(artifact_name=name, claims=claims)
            for name, claims in bundle.conflicts.items()
        ]
        all_errors = list(errors or [])
        all_errors.extend(str(c) for c in self.conflicts())
        status = judge_run([r.status for r in results], len(conflict_records))
        if errors:
            status = RunStatus.FAILED

        return RunSummary(
            run_id=self.run_id,
            matrix_name=self.matrix_name,
            profile_id=self.profile_id,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            counts=counts,
            jobs=jobs,
            conflicts=conflict_records,
            errors=all_errors,
        )


def aggregate(
    results: Iterable[BuildResult],
    run_id: str = "run",
    matrix_name: str = "matrix",
    profile_id: str = "",
) -> Tuple[ArtifactBundle, RunSummary]:
    """One-shot aggregation over a complete result set."""
    agg = Aggregator(run_id, matrix_name, profile_id)
    agg.add_all(results)
    return agg.bundle(), agg.summary()
