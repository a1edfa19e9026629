"""
Writer — serialize run outputs and stage the final artifact directory.

Filesystem layout per run:
    <output_dir>/run_summary.json
    <output_dir>/artifact_bundle.json
    <output_dir>/jobs/<cell_key>.json
    <output_dir>/artifacts/<artifact_name>
    <output_dir>/conflicts/<cell_key>/<artifact_name>
"""
import json
import shutil
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel

from wheel_matrix.core.axes import cell_key
from wheel_matrix.io.schema import ArtifactBundle, BuildResult, RunSummary


def _dump(model: BaseModel, path: Path):
    path.write_text(
        json.dumps(
            model.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )


def write_outputs(
    summary: RunSummary,
    bundle: ArtifactBundle,
    results: Iterable[BuildResult],
    output_dir: Path,
) -> Path:
    """
    Write run_summary.json, artifact_bundle.json and one JSON file per job
    into *output_dir*.  Creates *output_dir* if it does not exist.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    _dump(summary, output_dir / "run_summary.json")
    _dump(bundle, output_dir / "artifact_bundle.json")

    jobs_dir = output_dir / "jobs"
    jobs_dir.mkdir(exist_ok=True)
    for result in results:
        _dump(result, jobs_dir / f"{cell_key(result.job_id)}.json")
    return output_dir


def stage_bundle(bundle: ArtifactBundle, output_dir: Path) -> Path:
    """
    Copy bundle files into ``artifacts/``; conflicting claims go to
    ``conflicts/<job>/`` so both sides can be inspected.
    """
    artifacts_dir = output_dir / "artifacts"
    if artifacts_dir.exists():
        shutil.rmtree(artifacts_dir)
    artifacts_dir.mkdir(parents=True)
    for name, entry in bundle.entries.items():
        shutil.copy2(entry.path, artifacts_dir / name)

    conflicts_dir = output_dir / "conflicts"
    if conflicts_dir.exists():
        shutil.rmtree(conflicts_dir)
    for name, claims in bundle.conflicts.items():
        for claim in claims:
            dest = conflicts_dir / cell_key(claim.source_job_id)
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copy2(claim.path, dest / name)
    return artifacts_dir
