"""
Matrix Worker — wheel_matrix v1

Consumes matrix run jobs from a Redis queue and executes them.
Each job carries a full matrix definition; the finished RunSummary is
stored back into Redis under ``matrix:run:<run_id>`` and the bundle,
job results and staged artifacts are written under the artifacts path.
"""
import json
import logging
import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import redis

from wheel_matrix.core.errors import MatrixError
from wheel_matrix.core.executor import CommandRunner
from wheel_matrix.io.loader import parse_definition
from wheel_matrix.policy.profile import Profile
from wheel_matrix.runner import DEFAULT_MAX_WORKERS, run_matrix

logger = logging.getLogger("matrix_worker")

QUEUE_NAME = "matrix:queue"
RUN_KEY_PREFIX = "matrix:run:"


def run_key(run_id: str) -> str:
    return f"{RUN_KEY_PREFIX}{run_id}"


class MatrixWorker:
    """
    Worker that pulls matrix run jobs from Redis and executes them.
    Run state and summaries are kept in Redis; artifacts go to disk.
    """

    def __init__(
        self,
        redis_host: str = "redis",
        redis_port: int = 6379,
        redis_db: int = 0,
        workspace_root: str = "/tmp/wheel_matrix",
        artifacts_path: str = "/files/artifacts",
        queue_name: str = QUEUE_NAME,
        max_workers: int = DEFAULT_MAX_WORKERS,
        job_timeout: Optional[float] = None,
        redis_client: Optional[redis.Redis] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.redis_db = redis_db
        self.workspace_root = Path(workspace_root)
        self.artifacts_path = Path(artifacts_path)
        self.queue_name = queue_name
        self.max_workers = max_workers
        self.job_timeout = job_timeout
        self.redis_client = redis_client
        self.runner = runner

    def connect(self):
        """Establish the Redis connection."""
        if self.redis_client is not None:
            return
        logger.info("Connecting to Redis...")
        self.redis_client = redis.Redis(
            host=self.redis_host,
            port=self.redis_port,
            db=self.redis_db,
            decode_responses=True,
        )
        self.redis_client.ping()
        logger.info("Redis connected")

    def run(self):
        """Main worker loop — blocking pop from Redis queue."""
        self.connect()
        logger.info(f"Matrix worker started, waiting for jobs on {self.queue_name}...")

        while True:
            try:
                if not self.poll_once(timeout=5):
                    continue
            except KeyboardInterrupt:
                logger.info("Worker shutting down...")
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(5)

    def poll_once(self, timeout: int = 5) -> bool:
        """Pop and process at most one job.  Returns True if a job was handled."""
        if self.redis_client is None:
            raise RuntimeError("Redis client not connected")

        result = self.redis_client.blpop([self.queue_name], timeout=timeout)
        if result is None:
            return False

        _, job_data = result  # type: ignore
        job = json.loads(job_data)

        job_type = job.get("job_type", "")
        if job_type != "matrix_run":
            logger.warning(f"Unknown job type '{job_type}', skipping")
            return True

        logger.info(f"Received matrix run job: {job['run_id']}")
        self.process_run(job)
        return True

    # -----------------------------------------------------------------
    # Run processing
    # -----------------------------------------------------------------

    def _profile(self) -> Profile:
        profile = Profile.v1()
        if self.job_timeout is None:
            return profile
        return replace(profile, job_timeout_seconds=float(self.job_timeout))

    def _store(self, run_id: str, payload: dict):
        self.redis_client.set(run_key(run_id), json.dumps(payload))

    def process_run(self, job_data: dict):
        """
        Process a matrix run job:
          1. Validate the definition
          2. Expand, execute and aggregate
          3. Store the summary in Redis
        """
        run_id = job_data["run_id"]
        self._store(run_id, {"run_id": run_id, "status": "RUNNING"})

        try:
            definition = parse_definition(job_data["definition"])
            report = run_matrix(
                definition,
                profile=self._profile(),
                workspace_root=self.workspace_root,
                output_dir=self.artifacts_path / "matrix" / run_id,
                runner=self.runner,
                max_workers=self.max_workers,
                run_id=run_id,
            )
        except MatrixError as e:
            logger.error(f"Run {run_id} rejected: {type(e).__name__}: {e}")
            self._store(run_id, {
                "run_id": run_id,
                "status": "FAILED",
                "errors": [f"{type(e).__name__}: {e}"],
            })
            return
        except Exception as e:
            logger.error(f"Run {run_id} crashed: {e}", exc_info=True)
            self._store(run_id, {
                "run_id": run_id,
                "status": "FAILED",
                "errors": [f"{type(e).__name__}: {e}"],
            })
            return

        self._store(run_id, report.summary.model_dump(mode="json"))
        logger.info(
            f"Matrix run complete: {run_id} — "
            f"status={report.summary.status.value}, "
            f"jobs={report.summary.counts.total}"
        )


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    timeout = os.getenv("DEFAULT_JOB_TIMEOUT")
    worker = MatrixWorker(
        redis_host=os.getenv("REDIS_HOST", "redis"),
        redis_port=int(os.getenv("REDIS_PORT", "6379")),
        redis_db=int(os.getenv("REDIS_DB", "0")),
        workspace_root=os.getenv("MATRIX_WORKSPACE", "/tmp/wheel_matrix"),
        artifacts_path=os.getenv("ARTIFACTS_PATH", "/files/artifacts"),
        queue_name=os.getenv("MATRIX_QUEUE", QUEUE_NAME),
        max_workers=int(os.getenv("MAX_PARALLEL_JOBS", str(DEFAULT_MAX_WORKERS))),
        job_timeout=float(timeout) if timeout else None,
    )
    worker.run()
