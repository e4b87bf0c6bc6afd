"""
In-memory job store for build jobs.
Logs only job_id, stage, progress - never uploads, tokens or build output.

The orchestrator depends only on the JobStore protocol (get / put / update),
so a database-backed store can replace InMemoryJobStore without touching it.
"""
import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Optional, Protocol

from buildfarm.schemas.jobs import JobStage, STAGE_ORDER

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """A build job (in-memory representation)."""
    id: str
    stage: JobStage = JobStage.QUEUED
    progress: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    base_url: str = ""
    # Render / transform inputs
    routes: list[str] = field(default_factory=list)
    allowed_routes: list[str] = field(default_factory=list)
    # Results
    transform_applied: Optional[bool] = None
    rendered_routes: list[str] = field(default_factory=list)
    failed_routes: list[dict[str, str]] = field(default_factory=list)
    artifact_path: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    artifact_sha256: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal


class JobStore(Protocol):
    """Narrow store interface used by the pipeline."""

    def get(self, job_id: str) -> Optional[Job]:
        ...

    def put(self, job: Job) -> Job:
        ...

    def update(self, job_id: str, **changes: Any) -> Optional[Job]:
        ...


def _check_transition(current: Job, changes: dict[str, Any]) -> None:
    """Enforce forward-only stages and the terminal result invariant."""
    new_stage = changes.get("stage", current.stage)
    if current.is_terminal and new_stage != current.stage:
        raise ValueError(f"Job {current.id} is already {current.stage.value}")

    if new_stage != current.stage and new_stage != JobStage.FAILED:
        if STAGE_ORDER.index(new_stage) < STAGE_ORDER.index(current.stage):
            raise ValueError(
                f"Illegal stage transition {current.stage.value} -> {new_stage.value}"
            )

    if new_stage == JobStage.COMPLETED and not changes.get("artifact_path", current.artifact_path):
        raise ValueError("Completed job requires an artifact")
    if new_stage == JobStage.FAILED and not changes.get("error", current.error):
        raise ValueError("Failed job requires an error message")


class InMemoryJobStore:
    """Mutex-guarded dict of jobs. Readers always receive copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}

    def create(
        self,
        base_url: str = "",
        routes: Optional[list[str]] = None,
        allowed_routes: Optional[list[str]] = None,
    ) -> Job:
        """Create and store a new queued job."""
        job = Job(
            id=str(uuid.uuid4()),
            base_url=base_url,
            routes=list(routes or []),
            allowed_routes=list(allowed_routes or []),
        )
        self.put(job)
        logger.info(f"job_created job_id={job.id} routes={len(job.routes)}")
        return copy.deepcopy(job)

    def put(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update(self, job_id: str, **changes: Any) -> Optional[Job]:
        """
        Apply field changes to a job.

        Progress never decreases while the job is running; stage changes must
        follow the pipeline order. Entering a terminal stage stamps
        completed_at and duration_ms.

        Raises:
            ValueError: Illegal stage transition or missing terminal result
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None

            _check_transition(job, changes)

            if "progress" in changes:
                progress = max(0, min(100, int(changes["progress"])))
                changes["progress"] = max(progress, job.progress)

            for name, value in changes.items():
                if not hasattr(job, name):
                    raise AttributeError(f"Job has no field {name!r}")
                setattr(job, name, value)

            now = datetime.now(timezone.utc)
            if job.started_at is None and job.stage not in (JobStage.QUEUED, JobStage.FAILED):
                job.started_at = now
            if job.is_terminal and job.completed_at is None:
                job.completed_at = now
                started = job.started_at or job.created_at
                job.duration_ms = int((now - started).total_seconds() * 1000)

            updated = copy.deepcopy(job)

        if "stage" in changes:
            logger.info(
                f"job_updated job_id={job_id} stage={updated.stage.value} "
                f"progress={updated.progress}",
                extra={"job_id": job_id, "stage": updated.stage.value},
            )
        return updated

    def delete(self, job_id: str) -> bool:
        """Delete a job by ID. Returns True if deleted, False if not found."""
        with self._lock:
            removed = self._jobs.pop(job_id, None)
        if removed is not None:
            logger.info(f"job_deleted job_id={job_id}")
            return True
        return False

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._jobs.values()]

    def count_active(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if not j.is_terminal)

    def purge_expired(self, retention_seconds: int) -> list[str]:
        """Drop terminal jobs finished more than retention_seconds ago. Returns their IDs."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=retention_seconds)
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info(f"cleanup_jobs deleted={len(expired)}")
        return expired
