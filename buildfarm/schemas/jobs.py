"""
Pydantic schemas for build job API requests and responses.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field


class JobStage(str, Enum):
    """Build job stage. Stages only ever move forward."""
    QUEUED = "queued"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    INSTALLING = "installing"
    BUILDING = "building"
    RENDERING = "rendering"
    PACKAGING = "packaging"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETED, JobStage.FAILED)


# Progress reported on entering each stage
STAGE_PROGRESS = {
    JobStage.QUEUED: 0,
    JobStage.EXTRACTING: 5,
    JobStage.TRANSFORMING: 10,
    JobStage.INSTALLING: 15,
    JobStage.BUILDING: 40,
    JobStage.RENDERING: 70,
    JobStage.PACKAGING: 90,
    JobStage.COMPLETED: 100,
}

# Linear pipeline order (FAILED is reachable from any non-terminal stage)
STAGE_ORDER = [
    JobStage.QUEUED,
    JobStage.EXTRACTING,
    JobStage.TRANSFORMING,
    JobStage.INSTALLING,
    JobStage.BUILDING,
    JobStage.RENDERING,
    JobStage.PACKAGING,
    JobStage.COMPLETED,
]


class FailedRoute(BaseModel):
    """A route that fell back to the SPA shell."""
    route: str
    reason: str


class BuildAcceptedResponse(BaseModel):
    """Response for POST /build."""
    job_id: str = Field(..., description="Job identifier for polling")
    status: JobStage = Field(default=JobStage.QUEUED)
    status_url: str
    download_url: str
    message: str = "Build job queued"


class JobStatusResponse(BaseModel):
    """Status record returned to pollers."""
    id: str
    stage: JobStage
    progress: int = Field(..., ge=0, le=100)
    error: Optional[str] = None
    download_url: Optional[str] = None
    routes: List[str] = Field(default_factory=list)
    rendered_routes: List[str] = Field(default_factory=list)
    failed_routes: List[FailedRoute] = Field(default_factory=list)
    transform_applied: Optional[bool] = None
    artifact_size_bytes: Optional[int] = None
    artifact_sha256: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class JobDeletedResponse(BaseModel):
    """Response for DELETE /jobs/{job_id}."""
    id: str
    cancelled: bool
    deleted: bool
    message: str
