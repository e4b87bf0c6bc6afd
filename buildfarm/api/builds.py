"""
Build API routes.
Accepts a zipped front-end project, runs it through the build pipeline and
hands out the packaged result exactly once.

Endpoints:
- POST /build - Upload a project ZIP and start a build job
- GET /jobs/{job_id} - Job status record (alias: /build/jobs/{job_id})
- GET /download/{job_id} - Download dist.zip (alias: /build/download/{job_id})
- DELETE /jobs/{job_id} - Cancel a running job or delete a finished one
"""
import json
import logging
import shutil
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from buildfarm.core.errors import AuthError, TooLargeError
from buildfarm.core.job_store import Job
from buildfarm.core.metrics import metrics
from buildfarm.core.pipeline import BuildWorker
from buildfarm.core.render_farm import prepare_routes
from buildfarm.core.security import extract_api_key
from buildfarm.core.artifact_store import DOWNLOAD_FILENAME
from buildfarm.schemas.jobs import (
    BuildAcceptedResponse,
    JobDeletedResponse,
    JobStage,
    JobStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["builds"])

UPLOAD_CHUNK_SIZE = 1024 * 1024


def get_worker(request: Request) -> BuildWorker:
    return request.app.state.worker


def get_base_url(request: Request) -> str:
    """
    Get the base URL for building absolute URLs.

    Priority:
    1. PUBLIC_BASE_URL environment variable (if set)
    2. Forwarded / Host headers of the request
    """
    public_base_url = get_worker(request).config.public_base_url
    if public_base_url:
        return public_base_url
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
    if host:
        return f"{scheme}://{host}"
    return str(request.base_url).rstrip("/")


def parse_route_list(raw: Optional[str], field_name: str) -> list[str]:
    """Parse a JSON list of route strings from a form field."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail=f"{field_name} must be valid JSON")

    if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
        raise HTTPException(status_code=400, detail=f"{field_name} must be a JSON list of strings")

    try:
        return prepare_routes(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def job_to_response(job: Job) -> JobStatusResponse:
    return JobStatusResponse(
        id=job.id,
        stage=job.stage,
        progress=job.progress,
        error=job.error,
        download_url=job.download_url,
        routes=job.routes,
        rendered_routes=job.rendered_routes,
        failed_routes=job.failed_routes,
        transform_applied=job.transform_applied,
        artifact_size_bytes=job.artifact_size_bytes,
        artifact_sha256=job.artifact_sha256,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        duration_ms=job.duration_ms,
    )


async def save_upload(worker: BuildWorker, job_id: str, archive: UploadFile) -> int:
    """
    Stream the uploaded archive into the job's staging directory.

    Raises:
        TooLargeError: Upload exceeds the archive size ceiling
    """
    guard = worker.orchestrator.guard
    target = worker.orchestrator.upload_path(job_id)
    target.parent.mkdir(parents=True, exist_ok=True)

    written = 0
    with open(target, "wb") as f:
        while True:
            chunk = await archive.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            guard.check_upload_size(written)
            f.write(chunk)
    return written


@router.post("/build", response_model=BuildAcceptedResponse, status_code=202)
async def create_build(
    request: Request,
    archive: UploadFile = File(..., alias="zip"),
    routes: Optional[str] = Form(default=None),
    selected_routes: Optional[str] = Form(default=None, alias="selectedRoutes"),
    inject_route_guard: bool = Form(default=False, alias="injectRouteGuard"),
) -> BuildAcceptedResponse:
    """
    Start a build job.

    The job runs in the background; poll status_url until the stage is
    "completed" or "failed", then fetch the download_url from the status
    record (it carries a signed, time-limited token).
    """
    worker = get_worker(request)
    worker.run_cleanup()

    render_routes = parse_route_list(routes, "routes")
    allowed_routes = parse_route_list(selected_routes, "selectedRoutes")
    if len(render_routes) > worker.config.max_routes:
        raise HTTPException(
            status_code=400,
            detail=f"Too many routes: {len(render_routes)} (max {worker.config.max_routes})"
        )

    base_url = get_base_url(request)
    job = worker.store.create(
        base_url=base_url,
        routes=render_routes,
        allowed_routes=allowed_routes,
    )

    try:
        size = await save_upload(worker, job.id, archive)
    except Exception as e:
        worker.store.delete(job.id)
        shutil.rmtree(worker.config.staging_dir / job.id, ignore_errors=True)
        if isinstance(e, TooLargeError):
            raise HTTPException(status_code=413, detail=str(e))
        raise
    finally:
        await archive.close()

    logger.info(
        f"build_admitted job_id={job.id} bytes={size} routes={len(render_routes)} "
        f"allowed_routes={len(allowed_routes)} route_guard={inject_route_guard}",
        extra={"job_id": job.id},
    )
    worker.runner.start(job.id)

    return BuildAcceptedResponse(
        job_id=job.id,
        status=JobStage.QUEUED,
        status_url=f"{base_url}/jobs/{job.id}",
        download_url=f"{base_url}/download/{job.id}",
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
@router.get("/build/jobs/{job_id}", response_model=JobStatusResponse, include_in_schema=False)
async def get_job(job_id: str, request: Request) -> JobStatusResponse:
    """Get the status record of a build job."""
    job = get_worker(request).store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_to_response(job)


def _redeem(worker: BuildWorker, job_id: str) -> None:
    worker.artifacts.delete_artifact(job_id)
    metrics.inc("artifacts_downloaded_total")
    logger.info(f"artifact_redeemed job_id={job_id}", extra={"job_id": job_id})


@router.get("/download/{job_id}")
@router.get("/build/download/{job_id}", include_in_schema=False)
async def download_artifact(
    job_id: str,
    request: Request,
    token: Optional[str] = Query(default=None),
) -> FileResponse:
    """
    Download the packaged build output as dist.zip.

    Accepts the API key or the signed token from the job's download_url.
    The artifact can be downloaded once; the job is forgotten afterwards.
    """
    worker = get_worker(request)
    if not worker.authorizer.authorize(job_id, api_key=extract_api_key(request), token=token):
        raise AuthError("Invalid or expired download token")

    job = worker.store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Build artifact not found")

    if job.stage != JobStage.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail=f"Job not completed. Current stage: {job.stage.value}"
        )

    path = worker.artifacts.get_artifact(job_id)
    if not path:
        raise HTTPException(status_code=404, detail="Build artifact not found")

    if job.artifact_sha256 and not worker.artifacts.verify_artifact(job_id, job.artifact_sha256):
        raise HTTPException(status_code=500, detail="Artifact integrity check failed")

    # Removing the job claims the artifact; a concurrent second request gets 404
    if not worker.store.delete(job_id):
        raise HTTPException(status_code=404, detail="Build artifact not found")

    return FileResponse(
        path,
        media_type="application/zip",
        filename=DOWNLOAD_FILENAME,
        headers={"X-Artifact-SHA256": job.artifact_sha256 or ""},
        background=BackgroundTask(_redeem, worker, job_id),
    )


@router.delete("/jobs/{job_id}", response_model=JobDeletedResponse)
async def delete_job(job_id: str, request: Request) -> JobDeletedResponse:
    """Cancel a running job, then delete its record and any artifact."""
    worker = get_worker(request)
    if not worker.store.get(job_id):
        raise HTTPException(status_code=404, detail="Job not found")

    cancelled = await worker.runner.cancel(job_id)
    deleted = worker.store.delete(job_id)
    worker.artifacts.delete_artifact(job_id)

    return JobDeletedResponse(
        id=job_id,
        cancelled=cancelled,
        deleted=deleted,
        message="Job cancelled" if cancelled else "Job deleted",
    )
