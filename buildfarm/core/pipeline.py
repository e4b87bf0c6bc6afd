"""
Pipeline Orchestrator - drives one build job through its stages.

    queued -> extracting -> transforming -> installing -> building
           -> rendering -> packaging -> completed | failed

Each job owns a private staging directory that is removed exactly once,
whichever terminal stage is reached. The packaged artifact is copied into the
artifact store before staging is removed.

Abandoned client connections do not affect a job: jobs run as independent
tasks owned by PipelineRunner. A job is only aborted by an explicit cancel
or by worker shutdown; both kill the build process tree and close the browser.
"""
import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from buildfarm.core import process_supervisor
from buildfarm.core.archive_guard import ArchiveGuard, locate_project_root
from buildfarm.core.artifact_store import ArtifactError, ArtifactStore
from buildfarm.core.config import WorkerConfig
from buildfarm.core.download_auth import DownloadAuthorizer
from buildfarm.core.errors import ProjectNotFoundError, ToolError, ValidationError
from buildfarm.core.job_store import InMemoryJobStore, JobStore
from buildfarm.core.metrics import metrics
from buildfarm.core.render_farm import RenderFarm, RenderSettings
from buildfarm.core.source_transformer import NoopSourceTransformer, SourceTransformer
from buildfarm.schemas.jobs import JobStage, STAGE_PROGRESS

logger = logging.getLogger(__name__)

UPLOAD_FILENAME = "upload.zip"
SOURCE_DIRNAME = "src"

CANCELLED_MESSAGE = "cancelled"


@asynccontextmanager
async def staging_area(root: Path, job_id: str) -> AsyncIterator[Path]:
    """Private per-job directory, removed on exit no matter how the job ends."""
    path = Path(root) / job_id
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        # The thread completes even if this await is cancelled
        await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
        logger.info(f"staging_cleaned job_id={job_id}")


async def run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    """
    Run blocking work in a thread.

    Threads cannot be interrupted, so on cancellation this waits for the
    thread to finish before re-raising. Cleanup that follows never races a
    thread still writing into staging or the artifact store.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.gather(future, return_exceptions=True)
        raise


def find_output_dir(project_root: Path, candidates: tuple[str, ...]) -> Path:
    for name in candidates:
        candidate = project_root / name
        if candidate.is_dir():
            return candidate
    raise ToolError("Build completed but no output directory found")


class PipelineOrchestrator:
    """Runs build jobs stage by stage, recording progress in the job store."""

    def __init__(
        self,
        config: WorkerConfig,
        store: JobStore,
        artifacts: ArtifactStore,
        authorizer: DownloadAuthorizer,
        render_farm: Optional[RenderFarm] = None,
        transformer: Optional[SourceTransformer] = None,
    ):
        self.config = config
        self.store = store
        self.artifacts = artifacts
        self.authorizer = authorizer
        self.guard = ArchiveGuard(
            max_files=config.max_files,
            max_uncompressed_bytes=config.max_uncompressed_bytes,
            max_archive_bytes=config.max_archive_bytes,
        )
        self.render_farm = render_farm or RenderFarm(RenderSettings(
            page_timeout_ms=config.render_page_timeout_ms,
            ready_timeout_ms=config.render_ready_timeout_ms,
            grace_ms=config.render_grace_ms,
            ready_selector=config.render_ready_selector,
            min_html_bytes=config.render_min_html_bytes,
        ))
        self.transformer = transformer or NoopSourceTransformer()
        self._slots: Optional[asyncio.Semaphore] = None

    def upload_path(self, job_id: str) -> Path:
        """Where the admission handler stores the uploaded archive."""
        return self.config.staging_dir / job_id / UPLOAD_FILENAME

    @asynccontextmanager
    async def _job_slot(self) -> AsyncIterator[None]:
        if self.config.max_concurrent_jobs <= 0:
            yield
            return
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.config.max_concurrent_jobs)
        async with self._slots:
            yield

    def _enter(self, job_id: str, stage: JobStage) -> None:
        self.store.update(job_id, stage=stage, progress=STAGE_PROGRESS[stage])

    def _fail(self, job_id: str, message: str) -> None:
        self.artifacts.delete_artifact(job_id)
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return
        self.store.update(job_id, stage=JobStage.FAILED, error=message)

    async def run(self, job_id: str) -> None:
        """Run a job to a terminal stage. Never raises except on cancellation."""
        job = self.store.get(job_id)
        if job is None:
            logger.error(f"pipeline_job_not_found job_id={job_id}")
            return

        try:
            async with staging_area(self.config.staging_dir, job_id) as staging:
                async with self._job_slot():
                    await self._execute(job_id, staging)
        except asyncio.CancelledError:
            logger.warning(f"pipeline_cancelled job_id={job_id}")
            self._fail(job_id, CANCELLED_MESSAGE)
            metrics.inc("jobs_cancelled_total")
            raise
        except (ValidationError, ToolError, ArtifactError) as e:
            logger.error(f"pipeline_failed job_id={job_id} error_type={type(e).__name__}")
            self._fail(job_id, str(e))
            metrics.inc("jobs_failed_total")
        except Exception as e:
            logger.exception(f"pipeline_error job_id={job_id}")
            self._fail(job_id, f"Unexpected error: {type(e).__name__}")
            metrics.inc("jobs_failed_total")

    async def _execute(self, job_id: str, staging: Path) -> None:
        config = self.config
        job = self.store.get(job_id)

        # Extract
        self._enter(job_id, JobStage.EXTRACTING)
        upload = staging / UPLOAD_FILENAME
        if not upload.is_file():
            raise ValidationError("Uploaded archive not found")
        scan = await run_blocking(self.guard.scan, upload)
        logger.info(
            f"archive_scanned job_id={job_id} files={scan.file_count} "
            f"bytes={scan.total_uncompressed_bytes}"
        )
        source = staging / SOURCE_DIRNAME
        await run_blocking(self.guard.extract, upload, source)
        upload.unlink()

        project_root = await run_blocking(locate_project_root, source, config.manifest_name)
        if project_root is None:
            raise ProjectNotFoundError(f"No {config.manifest_name} found in uploaded source")
        logger.info(f"project_root job_id={job_id} path={project_root.relative_to(staging)}")

        # Transform
        self._enter(job_id, JobStage.TRANSFORMING)
        applied = await self._transform(job_id, project_root, job.allowed_routes)
        self.store.update(job_id, transform_applied=applied)

        # Install + build
        env = process_supervisor.build_env(config.node_max_old_space_mb)
        self._enter(job_id, JobStage.INSTALLING)
        await process_supervisor.run(
            config.install_command, project_root, config.process_timeout_s, env=env, job_id=job_id
        )

        self._enter(job_id, JobStage.BUILDING)
        await process_supervisor.run(
            config.build_command, project_root, config.process_timeout_s, env=env, job_id=job_id
        )
        output_dir = find_output_dir(project_root, config.output_dir_candidates)

        # Render
        self._enter(job_id, JobStage.RENDERING)
        summary = await self.render_farm.render_all(
            output_dir, job.routes, config.render_concurrency, job_id=job_id
        )
        self.store.update(
            job_id,
            rendered_routes=sorted(summary.rendered),
            failed_routes=[{"route": f.route, "reason": f.reason} for f in summary.failed],
        )
        metrics.inc("routes_rendered_total", len(summary.rendered))
        metrics.inc("routes_failed_total", len(summary.failed))

        # Package
        self._enter(job_id, JobStage.PACKAGING)
        info = await run_blocking(self.artifacts.package_directory, job_id, output_dir)
        token = self.authorizer.issue(job_id, config.token_ttl_s)
        self.store.update(
            job_id,
            stage=JobStage.COMPLETED,
            progress=STAGE_PROGRESS[JobStage.COMPLETED],
            artifact_path=str(info.path),
            artifact_size_bytes=info.size_bytes,
            artifact_sha256=info.sha256,
            download_url=f"{job.base_url}/download/{job_id}?token={token}",
        )
        metrics.inc("jobs_completed_total")
        logger.info(
            f"pipeline_completed job_id={job_id} size={info.size_bytes} "
            f"failed_routes={len(summary.failed)}"
        )

    async def _transform(self, job_id: str, project_root: Path, allowed_routes: list[str]) -> bool:
        if not allowed_routes:
            return False
        try:
            applied = await run_blocking(self.transformer.transform, project_root, allowed_routes)
        except Exception as e:
            logger.warning(f"source_transform_failed job_id={job_id} error_type={type(e).__name__}")
            return False
        if not applied:
            logger.warning(f"source_transform_not_applied job_id={job_id}")
        return bool(applied)


class PipelineRunner:
    """Owns the asyncio task of every running job."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.orchestrator.run(job_id), name=f"build-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        metrics.inc("jobs_admitted_total")
        return task

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def cancel(self, job_id: str) -> bool:
        """Cancel a running job and wait for its cleanup. False if not running."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.warning(f"pipeline_shutdown cancelled={len(tasks)}")
            await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class BuildWorker:
    """Everything the HTTP layer needs, wired from one config."""
    config: WorkerConfig
    store: InMemoryJobStore
    artifacts: ArtifactStore
    authorizer: DownloadAuthorizer
    orchestrator: PipelineOrchestrator
    runner: PipelineRunner

    def run_cleanup(self) -> None:
        """Expire unredeemed artifacts and finished jobs. Safe to call repeatedly."""
        retention = self.config.artifact_retention_s
        self.artifacts.cleanup_expired(retention)
        for job_id in self.store.purge_expired(retention):
            self.artifacts.delete_artifact(job_id)


def create_worker(
    config: WorkerConfig,
    render_farm: Optional[RenderFarm] = None,
    transformer: Optional[SourceTransformer] = None,
) -> BuildWorker:
    config.staging_dir.mkdir(parents=True, exist_ok=True)
    store = InMemoryJobStore()
    artifacts = ArtifactStore(config.artifacts_dir)
    authorizer = DownloadAuthorizer(config.token_secret, api_key=config.api_key)
    orchestrator = PipelineOrchestrator(
        config,
        store,
        artifacts,
        authorizer,
        render_farm=render_farm,
        transformer=transformer,
    )
    return BuildWorker(
        config=config,
        store=store,
        artifacts=artifacts,
        authorizer=authorizer,
        orchestrator=orchestrator,
        runner=PipelineRunner(orchestrator),
    )
