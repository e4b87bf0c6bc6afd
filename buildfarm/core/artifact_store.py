"""
Artifact storage for packaged build output.
Manages creation, retrieval, single-use deletion and expiry of dist ZIPs.

Artifacts live outside the per-job staging area so the staging tree can be
removed as soon as packaging finishes.
"""
import hashlib
import logging
import os
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DOWNLOAD_FILENAME = "dist.zip"

HASH_CHUNK_BYTES = 1024 * 1024


@dataclass
class ArtifactInfo:
    """Information about a stored artifact."""
    job_id: str
    path: Path
    size_bytes: int
    sha256: str
    file_count: int
    created_at: datetime


class ArtifactError(Exception):
    """Error during artifact operations."""
    pass


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore:
    """Manages artifact storage and retrieval."""

    def __init__(self, artifacts_dir: Path):
        self._artifacts_dir = Path(artifacts_dir)
        self._artifacts_dir.mkdir(parents=True, exist_ok=True)

    @property
    def artifacts_dir(self) -> Path:
        return self._artifacts_dir

    def path_for(self, job_id: str) -> Path:
        return self._artifacts_dir / f"{job_id}.zip"

    def package_directory(self, job_id: str, source_dir: Path) -> ArtifactInfo:
        """
        ZIP the contents of source_dir (paths relative to it) into the store.

        Raises:
            ArtifactError: source_dir is missing or empty
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ArtifactError(f"Output directory not found: {source_dir.name}")

        target = self.path_for(job_id)
        partial = target.with_suffix(".zip.part")
        file_count = 0

        try:
            with zipfile.ZipFile(partial, "w", zipfile.ZIP_DEFLATED) as zf:
                for dirpath, dirnames, filenames in os.walk(source_dir):
                    dirnames.sort()
                    for filename in sorted(filenames):
                        full = Path(dirpath) / filename
                        if full.is_symlink():
                            continue
                        zf.write(full, full.relative_to(source_dir).as_posix())
                        file_count += 1
            if file_count == 0:
                raise ArtifactError("Build output is empty")
            os.replace(partial, target)
        finally:
            if partial.exists():
                partial.unlink()

        info = ArtifactInfo(
            job_id=job_id,
            path=target,
            size_bytes=target.stat().st_size,
            sha256=_sha256_file(target),
            file_count=file_count,
            created_at=datetime.now(timezone.utc),
        )
        logger.info(f"artifact_created job_id={job_id} size={info.size_bytes} files={file_count}")
        return info

    def get_artifact(self, job_id: str) -> Optional[Path]:
        """Path of the job's artifact, or None if absent."""
        path = self.path_for(job_id)
        return path if path.is_file() else None

    def delete_artifact(self, job_id: str) -> bool:
        """Delete artifact for a job. Returns True if deleted."""
        path = self.path_for(job_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"artifact_deleted job_id={job_id}")
        return True

    def verify_artifact(self, job_id: str, expected_sha256: str) -> bool:
        """Verify artifact integrity using SHA256."""
        path = self.get_artifact(job_id)
        if path is None:
            return False
        return _sha256_file(path) == expected_sha256

    def cleanup_expired(self, retention_seconds: int) -> int:
        """Delete artifacts older than the retention period. Returns count deleted."""
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=retention_seconds)
            deleted = 0
            for item in self._artifacts_dir.iterdir():
                if item.is_file() and item.name.endswith((".zip", ".zip.part")):
                    mtime = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
                    if mtime < cutoff:
                        item.unlink()
                        deleted += 1
            if deleted > 0:
                logger.info(f"cleanup_artifacts deleted={deleted}")
            return deleted
        except OSError as e:
            logger.warning(f"cleanup_artifacts_failed error_type={type(e).__name__}")
            return 0
