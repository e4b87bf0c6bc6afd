"""
Worker configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"

DEFAULT_INSTALL_COMMAND = "npm install --legacy-peer-deps --include=dev"
DEFAULT_BUILD_COMMAND = "npm run build"


@dataclass(frozen=True)
class WorkerConfig:
    """Build worker configuration (immutable)."""
    api_key: Optional[str] = None  # Never logged
    token_secret: str = "dev-token-secret-change-in-prod"  # Never logged
    public_base_url: str = ""
    data_dir: Path = DEFAULT_DATA_DIR

    # Archive limits
    max_archive_bytes: int = 100 * 1024 * 1024
    max_files: int = 20_000
    max_uncompressed_bytes: int = 500 * 1024 * 1024

    # External build tool
    process_timeout_s: int = 600
    install_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_INSTALL_COMMAND))
    build_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_BUILD_COMMAND))
    node_max_old_space_mb: int = 2048
    manifest_name: str = "package.json"
    output_dir_candidates: tuple[str, ...] = ("dist", "build", "out")

    # Render farm
    render_concurrency: int = 4
    render_page_timeout_ms: int = 30_000
    render_ready_timeout_ms: int = 10_000
    render_grace_ms: int = 2_000
    render_ready_selector: str = "#root"
    render_min_html_bytes: int = 256
    max_routes: int = 20

    # Jobs and artifacts
    token_ttl_s: int = 3600
    max_concurrent_jobs: int = 0  # 0 = unbounded
    artifact_retention_s: int = 24 * 3600

    log_level: str = "INFO"

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / "staging"

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer env var, falling back to the default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _command_env(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip() or default
    return tuple(shlex.split(raw))


def get_worker_config() -> WorkerConfig:
    """Load worker configuration from environment."""
    data_dir = os.getenv("BUILD_DATA_DIR")

    return WorkerConfig(
        api_key=os.getenv("BUILD_API_KEY") or None,
        token_secret=os.getenv("DOWNLOAD_TOKEN_SECRET", "dev-token-secret-change-in-prod"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
        data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
        max_archive_bytes=_int_env("MAX_ARCHIVE_BYTES", 100 * 1024 * 1024, minimum=1),
        max_files=_int_env("MAX_FILES", 20_000, minimum=1),
        max_uncompressed_bytes=_int_env("MAX_UNCOMPRESSED_BYTES", 500 * 1024 * 1024, minimum=1),
        process_timeout_s=_int_env("PROCESS_TIMEOUT_S", 600, minimum=1),
        install_command=_command_env("INSTALL_COMMAND", DEFAULT_INSTALL_COMMAND),
        build_command=_command_env("BUILD_COMMAND", DEFAULT_BUILD_COMMAND),
        node_max_old_space_mb=_int_env("NODE_MAX_OLD_SPACE_MB", 2048, minimum=128),
        render_concurrency=_int_env("RENDER_CONCURRENCY", 4, minimum=1),
        render_page_timeout_ms=_int_env("RENDER_PAGE_TIMEOUT_MS", 30_000, minimum=1),
        render_ready_timeout_ms=_int_env("RENDER_READY_TIMEOUT_MS", 10_000, minimum=1),
        render_grace_ms=_int_env("RENDER_GRACE_MS", 2_000),
        render_ready_selector=os.getenv("RENDER_READY_SELECTOR", "#root"),
        render_min_html_bytes=_int_env("RENDER_MIN_HTML_BYTES", 256),
        max_routes=_int_env("MAX_ROUTES", 20, minimum=1),
        token_ttl_s=_int_env("TOKEN_TTL_S", 3600, minimum=1),
        max_concurrent_jobs=_int_env("MAX_CONCURRENT_JOBS", 0),
        artifact_retention_s=_int_env("ARTIFACT_RETENTION_S", 24 * 3600, minimum=1),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
