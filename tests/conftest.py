"""
Pytest configuration and fixtures.
"""
import io
import os
import sys
import tempfile
import zipfile
from pathlib import Path

# Set test credentials before importing app
os.environ["BUILD_API_KEY"] = "test-api-key"
os.environ["DOWNLOAD_TOKEN_SECRET"] = "test-token-secret"
os.environ["BUILD_DATA_DIR"] = tempfile.mkdtemp(prefix="buildfarm-tests-")

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from buildfarm.core.config import WorkerConfig
from buildfarm.core.render_farm import RenderFailure, RenderSummary

SHELL_HTML = '<!doctype html><html><head><title>app</title></head><body><div id="root"></div></body></html>'


def make_zip(files: dict) -> bytes:
    """Build an in-memory ZIP from {name: content}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def project_zip(prefix: str = "") -> bytes:
    """A minimal front-end project upload."""
    return make_zip({
        f"{prefix}package.json": '{"name": "site", "scripts": {"build": "vite build"}}',
        f"{prefix}src/main.jsx": "console.log('hello')",
    })


class FakeRenderFarm:
    """Stands in for the Chromium render farm; records its calls."""

    def __init__(self, failed: tuple = ()):
        self.calls = []
        self.failed = failed

    async def render_all(self, build_dir, routes, concurrency, job_id=None):
        self.calls.append((Path(build_dir), list(routes), concurrency))
        summary = RenderSummary()
        for route in routes:
            if route in self.failed:
                summary.failed.append(RenderFailure(route=route, reason="Render timed out"))
            else:
                summary.rendered.append(route)
        return summary


def fake_build_tool(config: WorkerConfig):
    """Side effect for a patched process_supervisor.run that emits dist/index.html."""

    async def run(command, cwd, timeout, env=None, job_id=None):
        if tuple(command) == tuple(config.build_command):
            dist = Path(cwd) / "dist"
            dist.mkdir(exist_ok=True)
            (dist / "index.html").write_text(SHELL_HTML)
            (dist / "assets").mkdir(exist_ok=True)
            (dist / "assets" / "app.js").write_text("console.log('built')")
        return None

    return run


@pytest.fixture
def worker_config(tmp_path):
    """Isolated worker configuration rooted in a temp directory."""
    return WorkerConfig(
        api_key="test-api-key",
        token_secret="test-token-secret",
        data_dir=tmp_path / "data",
        process_timeout_s=30,
        render_concurrency=2,
    )


@pytest.fixture
def client():
    """Create a test client."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    """Return valid authentication headers."""
    return {"X-API-Key": "test-api-key"}


@pytest.fixture
def invalid_auth_headers():
    """Return invalid authentication headers."""
    return {"X-API-Key": "invalid-key"}
