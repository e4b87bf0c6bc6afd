"""
API endpoint tests.
"""
import asyncio
import io
import time
import zipfile
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from main import create_app
from conftest import FakeRenderFarm, fake_build_tool, make_zip, project_zip


@pytest.fixture
def build_app(worker_config):
    """App around an isolated worker with fake build tool and renderer."""
    return create_app(config=worker_config, render_farm=FakeRenderFarm())


@pytest.fixture
def api(build_app, worker_config):
    with patch(
        "buildfarm.core.process_supervisor.run",
        new=AsyncMock(side_effect=fake_build_tool(worker_config)),
    ):
        with TestClient(build_app) as c:
            yield c


def submit(client, headers, data=None, **form):
    files = {"zip": ("project.zip", data if data is not None else project_zip(), "application/zip")}
    return client.post("/build", files=files, data=form, headers=headers)


def wait_for_terminal(client, headers, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/jobs/{job_id}", headers=headers).json()
        if job["stage"] in ("completed", "failed"):
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_returns_ok(self, client):
        """Health endpoint should return ok status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["max_routes"] == 20
        assert data["active_jobs"] == 0

    def test_meta_is_public_without_secrets(self, client):
        response = client.get("/meta")
        assert response.status_code == 200
        assert "test-api-key" not in response.text
        assert "test-token-secret" not in response.text
        assert response.json()["limits"]["max_routes"] == 20

    def test_request_id_header(self, client):
        assert client.get("/health").headers["X-Request-Id"]


class TestAuthentication:
    """Tests for API key authentication."""

    def test_missing_api_key_returns_401(self, client):
        response = client.get("/jobs/unknown")
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing API key"

    def test_invalid_api_key_returns_401(self, client, invalid_auth_headers):
        response = client.get("/jobs/unknown", headers=invalid_auth_headers)
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_bearer_token_accepted(self, client):
        response = client.get("/jobs/unknown", headers={"Authorization": "Bearer test-api-key"})
        assert response.status_code == 404

    def test_build_requires_auth(self, client):
        response = client.post("/build", files={"zip": ("p.zip", project_zip(), "application/zip")})
        assert response.status_code == 401

    def test_download_without_credentials(self, client):
        response = client.get("/download/unknown")
        assert response.status_code == 401


class TestMetricsEndpoint:
    """Tests for metrics endpoint."""

    def test_metrics_requires_auth(self, client):
        assert client.get("/metrics").status_code == 401

    def test_metrics_returns_prometheus_format(self, client, auth_headers):
        response = client.get("/metrics", headers=auth_headers)
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "buildfarm_requests_total" in response.text
        assert "buildfarm_jobs_admitted_total" in response.text


class TestBuildValidation:

    def test_malformed_routes_json(self, api, auth_headers):
        response = submit(api, auth_headers, routes="[not json")
        assert response.status_code == 400

    def test_routes_must_be_strings(self, api, auth_headers):
        response = submit(api, auth_headers, routes="[1, 2]")
        assert response.status_code == 400

    def test_invalid_route(self, api, auth_headers):
        response = submit(api, auth_headers, routes='["/../etc"]')
        assert response.status_code == 400

    def test_too_many_routes(self, api, auth_headers):
        routes = "[" + ",".join(f'"/page-{i}"' for i in range(21)) + "]"
        response = submit(api, auth_headers, routes=routes)
        assert response.status_code == 400
        assert "Too many routes" in response.json()["detail"]

    def test_missing_zip(self, api, auth_headers):
        response = api.post("/build", data={"routes": "[]"}, headers=auth_headers)
        assert response.status_code == 422

    def test_oversize_upload(self, worker_config, auth_headers):
        config = replace(worker_config, max_archive_bytes=64)
        app = create_app(config=config, render_farm=FakeRenderFarm())
        with TestClient(app) as client:
            response = submit(client, auth_headers, data=b"x" * 1024)
            assert response.status_code == 413
            assert app.state.worker.store.list_jobs() == []
        assert list(config.staging_dir.iterdir()) == []


class TestBuildFlow:

    def test_build_accepted(self, api, auth_headers):
        response = submit(api, auth_headers, routes='["/", "/about"]')
        assert response.status_code == 202
        data = response.json()
        job_id = data["job_id"]
        assert data["status"] == "queued"
        assert data["status_url"].endswith(f"/jobs/{job_id}")
        assert data["download_url"].endswith(f"/download/{job_id}")

    def test_status_and_download(self, api, auth_headers):
        job_id = submit(api, auth_headers, routes='["/about", "/"]').json()["job_id"]
        job = wait_for_terminal(api, auth_headers, job_id)

        assert job["stage"] == "completed", job["error"]
        assert job["progress"] == 100
        assert job["rendered_routes"] == ["/", "/about"]
        assert "token=" in job["download_url"]

        # Token alone authorizes the download
        path = job["download_url"].split("://", 1)[1].split("/", 1)[1]
        response = api.get(f"/{path}")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert 'filename="dist.zip"' in response.headers["content-disposition"]
        assert response.headers["X-Artifact-SHA256"] == job["artifact_sha256"]
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert "index.html" in zf.namelist()

        # Single redemption
        assert api.get(f"/{path}").status_code == 404
        assert api.get(f"/jobs/{job_id}", headers=auth_headers).status_code == 404

    def test_compat_routes(self, api, auth_headers):
        job_id = submit(api, auth_headers).json()["job_id"]
        wait_for_terminal(api, auth_headers, job_id)

        assert api.get(f"/build/jobs/{job_id}", headers=auth_headers).json()["id"] == job_id
        response = api.get(f"/build/download/{job_id}", headers=auth_headers)
        assert response.status_code == 200

    def test_wrong_token_rejected(self, api, auth_headers):
        job_id = submit(api, auth_headers).json()["job_id"]
        wait_for_terminal(api, auth_headers, job_id)
        response = api.get(f"/download/{job_id}", params={"token": f"{job_id}.9999999999.deadbeef"})
        assert response.status_code == 401

    def test_failed_build_reports_error(self, api, auth_headers):
        job_id = submit(api, auth_headers, data=make_zip({"readme.md": "no manifest"})).json()["job_id"]
        job = wait_for_terminal(api, auth_headers, job_id)
        assert job["stage"] == "failed"
        assert "package.json" in job["error"]
        assert job["download_url"] is None

        response = api.get(f"/download/{job_id}", headers=auth_headers)
        assert response.status_code == 409

    def test_public_base_url(self, worker_config, auth_headers):
        config = replace(worker_config, public_base_url="https://builds.example.com")
        with patch("buildfarm.core.process_supervisor.run", new=AsyncMock(side_effect=fake_build_tool(config))):
            with TestClient(create_app(config=config, render_farm=FakeRenderFarm())) as client:
                data = submit(client, auth_headers).json()
                assert data["status_url"] == f"https://builds.example.com/jobs/{data['job_id']}"
                job = wait_for_terminal(client, auth_headers, data["job_id"])
        assert job["download_url"].startswith("https://builds.example.com/download/")


class TestCancel:

    def test_cancel_running_job(self, worker_config, auth_headers):
        async def hang(*args, **kwargs):
            await asyncio.sleep(3600)

        app = create_app(config=worker_config, render_farm=FakeRenderFarm())
        with patch("buildfarm.core.process_supervisor.run", new=AsyncMock(side_effect=hang)):
            with TestClient(app) as client:
                job_id = submit(client, auth_headers).json()["job_id"]

                deadline = time.monotonic() + 5
                while client.get(f"/jobs/{job_id}", headers=auth_headers).json()["stage"] != "installing":
                    assert time.monotonic() < deadline
                    time.sleep(0.02)

                assert client.get(f"/download/{job_id}", headers=auth_headers).status_code == 409
                assert client.get("/health").json()["active_jobs"] == 1

                response = client.delete(f"/jobs/{job_id}", headers=auth_headers)
                assert response.status_code == 200
                assert response.json()["cancelled"] is True
                assert response.json()["deleted"] is True
                assert client.get(f"/jobs/{job_id}", headers=auth_headers).status_code == 404

        assert not (worker_config.staging_dir / job_id).exists()

    def test_delete_unknown_job(self, api, auth_headers):
        assert api.delete("/jobs/missing", headers=auth_headers).status_code == 404
