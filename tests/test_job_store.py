"""
Tests for the in-memory job store.
"""
from datetime import datetime, timedelta, timezone

import pytest

from buildfarm.core.job_store import InMemoryJobStore
from buildfarm.schemas.jobs import JobStage


@pytest.fixture
def store():
    return InMemoryJobStore()


class TestJobLifecycle:

    def test_create_queued(self, store):
        job = store.create(base_url="http://worker", routes=["/"], allowed_routes=["/about"])
        assert job.stage == JobStage.QUEUED
        assert job.progress == 0
        assert store.get(job.id).routes == ["/"]
        assert store.get(job.id).allowed_routes == ["/about"]

    def test_unknown_job(self, store):
        assert store.get("missing") is None
        assert store.update("missing", progress=5) is None

    def test_get_returns_copy(self, store):
        job = store.create()
        copy = store.get(job.id)
        copy.routes.append("/mutated")
        assert store.get(job.id).routes == []

    def test_progress_is_monotonic(self, store):
        job = store.create()
        store.update(job.id, stage=JobStage.BUILDING, progress=40)
        assert store.update(job.id, progress=10).progress == 40

    def test_progress_clamped(self, store):
        job = store.create()
        store.update(job.id, stage=JobStage.EXTRACTING)
        assert store.update(job.id, progress=250).progress == 100

    def test_backward_stage_rejected(self, store):
        job = store.create()
        store.update(job.id, stage=JobStage.BUILDING)
        with pytest.raises(ValueError):
            store.update(job.id, stage=JobStage.EXTRACTING)

    def test_started_at_stamped(self, store):
        job = store.create()
        assert store.get(job.id).started_at is None
        assert store.update(job.id, stage=JobStage.EXTRACTING).started_at is not None

    def test_completed_requires_artifact(self, store):
        job = store.create()
        with pytest.raises(ValueError):
            store.update(job.id, stage=JobStage.COMPLETED)

    def test_failed_requires_error(self, store):
        job = store.create()
        with pytest.raises(ValueError):
            store.update(job.id, stage=JobStage.FAILED)

    def test_terminal_is_final(self, store):
        job = store.create()
        store.update(job.id, stage=JobStage.INSTALLING)
        failed = store.update(job.id, stage=JobStage.FAILED, error="boom")
        assert failed.completed_at is not None
        assert failed.duration_ms is not None
        with pytest.raises(ValueError):
            store.update(job.id, stage=JobStage.RENDERING)

    def test_completed_job(self, store):
        job = store.create()
        store.update(job.id, stage=JobStage.PACKAGING, progress=90)
        done = store.update(job.id, stage=JobStage.COMPLETED, progress=100, artifact_path="/tmp/x.zip")
        assert done.is_terminal
        assert done.progress == 100

    def test_unknown_field(self, store):
        job = store.create()
        with pytest.raises(AttributeError):
            store.update(job.id, colour="blue")


class TestHousekeeping:

    def test_delete(self, store):
        job = store.create()
        assert store.delete(job.id)
        assert not store.delete(job.id)
        assert store.get(job.id) is None

    def test_count_active(self, store):
        running = store.create()
        finished = store.create()
        store.update(finished.id, stage=JobStage.FAILED, error="x")
        assert store.count_active() == 1
        assert {j.id for j in store.list_jobs()} == {running.id, finished.id}

    def test_purge_expired(self, store):
        old = store.create()
        fresh = store.create()
        active = store.create()
        store.update(old.id, stage=JobStage.FAILED, error="x")
        store.update(fresh.id, stage=JobStage.FAILED, error="x")

        stale = store.get(old.id)
        stale.completed_at = datetime.now(timezone.utc) - timedelta(hours=2)
        store.put(stale)

        assert store.purge_expired(3600) == [old.id]
        assert store.get(fresh.id) is not None
        assert store.get(active.id) is not None
