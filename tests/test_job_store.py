"""Tests for stores/job_store.py — persistence, whitelist and status switches."""

from __future__ import annotations

import threading

import pytest

from book_typesetter.errors import JobNotFoundError, JobStateError, UnknownFieldError
from book_typesetter.models import ErrorKind, JobStatus, PipelineStep, TypesetSettings
from book_typesetter.stores.job_store import JobStore


@pytest.fixture
def store(tmp_path) -> JobStore:
    return JobStore(tmp_path / "jobs.json")


class TestCreateAndGet:
    def test_defaults(self, store):
        job = store.create(source_key="jobs/x/source/a.docx", source_filename="a.docx")
        assert job.status is JobStatus.PENDING
        assert job.current_step is PipelineStep.QUEUED
        assert job.progress == 0
        assert store.get(job.job_id).source_filename == "a.docx"

    def test_duplicate_id(self, store):
        store.create(job_id="same")
        with pytest.raises(ValueError):
            store.create(job_id="same")

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.get("missing")

    def test_returns_copies(self, store):
        job = store.create()
        job.warnings.append("mutated")
        assert store.get(job.job_id).warnings == []


class TestPersistence:
    def test_reload_from_disk(self, tmp_path):
        path = tmp_path / "jobs.json"
        first = JobStore(path)
        job = first.create(settings=TypesetSettings(page_size="a4"))
        first.update(job.job_id, progress=40, current_step=PipelineStep.COMPILING)

        reloaded = JobStore(path).get(job.job_id)
        assert reloaded.progress == 40
        assert reloaded.current_step is PipelineStep.COMPILING
        assert reloaded.settings.page_size == "a4"

    def test_in_memory(self):
        store = JobStore()
        job = store.create()
        assert store.get(job.job_id).job_id == job.job_id


class TestUpdate:
    def test_whitelist(self, store):
        job = store.create()
        with pytest.raises(UnknownFieldError):
            store.update(job.job_id, source_key="elsewhere")

    def test_values_are_validated(self, store):
        job = store.create()
        updated = store.update(job.job_id, status="failed", error_kind="compilation")
        assert updated.status is JobStatus.FAILED
        assert updated.error_kind is ErrorKind.COMPILATION


class TestClaim:
    def test_pending_to_running(self, store):
        job = store.create()
        claimed = store.claim(job.job_id)
        assert claimed.status is JobStatus.RUNNING
        assert claimed.started_at is not None

    def test_running_is_refused(self, store):
        job = store.create()
        store.claim(job.job_id)
        assert store.claim(job.job_id) is None

    def test_only_one_concurrent_claim_wins(self, store):
        job = store.create()
        results: list = []
        threads = [threading.Thread(target=lambda: results.append(store.claim(job.job_id))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for r in results if r is not None) == 1


class TestResetForRetry:
    def test_failed_job_cleared(self, store):
        job = store.create()
        store.claim(job.job_id)
        store.update(job.job_id, status=JobStatus.FAILED, error_kind=ErrorKind.COMPILATION,
                     error_message="boom", progress=65, warnings=["w"])
        reset = store.reset_for_retry(job.job_id)
        assert reset.status is JobStatus.PENDING
        assert reset.progress == 0
        assert reset.error_message is None
        assert reset.warnings == []

    def test_non_failed_rejected(self, store):
        job = store.create()
        with pytest.raises(JobStateError):
            store.reset_for_retry(job.job_id)


class TestMarkInterrupted:
    def test_running_jobs_failed(self, store):
        running = store.create()
        pending = store.create()
        store.claim(running.job_id)
        store.update(running.job_id, current_step=PipelineStep.COMPILING)

        ids = store.mark_interrupted("interrupted")

        assert ids == [running.job_id]
        failed = store.get(running.job_id)
        assert failed.status is JobStatus.FAILED
        assert failed.error_step is PipelineStep.COMPILING
        assert failed.error_message == "interrupted"
        assert store.get(pending.job_id).status is JobStatus.PENDING
