"""Tests for workers.py — bounded concurrency and interrupted-job recovery."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from book_typesetter.models import JobStatus, PipelineResult, PipelineStep, ServiceConfig
from book_typesetter.stores import JobStore
from book_typesetter.workers import TypesetWorkerPool


class _BlockingPipeline:
    """Stand-in pipeline whose runs wait on a shared event."""

    def __init__(self):
        self.config = ServiceConfig()
        self.jobs = JobStore()
        self.release = threading.Event()
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def run_pipeline(self, job_id):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        self.release.wait(timeout=5)
        with self._lock:
            self.running -= 1
        return PipelineResult(job_id=job_id, success=True, status=JobStatus.COMPLETED)


class TestWorkerPool:
    def test_requires_start(self):
        with pytest.raises(RuntimeError):
            TypesetWorkerPool(MagicMock()).submit("j")

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            TypesetWorkerPool(MagicMock(), worker_count=0)

    def test_bounded_concurrency(self):
        pipeline = _BlockingPipeline()
        pool = TypesetWorkerPool(pipeline, worker_count=2)
        pool.start()
        futures = [pool.submit(f"job{n}") for n in range(5)]
        pipeline.release.set()
        results = [f.result(timeout=5) for f in futures]
        pool.shutdown()
        assert all(r.success for r in results)
        assert pipeline.peak <= 2

    def test_duplicate_submit_returns_same_future(self):
        pipeline = _BlockingPipeline()
        pool = TypesetWorkerPool(pipeline, worker_count=1)
        pool.start()
        first = pool.submit("job")
        assert pool.is_active("job")
        assert pool.submit("job") is first
        pipeline.release.set()
        first.result(timeout=5)
        pool.shutdown()
        assert not pool.is_active("job")

    def test_start_fails_interrupted_jobs(self):
        pipeline = _BlockingPipeline()
        job = pipeline.jobs.create()
        pipeline.jobs.claim(job.job_id)
        pipeline.jobs.update(job.job_id, current_step=PipelineStep.COMPILING)

        pool = TypesetWorkerPool(pipeline)
        assert pool.start() == [job.job_id]
        pool.shutdown()

        failed = pipeline.jobs.get(job.job_id)
        assert failed.status is JobStatus.FAILED
        assert failed.error_step is PipelineStep.COMPILING
