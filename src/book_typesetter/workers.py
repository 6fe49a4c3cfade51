"""Fixed-size worker pool for pipeline runs.

Each submitted job runs on its own thread slot; at most ``worker_count``
jobs execute at once and the rest wait in the executor queue. Jobs left
``running`` by a previous process are failed on start so they can be
retried.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from .messages import INTERRUPTED_MESSAGE
from .models import PipelineResult
from .pipeline import TypesettingPipeline

logger = logging.getLogger(__name__)


class TypesetWorkerPool:
    def __init__(self, pipeline: TypesettingPipeline, worker_count: int = 2) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.pipeline = pipeline
        self.worker_count = worker_count
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def start(self) -> list[str]:
        """Start the executor; returns ids of jobs marked as interrupted."""
        language = self.pipeline.config.language
        message = INTERRUPTED_MESSAGE.get(language, INTERRUPTED_MESSAGE["en"])
        interrupted = self.pipeline.jobs.mark_interrupted(message)
        self._executor = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="typeset")
        logger.info("Worker pool started with %d workers", self.worker_count)
        return interrupted

    def submit(self, job_id: str) -> Future:
        """Queue *job_id* for execution; a job already queued returns its future."""
        if self._executor is None:
            raise RuntimeError("Worker pool is not started")
        with self._lock:
            existing = self._futures.get(job_id)
            if existing is not None and not existing.done():
                return existing
            future = self._executor.submit(self._run, job_id)
            self._futures[job_id] = future
            return future

    def _run(self, job_id: str) -> PipelineResult:
        try:
            return self.pipeline.run_pipeline(job_id)
        finally:
            with self._lock:
                self._futures.pop(job_id, None)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
            return future is not None and not future.done()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
            logger.info("Worker pool stopped")
