"""Persistent job record.

Thread-safe job store backed by a JSON file that is rewritten on every
change, so a crash leaves the last known step on disk. Partial updates may
only touch the fields in :data:`MUTABLE_FIELDS`.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path

from ..errors import InfrastructureError, JobNotFoundError, JobStateError, UnknownFieldError
from ..models import CoverInfo, ErrorKind, Job, JobStatus, PipelineStep, TypesetSettings

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    "status",
    "current_step",
    "progress",
    "error_kind",
    "error_step",
    "error_message",
    "output_pdf_key",
    "output_archive_key",
    "page_count",
    "file_size",
    "quality",
    "warnings",
    "compile_log",
    "started_at",
    "duration_ms",
})

_CLEARED_ON_RESET = {
    "error_kind": None,
    "error_step": None,
    "error_message": None,
    "output_pdf_key": None,
    "output_archive_key": None,
    "page_count": None,
    "file_size": None,
    "quality": None,
    "warnings": [],
    "compile_log": None,
    "duration_ms": None,
}


class JobStore:
    """JSON-file backed job store. ``path=None`` keeps everything in memory."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()
        self._load()

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise InfrastructureError(f"Could not load job store {self.path}: {exc}") from exc
        for job_id, raw in data.items():
            self._jobs[job_id] = Job.model_validate(raw)
        logger.info("Loaded %d jobs from %s", len(self._jobs), self.path)

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {jid: job.model_dump(mode="json") for jid, job in self._jobs.items()}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise InfrastructureError(f"Could not persist job store {self.path}: {exc}") from exc

    # -- queries -------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    def all(self) -> list[Job]:
        with self._lock:
            return [j.model_copy(deep=True) for j in self._jobs.values()]

    # -- mutations -----------------------------------------------------------

    def create(
        self,
        *,
        project_id: str = "",
        source_key: str = "",
        source_filename: str = "document.docx",
        settings: TypesetSettings | None = None,
        cover: CoverInfo | None = None,
        job_id: str | None = None,
    ) -> Job:
        job = Job(
            job_id=job_id or uuid.uuid4().hex[:12],
            project_id=project_id,
            source_key=source_key,
            source_filename=source_filename,
            settings=settings or TypesetSettings(),
            cover=cover or CoverInfo(),
        )
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job
            self._save()
        return job.model_copy(deep=True)

    def _apply(self, job_id: str, fields: dict) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        updated = Job.model_validate({**job.model_dump(), **fields, "updated_at": time.time()})
        self._jobs[job_id] = updated
        self._save()
        return updated.model_copy(deep=True)

    def update(self, job_id: str, **fields) -> Job:
        """Apply a partial update; fields outside the whitelist are rejected."""
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise UnknownFieldError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        with self._lock:
            return self._apply(job_id, fields)

    def claim(self, job_id: str) -> Job | None:
        """Atomically switch a ``pending`` job to ``running``.

        Returns ``None`` when the job is in any other status.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status is not JobStatus.PENDING:
                return None
            return self._apply(job_id, {
                **_CLEARED_ON_RESET,
                "status": JobStatus.RUNNING,
                "current_step": PipelineStep.QUEUED,
                "progress": 0,
                "started_at": time.time(),
            })

    def reset_for_retry(self, job_id: str) -> Job:
        """Return a ``failed`` job to ``pending`` with error and outputs cleared."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status is not JobStatus.FAILED:
                raise JobStateError(f"Job {job_id} is {job.status.value}; only failed jobs can be retried")
            return self._apply(job_id, {
                **_CLEARED_ON_RESET,
                "status": JobStatus.PENDING,
                "current_step": PipelineStep.QUEUED,
                "progress": 0,
                "started_at": None,
            })

    def mark_interrupted(self, message: str) -> list[str]:
        """Fail every job left ``running`` by a previous process; returns their ids."""
        interrupted: list[str] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status is not JobStatus.RUNNING:
                    continue
                self._apply(job_id, {
                    "status": JobStatus.FAILED,
                    "error_kind": ErrorKind.INTERNAL,
                    "error_step": job.current_step,
                    "error_message": message,
                })
                interrupted.append(job_id)
        if interrupted:
            logger.warning("Marked %d interrupted jobs as failed: %s", len(interrupted), ", ".join(interrupted))
        return interrupted
