"""
Typeset API — REST + SSE front end for the typesetting pipeline.

Endpoints:
    POST   /api/v1/jobs                 → Upload a DOCX, create a pending job (202)
    POST   /api/v1/jobs/{job_id}/run    → Queue a pending job (202, 409 if not pending)
    POST   /api/v1/jobs/{job_id}/retry  → Reset a failed job and queue it (202, 409 otherwise)
    GET    /api/v1/jobs/{job_id}        → Job status snapshot
    GET    /api/v1/jobs/{job_id}/events → SSE stream of progress events
    GET    /health

Run with:
    book-typesetter mode=serve_api
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import pydantic
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..agents import ContentTranscoder, StructurePlanner
from ..config import llm_available
from ..errors import InfrastructureError, JobNotFoundError, JobStateError
from ..messages import suggestions_for
from ..models import CoverInfo, Job, JobStatus, ServiceConfig, TypesetSettings
from ..parser import DocxParser
from ..pipeline import TypesettingPipeline
from ..progress import ProgressBroker, build_notifier
from ..stores import JobStore, build_blob_store
from ..stores.blob_store import source_key
from ..tools.compile_client import build_compiler
from ..workers import TypesetWorkerPool

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".docx",)


# ──────────────────────────────────────────────
# Service wiring
# ──────────────────────────────────────────────
def build_service(config: ServiceConfig) -> tuple[TypesettingPipeline, TypesetWorkerPool, ProgressBroker]:
    """Wire stores, collaborators and the worker pool from *config*."""
    broker = ProgressBroker()
    use_llm = llm_available(config)
    transcoder = ContentTranscoder(config) if use_llm else None
    if not use_llm:
        logger.warning("No LLM endpoint configured; using deterministic markup only")
    pipeline = TypesettingPipeline(
        config,
        jobs=JobStore(config.job_store_path),
        blobs=build_blob_store(config),
        parser=DocxParser(),
        planner=StructurePlanner(config, use_llm=use_llm),
        transcoder=transcoder,
        compiler=build_compiler(config),
        repair_fn=transcoder.repair if transcoder else None,
        publisher=broker,
        notifier=build_notifier(config.notify_url),
    )
    pool = TypesetWorkerPool(pipeline, worker_count=config.worker_count)
    return pipeline, pool, broker


def job_snapshot(job: Job, language: str) -> dict:
    """JSON-ready job status; failed jobs carry remediation suggestions."""
    payload = job.model_dump(mode="json")
    if job.status is JobStatus.FAILED:
        payload["suggestions"] = suggestions_for(job.error_step, language)
    return payload


async def job_events(job: Job, broker: ProgressBroker, language: str) -> AsyncIterator[dict]:
    """SSE items for *job*: the current snapshot, then live events until a terminal step."""
    snapshot = job_snapshot(job, language)
    yield {"data": json.dumps(snapshot), "event": "snapshot", "id": f"{job.job_id}-0"}
    if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
        return

    seq = 1
    async for event in broker.subscribe(job.job_id):
        yield {"data": json.dumps(event), "event": "message", "id": f"{job.job_id}-{seq}"}
        seq += 1


def _parse_form_model(model_cls, raw: str, field_name: str):
    try:
        return model_cls.model_validate_json(raw or "{}")
    except pydantic.ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid {field_name}: {exc.errors()}") from exc


def create_app(
    config: ServiceConfig,
    *,
    pipeline: TypesettingPipeline | None = None,
    pool: TypesetWorkerPool | None = None,
    broker: ProgressBroker | None = None,
) -> FastAPI:
    """Build the Typeset API; missing collaborators are wired from *config*."""
    if pipeline is None or pool is None or broker is None:
        pipeline, pool, broker = build_service(config)
    jobs = pipeline.jobs
    language = config.language

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        interrupted = pool.start()
        if interrupted:
            logger.info("Recovered %d interrupted jobs", len(interrupted))
        yield
        pool.shutdown(wait=False)

    app = FastAPI(
        title="Book Typesetter API",
        description="DOCX to print-ready PDF typesetting",
        version="1.0.0",
        lifespan=lifespan,
    )

    def _get_job(job_id: str) -> Job:
        try:
            return jobs.get(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    # ──────────────────────────────────────────────
    # POST /api/v1/jobs — Upload
    # ──────────────────────────────────────────────
    @app.post("/api/v1/jobs")
    async def create_job(
        file: UploadFile = File(...),
        settings: str = Form("{}"),
        cover: str = Form("{}"),
        project_id: str = Form(""),
    ) -> JSONResponse:
        filename = file.filename or "document.docx"
        if not filename.lower().endswith(ALLOWED_EXTENSIONS):
            raise HTTPException(status_code=400, detail="Only .docx files are supported")
        parsed_settings = _parse_form_model(TypesetSettings, settings, "settings")
        parsed_cover = _parse_form_model(CoverInfo, cover, "cover")
        content = await file.read()
        if not content:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")

        job_id = uuid.uuid4().hex[:12]
        key = source_key(job_id, filename)
        try:
            pipeline.blobs.put(key, content, file.content_type or "application/octet-stream")
            job = jobs.create(
                job_id=job_id,
                project_id=project_id,
                source_key=key,
                source_filename=filename,
                settings=parsed_settings,
                cover=parsed_cover,
            )
        except InfrastructureError as exc:
            logger.error("Could not store upload %s: %s", filename, exc)
            raise HTTPException(status_code=503, detail="Storage unavailable")

        logger.info("Job %s created for %s (%d bytes)", job.job_id, filename, len(content))
        return JSONResponse(status_code=202, content={"job_id": job.job_id, "status": job.status.value})

    # ──────────────────────────────────────────────
    # POST /api/v1/jobs/{id}/run
    # ──────────────────────────────────────────────
    @app.post("/api/v1/jobs/{job_id}/run")
    def run_job(job_id: str) -> JSONResponse:
        job = _get_job(job_id)
        if pool.is_active(job_id) or job.status is not JobStatus.PENDING:
            raise HTTPException(status_code=409, detail=f"Job {job_id} is {job.status.value}")
        pool.submit(job_id)
        return JSONResponse(status_code=202, content={"job_id": job_id, "status": "queued"})

    # ──────────────────────────────────────────────
    # POST /api/v1/jobs/{id}/retry
    # ──────────────────────────────────────────────
    @app.post("/api/v1/jobs/{job_id}/retry")
    def retry_job(job_id: str) -> JSONResponse:
        _get_job(job_id)
        try:
            pipeline.retry(job_id)
        except JobStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        pool.submit(job_id)
        return JSONResponse(status_code=202, content={"job_id": job_id, "status": "queued"})

    # ──────────────────────────────────────────────
    # GET /api/v1/jobs/{id} — Status Snapshot
    # ──────────────────────────────────────────────
    @app.get("/api/v1/jobs/{job_id}")
    def get_job(job_id: str) -> dict:
        return job_snapshot(_get_job(job_id), language)

    # ──────────────────────────────────────────────
    # GET /api/v1/jobs/{id}/events — SSE Stream
    # ──────────────────────────────────────────────
    @app.get("/api/v1/jobs/{job_id}/events")
    async def job_event_stream(job_id: str, request: Request) -> EventSourceResponse:
        job = _get_job(job_id)

        async def event_generator():
            async for item in job_events(job, broker, language):
                if await request.is_disconnected():
                    break
                yield item

        return EventSourceResponse(event_generator())

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": "book-typesetter-api", "workers": pool.worker_count}

    return app
