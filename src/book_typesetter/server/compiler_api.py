"""
Compilation Service — FastAPI app wrapping the sandboxed LaTeX toolchain.

Endpoints:
    POST /compile    {latex, images: [{name, data(base64)}]} → application/pdf
    POST /validate   {latex} → {valid, errors}
    GET  /health     → {status, service, engine_version}

Each compile request gets its own scratch directory, removed a few seconds
after the response has been sent.

Run with:
    book-typesetter mode=serve_compiler
"""

from __future__ import annotations

import binascii
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from fastapi import BackgroundTasks, FastAPI
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from ..models import ServiceConfig
from ..tools.compiler import (
    compile_in_dir,
    decode_assets,
    engine_version,
    new_job_dir,
    remove_job_dir,
    validate_source,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "book-typesetter-compiler"


class ImagePayload(BaseModel):
    name: str = ""
    data: str = Field(default="", description="Base64-encoded bytes")


class CompileRequest(BaseModel):
    latex: str = ""
    images: list[ImagePayload] = Field(default_factory=list)


class ValidateRequest(BaseModel):
    latex: str = ""


def _cleanup_later(path: Path, delay: float) -> None:
    if delay > 0:
        time.sleep(delay)
    remove_job_dir(path)


def create_app(config: ServiceConfig | None = None) -> FastAPI:
    """Build the Compilation Service app for *config*."""
    config = config or ServiceConfig()
    app = FastAPI(
        title="Book Typesetter Compilation Service",
        description="Sandboxed multi-pass LaTeX compilation",
        version="1.0.0",
    )

    # ──────────────────────────────────────────────
    # POST /compile
    # ──────────────────────────────────────────────
    @app.post("/compile")
    def compile_document(body: CompileRequest, background: BackgroundTasks) -> Response:
        if not body.latex.strip():
            return JSONResponse(status_code=400, content={"success": False, "error": "No LaTeX source provided"})

        job_id, job_dir = new_job_dir(config.scratch_root)
        background.add_task(_cleanup_later, job_dir, config.cleanup_grace_seconds)
        logger.info("Compile job %s: %d chars, %d images", job_id, len(body.latex), len(body.images))

        try:
            assets = decode_assets([img.model_dump() for img in body.images])
        except (binascii.Error, ValueError) as exc:
            return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid image data: {exc}"})

        try:
            result = compile_in_dir(
                job_dir,
                body.latex,
                assets,
                engine=config.latex_engine,
                pass_timeout=config.pass_timeout,
                image_timeout=config.image_timeout,
                image_workers=config.image_workers,
            )
        except Exception as exc:
            logger.exception("Compile job %s crashed", job_id)
            return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

        report = result.image_report.model_dump() if result.image_report else None
        if result.success and result.pdf is not None:
            logger.info("Compile job %s succeeded: %d bytes, %s pages", job_id, len(result.pdf), result.page_count)
            headers = {"X-Job-Id": job_id}
            if result.page_count is not None:
                headers["X-Page-Count"] = str(result.page_count)
            if result.image_report is not None:
                headers["X-Image-Report"] = result.image_report.model_dump_json()
            return Response(content=result.pdf, media_type="application/pdf", headers=headers)

        logger.info("Compile job %s failed: %d errors", job_id, len(result.errors))
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": "Compilation failed",
                "log": result.log,
                "errors": result.errors,
                "image_report": report,
            },
        )

    # ──────────────────────────────────────────────
    # POST /validate
    # ──────────────────────────────────────────────
    @app.post("/validate")
    def validate(body: ValidateRequest) -> JSONResponse:
        if not body.latex.strip():
            return JSONResponse(status_code=400, content={"valid": False, "errors": ["No LaTeX code provided"]})
        try:
            valid, errors = validate_source(body.latex, scratch_root=config.scratch_root, engine=config.latex_engine)
        except OSError as exc:
            logger.exception("Validation crashed")
            return JSONResponse(status_code=500, content={"valid": False, "errors": [str(exc)]})
        return JSONResponse(content={"valid": valid, "errors": errors})

    # ──────────────────────────────────────────────
    # GET /health
    # ──────────────────────────────────────────────
    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "engine_version": engine_version(config.latex_engine),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
