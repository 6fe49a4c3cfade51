"""Clients for the compilation service.

:class:`HttpCompiler` talks to a running ``compiler_api`` over HTTP;
:class:`LocalCompiler` runs the same pass sequence in-process. Both return a
:class:`~book_typesetter.models.CompilationResult` and never raise for
compile or transport failures.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Protocol

import httpx

from ..models import Asset, CompilationResult, ImageReport, ServiceConfig
from .compiler import compile_in_dir, new_job_dir, remove_job_dir, validate_source

logger = logging.getLogger(__name__)


class Compiler(Protocol):
    def compile(self, source: str, assets: list[Asset]) -> CompilationResult: ...


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _parse_image_report(raw: object) -> ImageReport | None:
    if not raw:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        return ImageReport.model_validate(data)
    except ValueError:
        logger.warning("Ignoring malformed image report: %r", raw)
        return None


def _parse_page_count(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class HttpCompiler:
    """Compile through the ``POST /compile`` endpoint of the compilation service."""

    def __init__(self, base_url: str, *, timeout: float = 150.0, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def compile(self, source: str, assets: list[Asset]) -> CompilationResult:
        payload = {
            "latex": source,
            "images": [
                {"name": a.name, "data": base64.b64encode(a.data).decode("ascii")}
                for a in assets
            ],
        }
        try:
            response = self._client.post(f"{self.base_url}/compile", json=payload, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.error("Compiler request timed out after %ss", self.timeout)
            return CompilationResult(
                success=False,
                page_count=0,
                log=f"Compiler request timed out after {self.timeout}s",
                errors=["Compilation timed out"],
            )
        except httpx.HTTPError as exc:
            logger.error("Compiler connection error: %s", exc)
            return CompilationResult(success=False, page_count=0, log=f"Compiler unavailable: {exc}")

        content_type = response.headers.get("content-type", "")
        if response.status_code == 200 and "application/pdf" in content_type:
            pages = _parse_page_count(response.headers.get("x-page-count"))
            logger.info("Compilation successful: %d bytes, %s pages", len(response.content), pages)
            return CompilationResult(
                success=True,
                pdf=response.content,
                page_count=pages,
                image_report=_parse_image_report(response.headers.get("x-image-report")),
            )

        try:
            body = response.json()
        except ValueError:
            text = response.text[:2000]
            logger.error("Compilation error (HTTP %d): %s", response.status_code, text[:500])
            return CompilationResult(success=False, page_count=0, log=text or f"HTTP {response.status_code}")

        log = body.get("log") or body.get("error") or "Unknown error"
        logger.error("Compilation failed (HTTP %d): %s", response.status_code, log[:500])
        return CompilationResult(
            success=False,
            page_count=0,
            log=log,
            errors=list(body.get("errors") or []),
            image_report=_parse_image_report(body.get("image_report")),
        )

    def validate(self, source: str) -> tuple[bool, list[str]]:
        """Run the service's draft-mode structural check."""
        try:
            response = self._client.post(f"{self.base_url}/validate", json={"latex": source})
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return False, [f"Compiler unavailable: {exc}"]
        return bool(body.get("valid")), list(body.get("errors") or [])


# ---------------------------------------------------------------------------
# In-process compiler
# ---------------------------------------------------------------------------


class LocalCompiler:
    """Run the pass sequence in a scratch directory of this process."""

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config

    def compile(self, source: str, assets: list[Asset]) -> CompilationResult:
        job_id, job_dir = new_job_dir(self.config.scratch_root)
        logger.info("Local compile job %s in %s", job_id, job_dir)
        try:
            return compile_in_dir(
                job_dir,
                source,
                assets,
                engine=self.config.latex_engine,
                pass_timeout=self.config.pass_timeout,
                image_timeout=self.config.image_timeout,
                image_workers=self.config.image_workers,
            )
        finally:
            remove_job_dir(job_dir)

    def validate(self, source: str) -> tuple[bool, list[str]]:
        return validate_source(source, scratch_root=self.config.scratch_root, engine=self.config.latex_engine)


def build_compiler(config: ServiceConfig) -> HttpCompiler | LocalCompiler:
    """Use the HTTP service when ``compiler_url`` is set, else compile in-process."""
    if config.compiler_url:
        return HttpCompiler(config.compiler_url, timeout=config.compiler_timeout)
    return LocalCompiler(config)
