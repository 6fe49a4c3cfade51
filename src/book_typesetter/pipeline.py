"""Pipeline orchestrator: one DOCX job from upload to stored PDF.

The job moves through a strict forward state machine::

    queued → parsing → parsed → analyzing → analyzed → preparing_assets
    → assets_ready → generating_markup → markup_generated → compiling
    → compiled → validating → validated → storing → completed

Any non-terminal step may branch to ``failed``. Every transition is written
to the job record before it is published, so the record always shows the
last step reached. All collaborators are injected; nothing here holds
module-level state.
"""

from __future__ import annotations

import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .errors import (
    CollaboratorError,
    CompilationError,
    InfrastructureError,
    PipelineError,
    SourceError,
    TransitionError,
    ValidationError,
)
from .messages import categorize_compile_error, kind_message, suggestions_for
from .models import (
    Asset,
    BuildPlan,
    DocumentMetadata,
    ErrorKind,
    Job,
    JobStatus,
    ParsedDocument,
    PipelineResult,
    PipelineStep,
    ServiceConfig,
    StructuralUnit,
    TypesetSettings,
)
from .progress import Notifier, ProgressPublisher, safe_notify, safe_publish
from .stores.blob_store import BlobNotFoundError, BlobStore, output_key
from .stores.job_store import JobStore
from .tools.chunker import chunk
from .tools.compile_client import Compiler
from .tools.latex_builder import UnitTranscoder, assemble, image_filename
from .tools.pdf_validator import validate_pdf
from .tools.repair_loop import compile_with_retry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

FORWARD_STEPS = [
    PipelineStep.QUEUED,
    PipelineStep.PARSING,
    PipelineStep.PARSED,
    PipelineStep.ANALYZING,
    PipelineStep.ANALYZED,
    PipelineStep.PREPARING_ASSETS,
    PipelineStep.ASSETS_READY,
    PipelineStep.GENERATING_MARKUP,
    PipelineStep.MARKUP_GENERATED,
    PipelineStep.COMPILING,
    PipelineStep.COMPILED,
    PipelineStep.VALIDATING,
    PipelineStep.VALIDATED,
    PipelineStep.STORING,
    PipelineStep.COMPLETED,
]

TERMINAL_STEPS = frozenset({PipelineStep.COMPLETED, PipelineStep.FAILED})


def _build_transitions() -> dict[PipelineStep, frozenset[PipelineStep]]:
    table: dict[PipelineStep, frozenset[PipelineStep]] = {}
    for current, nxt in zip(FORWARD_STEPS, FORWARD_STEPS[1:]):
        table[current] = frozenset({nxt, PipelineStep.FAILED})
    for step in TERMINAL_STEPS:
        table[step] = frozenset()
    return table


ALLOWED_TRANSITIONS = _build_transitions()

STEP_PROGRESS = {
    PipelineStep.QUEUED: 0,
    PipelineStep.PARSING: 10,
    PipelineStep.PARSED: 15,
    PipelineStep.ANALYZING: 20,
    PipelineStep.ANALYZED: 30,
    PipelineStep.PREPARING_ASSETS: 32,
    PipelineStep.ASSETS_READY: 35,
    PipelineStep.GENERATING_MARKUP: 35,
    PipelineStep.MARKUP_GENERATED: 55,
    PipelineStep.COMPILING: 65,
    PipelineStep.COMPILED: 80,
    PipelineStep.VALIDATING: 85,
    PipelineStep.VALIDATED: 90,
    PipelineStep.STORING: 92,
    PipelineStep.COMPLETED: 100,
}
UNIT_PROGRESS_RANGE = (35, 55)
RETRY_PROGRESS = 70

MAX_COMPLETION_WARNINGS = 5
COMPILE_LOG_CHARS = 2000
UNRENDERABLE_IMAGE_FORMATS = frozenset({"emf", "wmf"})

PDF_NAME = "output.pdf"
ARCHIVE_NAME = "source.zip"


def check_transition(current: PipelineStep, target: PipelineStep) -> None:
    """Raise :class:`TransitionError` unless *current* → *target* is allowed."""
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise TransitionError(f"Illegal step transition {current.value} -> {target.value}", step=current)


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class DocumentParser(Protocol):
    def parse(self, data: bytes, filename: str = ...) -> ParsedDocument: ...


class Planner(Protocol):
    def plan(self, parsed: ParsedDocument, settings: TypesetSettings) -> BuildPlan: ...


RepairFn = Callable[[str, str], "str | None"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def estimate_processing_time(metadata: DocumentMetadata, file_size_bytes: int = 0) -> int:
    """Rough wall-clock estimate in milliseconds for a document."""
    size_mb = file_size_bytes / (1024 * 1024)
    return int(
        30_000
        + metadata.word_count * 2
        + metadata.image_count * 5_000
        + metadata.table_count * 2_000
        + size_mb * 3_000
    )


def create_source_archive(source: str, assets: list[Asset]) -> bytes:
    """Zip ``main.tex`` plus ``images/<name>`` for download."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("main.tex", source)
        for asset in assets:
            zf.writestr(f"images/{asset.name}", asset.data)
    return buf.getvalue()


def collect_assets(units: list[StructuralUnit], warnings: list[str]) -> list[Asset]:
    """Flatten every unit's images into uniquely named compile assets."""
    assets: dict[str, Asset] = {}
    for unit in units:
        for image in unit.iter_images():
            name = image_filename(image)
            if name in assets:
                continue
            if not image.data:
                warnings.append(f"Image {image.id} has no data and was skipped")
                continue
            if image.format.lower() in UNRENDERABLE_IMAGE_FORMATS:
                warnings.append(
                    f"Image {image.id} is {image.format.upper()}; it may not render correctly"
                )
            assets[name] = Asset(name=name, data=image.data)
    return list(assets.values())


@dataclass
class _Run:
    """Mutable state of one pipeline execution."""
    job: Job
    step: PipelineStep = PipelineStep.QUEUED
    progress: int = 0
    warnings: list[str] = field(default_factory=list)
    compile_log: str | None = None
    started: float = field(default_factory=time.monotonic)

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def language(self) -> str:
        return self.job.settings.language

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TypesettingPipeline:
    """Run typesetting jobs against injected stores and collaborators."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        jobs: JobStore,
        blobs: BlobStore,
        parser: DocumentParser,
        planner: Planner,
        transcoder: UnitTranscoder | None,
        compiler: Compiler,
        repair_fn: RepairFn | None = None,
        publisher: ProgressPublisher | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.jobs = jobs
        self.blobs = blobs
        self.parser = parser
        self.planner = planner
        self.transcoder = transcoder
        self.compiler = compiler
        self.repair_fn = repair_fn
        self.publisher = publisher
        self.notifier = notifier

    # -- entry points --------------------------------------------------------

    def run_pipeline(self, job_id: str) -> PipelineResult:
        """Execute every step for a ``pending`` job.

        Jobs in any other status are left untouched and reported as a
        conflict. Failures never raise; they are recorded on the job and
        returned in the result.
        """
        job = self.jobs.claim(job_id)
        if job is None:
            current = self.jobs.get(job_id)
            logger.warning("Job %s is %s; refusing to run", job_id, current.status.value)
            return PipelineResult(
                job_id=job_id,
                conflict=True,
                status=current.status,
                error_message=f"Job is {current.status.value}",
            )

        run = _Run(job=job)
        logger.info("Job %s started (%s)", job_id, job.source_filename)
        self._emit(run, "Job started")
        try:
            return self._execute(run)
        except Exception as exc:
            return self._fail(run, exc)

    def retry(self, job_id: str) -> Job:
        """Return a failed job to ``pending`` so it can be run again."""
        job = self.jobs.reset_for_retry(job_id)
        logger.info("Job %s reset for retry", job_id)
        return job

    # -- steps ---------------------------------------------------------------

    def _execute(self, run: _Run) -> PipelineResult:
        job = run.job
        settings = job.settings

        self._advance(run, PipelineStep.PARSING, "Reading document")
        source_bytes = self._load_source(job)
        parsed = self._parse(source_bytes, job.source_filename)
        meta = parsed.metadata
        self._advance(run, PipelineStep.PARSED,
                      f"{meta.chapter_count} chapters, {meta.word_count} words",
                      metadata=meta.model_dump())

        self._advance(run, PipelineStep.ANALYZING, "Planning layout")
        units = chunk(parsed.units, self.config.chunk_max_bytes)
        plan = self._plan(parsed, settings)
        self._advance(run, PipelineStep.ANALYZED, f"~{plan.estimated_total_pages} pages planned",
                      estimated_ms=estimate_processing_time(meta, len(source_bytes)),
                      units=len(units))

        self._advance(run, PipelineStep.PREPARING_ASSETS, "Preparing images")
        assets = collect_assets(units, run.warnings)
        self._advance(run, PipelineStep.ASSETS_READY, f"{len(assets)} images ready")

        self._advance(run, PipelineStep.GENERATING_MARKUP, "Generating LaTeX")
        source = assemble(
            units, plan, settings, job.cover, self.transcoder,
            on_unit=lambda i, n: self._unit_progress(run, i, n),
            warnings=run.warnings,
        )
        self._advance(run, PipelineStep.MARKUP_GENERATED, f"{len(source)} characters of LaTeX")

        self._advance(run, PipelineStep.COMPILING, "Compiling PDF")
        result, final_source = self._compile(run, source, assets)
        self._advance(run, PipelineStep.COMPILED, "PDF compiled", page_count=result.page_count)

        self._advance(run, PipelineStep.VALIDATING, "Checking PDF")
        report = validate_pdf(result.pdf or b"", plan, result.page_count)
        run.warnings.extend(report.warnings)
        if report.errors:
            raise ValidationError("; ".join(report.errors), errors=report.errors, step=PipelineStep.VALIDATING)
        self._advance(run, PipelineStep.VALIDATED, f"Quality: {report.quality.value}")

        self._advance(run, PipelineStep.STORING, "Saving output")
        pdf_key = self.blobs.put(output_key(run.job_id, PDF_NAME), result.pdf, "application/pdf")
        archive_key = self.blobs.put(
            output_key(run.job_id, ARCHIVE_NAME),
            create_source_archive(final_source, assets),
            "application/zip",
        )

        check_transition(run.step, PipelineStep.COMPLETED)
        run.step, run.progress = PipelineStep.COMPLETED, 100
        completed = self.jobs.update(
            run.job_id,
            status=JobStatus.COMPLETED,
            current_step=PipelineStep.COMPLETED,
            progress=100,
            output_pdf_key=pdf_key,
            output_archive_key=archive_key,
            page_count=report.page_count,
            file_size=len(result.pdf),
            quality=report.quality,
            warnings=run.warnings,
            compile_log=run.compile_log,
            duration_ms=run.elapsed_ms(),
        )
        self._emit(run, "Typesetting complete",
                   page_count=report.page_count,
                   quality=report.quality.value,
                   warnings=run.warnings[:MAX_COMPLETION_WARNINGS])
        safe_notify(self.notifier, completed)
        logger.info("Job %s completed in %d ms: %d pages, %s",
                    run.job_id, completed.duration_ms, report.page_count, report.quality.value)
        return PipelineResult(
            job_id=run.job_id,
            success=True,
            status=JobStatus.COMPLETED,
            page_count=report.page_count,
            quality=report.quality,
            warnings=run.warnings,
        )

    def _load_source(self, job: Job) -> bytes:
        try:
            return self.blobs.get(job.source_key)
        except BlobNotFoundError as exc:
            raise SourceError(f"Source document {job.source_key} not found", step=PipelineStep.PARSING) from exc

    def _parse(self, data: bytes, filename: str) -> ParsedDocument:
        try:
            parsed = self.parser.parse(data, filename)
        except PipelineError:
            raise
        except Exception as exc:
            raise SourceError(f"Could not parse {filename}: {exc}", step=PipelineStep.PARSING) from exc
        if not parsed.units:
            raise SourceError(f"{filename} contains no chapters", step=PipelineStep.PARSING)
        return parsed

    def _plan(self, parsed: ParsedDocument, settings: TypesetSettings) -> BuildPlan:
        try:
            return self.planner.plan(parsed, settings)
        except PipelineError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"Structure planner failed: {exc}", step=PipelineStep.ANALYZING) from exc

    def _compile(self, run: _Run, source: str, assets: list[Asset]):
        def on_retry(attempt: int, max_attempts: int) -> None:
            self._emit(run, f"Compilation attempt {attempt}/{max_attempts} failed; repairing",
                       progress=RETRY_PROGRESS, attempt=attempt)

        outcome = compile_with_retry(
            source,
            assets,
            max_attempts=self.config.compile_max_attempts,
            compile_fn=self.compiler.compile,
            repair_fn=self.repair_fn,
            on_retry=on_retry,
        )
        result = outcome.result
        run.compile_log = (result.log or "")[-COMPILE_LOG_CHARS:] or None
        if not result.success:
            diagnostic = "\n".join([*result.errors, result.log or ""])
            raise CompilationError(
                categorize_compile_error(diagnostic, run.language),
                log=result.log,
                errors=result.errors,
                step=PipelineStep.COMPILING,
            )
        if result.pdf is None:
            raise CompilationError("Compiler reported success without a PDF", step=PipelineStep.COMPILING)
        if outcome.repairs_applied:
            run.warnings.append(f"Document compiled after {outcome.repairs_applied} automatic repair(s)")
        return result, outcome.source

    # -- progress ------------------------------------------------------------

    def _advance(self, run: _Run, step: PipelineStep, message: str = "", **extra) -> None:
        """Persist a step transition, then publish it."""
        check_transition(run.step, step)
        progress = max(run.progress, STEP_PROGRESS[step])
        self.jobs.update(run.job_id, current_step=step, progress=progress)
        run.step, run.progress = step, progress
        logger.info("Job %s: %s (%d%%) %s", run.job_id, step.value, progress, message)
        self._emit(run, message, **extra)

    def _unit_progress(self, run: _Run, index: int, total: int) -> None:
        low, high = UNIT_PROGRESS_RANGE
        progress = low + (high - low) * index // max(total, 1)
        self._emit(run, f"Unit {index + 1}/{total}", progress=progress, unit=index + 1, total_units=total)

    def _emit(self, run: _Run, message: str, *, progress: int | None = None, **extra) -> None:
        """Publish an event for the current step; progress never goes backwards."""
        if progress is not None and progress > run.progress:
            run.progress = progress
            self.jobs.update(run.job_id, progress=progress)
        event = {"step": run.step.value, "progress": run.progress, "message": message, **extra}
        safe_publish(self.publisher, run.job_id, event)

    # -- failure -------------------------------------------------------------

    def _fail(self, run: _Run, exc: Exception) -> PipelineResult:
        failed_step = run.step
        logger.exception("Job %s failed at %s", run.job_id, failed_step.value)

        if isinstance(exc, PipelineError):
            kind = exc.kind
            if exc.user_message:
                message = exc.user_message
            elif kind in (ErrorKind.SOURCE, ErrorKind.COMPILATION, ErrorKind.VALIDATION):
                message = str(exc)
            else:
                message = kind_message(kind, run.language)
        else:
            kind = ErrorKind.INTERNAL
            message = kind_message(kind, run.language)

        if isinstance(exc, CompilationError) and exc.log and not run.compile_log:
            run.compile_log = exc.log[-COMPILE_LOG_CHARS:]

        run.step = PipelineStep.FAILED
        # the record keeps the step that failed as its current_step
        try:
            self.jobs.update(
                run.job_id,
                status=JobStatus.FAILED,
                error_kind=kind,
                error_step=failed_step,
                error_message=message,
                warnings=run.warnings,
                compile_log=run.compile_log,
                duration_ms=run.elapsed_ms(),
            )
        except InfrastructureError:
            logger.exception("Could not record failure of job %s", run.job_id)

        safe_publish(self.publisher, run.job_id, {
            "step": PipelineStep.FAILED.value,
            "progress": run.progress,
            "message": message,
            "failed_step": failed_step.value,
            "error_kind": kind.value,
            "suggestions": suggestions_for(failed_step, run.language),
        })
        return PipelineResult(
            job_id=run.job_id,
            status=JobStatus.FAILED,
            failed_step=failed_step,
            error_message=message,
            warnings=run.warnings,
        )
