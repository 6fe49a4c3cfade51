"""Pydantic models for the book typesetting pipeline."""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PipelineStep(str, Enum):
    """Pipeline states in strict forward order (``FAILED`` is the only branch)."""
    QUEUED = "queued"
    PARSING = "parsing"
    PARSED = "parsed"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    PREPARING_ASSETS = "preparing_assets"
    ASSETS_READY = "assets_ready"
    GENERATING_MARKUP = "generating_markup"
    MARKUP_GENERATED = "markup_generated"
    COMPILING = "compiling"
    COMPILED = "compiled"
    VALIDATING = "validating"
    VALIDATED = "validated"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    SOURCE = "source"
    COLLABORATOR = "collaborator"
    COMPILATION = "compilation"
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"
    INTERNAL = "internal"


class Quality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"


class DocumentType(str, Enum):
    BOOK = "book"
    ARTICLE = "article"
    REPORT = "report"
    EXAM = "exam"


# ---------------------------------------------------------------------------
# Parsed document
# ---------------------------------------------------------------------------

class ImageAsset(BaseModel):
    """An image embedded in a structural unit."""
    id: str = Field(..., description="Placeholder id, e.g. 'img3' for [IMAGE: img3]")
    data: bytes = Field(default=b"", repr=False, description="Raw image bytes")
    format: str = Field(default="png", description="Format tag from the source container")
    caption: str = Field(default="")


class TableCell(BaseModel):
    text: str = ""
    colspan: int = 1
    rowspan: int = 1
    align: str = Field(default="left", description="'left', 'center' or 'right'")
    is_header: bool = False


class Table(BaseModel):
    """Row/column cell grid referenced from body text as ``[TABLE: id]``."""
    id: str
    rows: list[list[TableCell]] = Field(default_factory=list)
    col_count: int = 0
    has_header_row: bool = False


class Footnote(BaseModel):
    id: str
    text: str


class StructuralUnit(BaseModel):
    """A chapter-level node of the parsed document tree (recursive)."""
    title: str = ""
    body: str = Field(default="", description="Paragraphs separated by blank lines")
    level: int = Field(default=1, description="1 = chapter, 2.. = nested sub-units")
    sub_units: list[StructuralUnit] = Field(default_factory=list)
    images: list[ImageAsset] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    footnotes: list[Footnote] = Field(default_factory=list)
    endnotes: list[Footnote] = Field(default_factory=list)
    # Continuation marker set by the chunker: "part K of unit N"
    source_index: int | None = Field(default=None, description="Index of the unit this part was split from")
    part: int | None = Field(default=None, description="1-based part number within the split unit")

    @property
    def is_continuation(self) -> bool:
        return self.part is not None and self.part > 1

    def depth(self) -> int:
        """Nesting depth of this subtree (a leaf has depth 1)."""
        return 1 + max((s.depth() for s in self.sub_units), default=0)

    def iter_images(self):
        """Yield every image in this unit and its sub-units, in document order."""
        yield from self.images
        for sub in self.sub_units:
            yield from sub.iter_images()


class DocumentMetadata(BaseModel):
    word_count: int = 0
    chapter_count: int = 0
    image_count: int = 0
    table_count: int = 0
    footnote_count: int = 0
    estimated_pages: int = 0


class ParsedDocument(BaseModel):
    """Structural Parser output."""
    units: list[StructuralUnit] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


# ---------------------------------------------------------------------------
# Settings & build plan
# ---------------------------------------------------------------------------

class Features(BaseModel):
    """Front/back-matter toggles."""
    cover_page: bool = True
    table_of_contents: bool = True
    list_of_figures: bool = False
    list_of_tables: bool = False
    bibliography: bool = False
    index: bool = False


class TypesetSettings(BaseModel):
    """User-selected layout settings for one project."""
    document_type: DocumentType = DocumentType.BOOK
    page_size: str = Field(default="a5", description="a4, a5, b5 or letter")
    margins: str = Field(default="standard", description="standard, wide or narrow")
    font_family: str = "ebgaramond"
    font_size: str = "11pt"
    line_spacing: float = 1.15
    language: str = Field(default="en", description="'en' or 'tr'")
    chapter_style: str = "classic"
    features: Features = Field(default_factory=Features)


class CoverInfo(BaseModel):
    title: str = ""
    subtitle: str = ""
    author: str = ""


class GeometrySettings(BaseModel):
    paper_size: str = "a5paper"
    top: str = "25mm"
    bottom: str = "25mm"
    inner: str | None = None
    outer: str | None = None
    left: str | None = None
    right: str | None = None


class FontSetup(BaseModel):
    main_font: str = "ebgaramond"
    font_size: str = "11pt"
    line_spacing: float = 1.15


class ChapterEstimate(BaseModel):
    title: str
    estimated_pages: int = 0


class BuildPlan(BaseModel):
    """Settings-resolved compilation parameters; immutable for a run."""
    model_config = ConfigDict(frozen=True)

    document_class: str = Field(default="book")
    required_packages: list[str] = Field(default_factory=list)
    geometry: GeometrySettings = Field(default_factory=GeometrySettings)
    font: FontSetup = Field(default_factory=FontSetup)
    chapter_structure: list[ChapterEstimate] = Field(default_factory=list)
    bibliography_style: str = "authoryear"
    estimated_total_pages: int = Field(default=0, description="Estimated output length in pages")


# ---------------------------------------------------------------------------
# Compilation & validation
# ---------------------------------------------------------------------------

class Asset(BaseModel):
    """A named binary shipped to the compiler (flat asset search path)."""
    name: str
    data: bytes = Field(default=b"", repr=False)


class ImageReport(BaseModel):
    """Per-request image normalization counters from the Compilation Service."""
    total: int = 0
    written: int = 0
    converted: int = 0
    failed: int = 0
    skipped: int = 0
    failed_files: list[str] = Field(default_factory=list)


class CompilationResult(BaseModel):
    """Outcome of one compilation attempt."""
    success: bool = Field(..., description="Whether a PDF was produced")
    pdf: bytes | None = Field(default=None, repr=False, exclude=True)
    page_count: int | None = Field(default=None, description="None when the count could not be determined")
    log: str = Field(default="", description="Pass log, plus the engine log tail on failure")
    errors: list[str] = Field(default_factory=list, description="Deduplicated diagnostics (max 10)")
    image_report: ImageReport | None = Field(default=None)


class ValidationReport(BaseModel):
    """Output Validator result."""
    page_count: int = 0
    file_size_mb: float = 0.0
    font_count: int = 0
    image_count: int = 0
    has_outline: bool = False
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    quality: Quality = Quality.EXCELLENT


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------

class Job(BaseModel):
    """One pipeline execution for one document."""
    job_id: str
    project_id: str = ""
    source_key: str = Field(default="", description="Blob key of the uploaded document")
    source_filename: str = "document.docx"
    settings: TypesetSettings = Field(default_factory=TypesetSettings)
    cover: CoverInfo = Field(default_factory=CoverInfo)

    status: JobStatus = JobStatus.PENDING
    current_step: PipelineStep = PipelineStep.QUEUED
    progress: int = Field(default=0, description="0-100, non-decreasing within a run")

    error_kind: ErrorKind | None = None
    error_step: PipelineStep | None = None
    error_message: str | None = None

    output_pdf_key: str | None = None
    output_archive_key: str | None = None
    page_count: int | None = None
    file_size: int | None = None
    quality: Quality | None = None
    warnings: list[str] = Field(default_factory=list)
    compile_log: str | None = None

    started_at: float | None = None
    duration_ms: int | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class PipelineResult(BaseModel):
    """Top-level result of one ``run_pipeline`` call."""
    job_id: str
    success: bool = False
    conflict: bool = Field(default=False, description="True when the run was refused")
    status: JobStatus = JobStatus.PENDING
    failed_step: PipelineStep | None = None
    error_message: str | None = None
    page_count: int | None = None
    quality: Quality | None = None
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Service configuration (loaded from YAML / Hydra)
# ---------------------------------------------------------------------------

class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that take precedence over ``azure``."""
    endpoint: str
    api_key: str = ""
    api_version: str = ""
    api_type: str | None = None


class ModelConfig(BaseModel):
    """LLM model configuration per role."""
    default: str = Field(default="gpt-4.1", description="Default model")
    planner: str | None = Field(default=None)
    transcoder: str | None = Field(default=None)
    repair: str | None = Field(default=None)
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)


class AzureConfig(BaseModel):
    """Azure OpenAI connection settings."""
    api_key: str = Field(default="", description="Azure OpenAI API key (or ${ENV_VAR})")
    api_version: str = Field(default="", description="API version")
    endpoint: str = Field(default="", description="Azure endpoint URL")


class ServiceConfig(BaseModel):
    """Full service configuration loaded from config.yaml."""
    # LLM collaborators
    azure: AzureConfig = Field(default_factory=AzureConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)
    timeout: int = Field(default=120, description="LLM call timeout in seconds")
    seed: int = Field(default=42, description="LLM seed for reproducibility")

    # Pipeline
    compile_max_attempts: int = Field(default=3, description="Max compile-repair attempts")
    chunk_max_bytes: int = Field(default=100_000, description="Unit size above which the chunker splits")
    language: str = Field(default="en", description="Language for user-facing messages")

    # Compilation
    compiler_url: str = Field(default="", description="Compilation Service URL; empty = in-process")
    compiler_timeout: float = Field(default=150.0, description="HTTP timeout for one compile request")
    latex_engine: str = Field(default="pdflatex")
    pass_timeout: int = Field(default=120, description="Timeout per engine pass in seconds")
    image_timeout: int = Field(default=30, description="Timeout per image conversion in seconds")
    image_workers: int = Field(default=3, description="Concurrent image conversions")
    cleanup_grace_seconds: float = Field(default=5.0)
    scratch_root: str = Field(default="/tmp/latex-jobs")

    # Storage
    blob_backend: str = Field(default="local", description="'local' or 's3'")
    blob_root: str = Field(default="data/blobs")
    s3_bucket: str = Field(default="")
    s3_region: str = Field(default="eu-central-1")
    job_store_path: str = Field(default="data/jobs.json")

    # Workers
    worker_count: int = Field(default=2, description="Jobs processed concurrently")

    # Completion notification; empty = log only
    notify_url: str = Field(default="", description="Webhook called when a job completes")
