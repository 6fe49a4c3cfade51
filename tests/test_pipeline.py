"""Tests for pipeline.py — the orchestrator driven by in-memory fakes."""

from __future__ import annotations

import io
import zipfile

import pytest

from book_typesetter.errors import SourceError, TransitionError
from book_typesetter.models import (
    BuildPlan,
    CompilationResult,
    DocumentMetadata,
    ErrorKind,
    ImageAsset,
    JobStatus,
    ParsedDocument,
    PipelineStep,
    ServiceConfig,
)
from book_typesetter.pipeline import (
    STEP_PROGRESS,
    TypesettingPipeline,
    check_transition,
    collect_assets,
    create_source_archive,
    estimate_processing_time,
)
from book_typesetter.stores import JobStore, LocalBlobStore
from book_typesetter.stores.blob_store import source_key

from .conftest import PNG_BYTES, make_pdf, make_unit

FAIL = CompilationResult(success=False, page_count=0, log="! Undefined control sequence.",
                         errors=["! Undefined control sequence."])


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeParser:
    def __init__(self, units=None, error: Exception | None = None):
        self.units = units if units is not None else [make_unit("One", "Hello [IMAGE: img1]",
                                                                images=[ImageAsset(id="img1", data=PNG_BYTES)])]
        self.error = error

    def parse(self, data, filename="document.docx"):
        if self.error:
            raise self.error
        return ParsedDocument(units=self.units, metadata=DocumentMetadata(chapter_count=len(self.units),
                                                                          word_count=500, estimated_pages=2))


class FakePlanner:
    def __init__(self, error: Exception | None = None):
        self.error = error

    def plan(self, parsed, settings):
        if self.error:
            raise self.error
        return BuildPlan(estimated_total_pages=3)


class FakeCompiler:
    def __init__(self, *results: CompilationResult):
        self.results = list(results)
        self.sources: list[str] = []

    def compile(self, source, assets):
        self.sources.append(source)
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class RecordingPublisher:
    def __init__(self):
        self.events: list[dict] = []

    def publish(self, job_id, event):
        self.events.append(event)


class RecordingNotifier:
    def __init__(self):
        self.jobs = []

    def notify_completed(self, job):
        self.jobs.append(job)


class ExplodingPublisher:
    def publish(self, job_id, event):
        raise ConnectionError("subscriber gone")


def _ok(pages: int | None = 3) -> CompilationResult:
    return CompilationResult(success=True, pdf=make_pdf(pages=3), page_count=pages, log="ok")


@pytest.fixture
def env(tmp_path):
    """Stores plus a pending job whose source is already uploaded."""
    jobs = JobStore()
    blobs = LocalBlobStore(tmp_path / "blobs")
    key = blobs.put(source_key("job1", "book.docx"), b"docx bytes")
    jobs.create(job_id="job1", source_key=key, source_filename="book.docx")
    return jobs, blobs


def _pipeline(env, *, compiler=None, parser=None, planner=None, transcoder=None,
              repair_fn=None, publisher=None, notifier=None) -> TypesettingPipeline:
    jobs, blobs = env
    return TypesettingPipeline(
        ServiceConfig(compile_max_attempts=3),
        jobs=jobs,
        blobs=blobs,
        parser=parser or FakeParser(),
        planner=planner or FakePlanner(),
        transcoder=transcoder,
        compiler=compiler or FakeCompiler(_ok()),
        repair_fn=repair_fn,
        publisher=publisher,
        notifier=notifier,
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulRun:
    def test_completes_and_stores_outputs(self, env):
        jobs, blobs = env
        publisher, notifier = RecordingPublisher(), RecordingNotifier()
        result = _pipeline(env, publisher=publisher, notifier=notifier).run_pipeline("job1")

        assert result.success
        assert result.page_count == 3
        job = jobs.get("job1")
        assert job.status is JobStatus.COMPLETED
        assert job.current_step is PipelineStep.COMPLETED
        assert job.progress == 100
        assert job.duration_ms is not None
        assert blobs.get(job.output_pdf_key).startswith(b"%PDF-")

        with zipfile.ZipFile(io.BytesIO(blobs.get(job.output_archive_key))) as zf:
            assert set(zf.namelist()) == {"main.tex", "images/img1.png"}
            assert b"\\begin{document}" in zf.read("main.tex")

        assert [j.job_id for j in notifier.jobs] == ["job1"]

    def test_events_follow_the_step_order(self, env):
        publisher = RecordingPublisher()
        _pipeline(env, publisher=publisher).run_pipeline("job1")

        steps = [e["step"] for e in publisher.events]
        milestones = list(dict.fromkeys(steps))
        assert milestones == [s.value for s in STEP_PROGRESS]
        progress = [e["progress"] for e in publisher.events]
        assert progress == sorted(progress)
        assert publisher.events[-1]["step"] == "completed"
        assert publisher.events[-1]["progress"] == 100

    def test_analyzed_event_carries_estimate(self, env):
        publisher = RecordingPublisher()
        _pipeline(env, publisher=publisher).run_pipeline("job1")
        analyzed = next(e for e in publisher.events if e["step"] == "analyzed")
        assert analyzed["estimated_ms"] >= 30_000

    def test_repair_applied_between_attempts(self, env):
        compiler = FakeCompiler(FAIL, _ok())
        publisher = RecordingPublisher()
        result = _pipeline(
            env,
            compiler=compiler,
            publisher=publisher,
            repair_fn=lambda src, diag: src.replace("\\begin{document}", "\\begin{document}%fixed"),
        ).run_pipeline("job1")

        assert result.success
        assert "%fixed" in compiler.sources[1]
        assert any(e["progress"] == 70 for e in publisher.events)
        assert any("automatic repair" in w for w in result.warnings)

    def test_broken_publisher_does_not_fail_job(self, env):
        result = _pipeline(env, publisher=ExplodingPublisher()).run_pipeline("job1")
        assert result.success

    def test_transcoder_failure_falls_back(self, env):
        class Broken:
            def transcode(self, unit, position, plan, settings):
                raise TimeoutError("llm timeout")

        compiler = FakeCompiler(_ok())
        result = _pipeline(env, compiler=compiler, transcoder=Broken()).run_pipeline("job1")
        assert result.success
        assert "\\chapter{One}" in compiler.sources[0]
        assert "Unit 1 was typeset without enrichment" in result.warnings


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_compile_failure_persists_and_stops(self, env):
        jobs, _ = env
        publisher = RecordingPublisher()
        compiler = FakeCompiler(FAIL)
        result = _pipeline(env, compiler=compiler, publisher=publisher).run_pipeline("job1")

        assert not result.success
        assert result.failed_step is PipelineStep.COMPILING
        assert len(compiler.sources) == 3

        job = jobs.get("job1")
        assert job.status is JobStatus.FAILED
        assert job.current_step is PipelineStep.COMPILING
        assert job.error_step is PipelineStep.COMPILING
        assert job.error_kind is ErrorKind.COMPILATION
        assert "undefined command" in job.error_message
        assert job.compile_log == "! Undefined control sequence."
        assert job.output_pdf_key is None

        last = publisher.events[-1]
        assert last["step"] == "failed"
        assert last["failed_step"] == "compiling"
        assert last["suggestions"]
        assert last["progress"] == job.progress == 70
        assert [e for e in publisher.events if e["step"] == "failed"] == [last]

    def test_zero_reported_pages_fails_validation(self, env):
        jobs, _ = env
        result = _pipeline(env, compiler=FakeCompiler(_ok(pages=0))).run_pipeline("job1")
        assert result.failed_step is PipelineStep.VALIDATING
        job = jobs.get("job1")
        assert job.error_kind is ErrorKind.VALIDATION
        assert "no pages" in job.error_message

    def test_missing_source(self, env):
        jobs, blobs = env
        jobs.create(job_id="job2", source_key="jobs/job2/source/gone.docx")
        result = _pipeline(env).run_pipeline("job2")
        assert result.failed_step is PipelineStep.PARSING
        assert jobs.get("job2").error_kind is ErrorKind.SOURCE

    def test_parser_crash_is_source_error(self, env):
        jobs, _ = env
        _pipeline(env, parser=FakeParser(error=KeyError("word/document.xml"))).run_pipeline("job1")
        job = jobs.get("job1")
        assert job.error_kind is ErrorKind.SOURCE
        assert job.error_step is PipelineStep.PARSING

    def test_empty_document(self, env):
        jobs, _ = env
        _pipeline(env, parser=FakeParser(units=[])).run_pipeline("job1")
        assert "no chapters" in jobs.get("job1").error_message

    def test_planner_crash_is_collaborator_error(self, env):
        jobs, _ = env
        _pipeline(env, planner=FakePlanner(error=RuntimeError("quota"))).run_pipeline("job1")
        job = jobs.get("job1")
        assert job.error_kind is ErrorKind.COLLABORATOR
        assert job.error_step is PipelineStep.ANALYZING
        assert "quota" not in job.error_message

    def test_source_error_message_is_kept(self, env):
        jobs, _ = env
        _pipeline(env, parser=FakeParser(error=SourceError("Not a DOCX file"))).run_pipeline("job1")
        assert jobs.get("job1").error_message == "Not a DOCX file"


# ---------------------------------------------------------------------------
# Entry-point guards and retry
# ---------------------------------------------------------------------------


class TestRunGuards:
    def test_running_job_is_a_conflict(self, env):
        jobs, _ = env
        jobs.claim("job1")
        compiler = FakeCompiler(_ok())
        result = _pipeline(env, compiler=compiler).run_pipeline("job1")
        assert result.conflict
        assert result.status is JobStatus.RUNNING
        assert compiler.sources == []

    def test_completed_job_is_a_conflict(self, env):
        pipeline = _pipeline(env)
        pipeline.run_pipeline("job1")
        assert pipeline.run_pipeline("job1").conflict

    def test_retry_after_failure(self, env):
        jobs, _ = env
        pipeline = _pipeline(env, compiler=FakeCompiler(FAIL))
        pipeline.run_pipeline("job1")
        pipeline.compiler = FakeCompiler(_ok())

        reset = pipeline.retry("job1")
        assert reset.status is JobStatus.PENDING
        assert reset.error_message is None

        assert pipeline.run_pipeline("job1").success
        assert jobs.get("job1").status is JobStatus.COMPLETED


class TestHelpers:
    def test_transitions(self):
        check_transition(PipelineStep.QUEUED, PipelineStep.PARSING)
        check_transition(PipelineStep.COMPILING, PipelineStep.FAILED)
        with pytest.raises(TransitionError):
            check_transition(PipelineStep.PARSING, PipelineStep.COMPILING)
        with pytest.raises(TransitionError):
            check_transition(PipelineStep.COMPLETED, PipelineStep.FAILED)

    def test_estimate_processing_time(self):
        meta = DocumentMetadata(word_count=1000, image_count=2, table_count=1)
        assert estimate_processing_time(meta, 1024 * 1024) == 47_000

    def test_collect_assets_dedupes_and_warns(self):
        warnings: list[str] = []
        units = [
            make_unit(images=[ImageAsset(id="img1", data=PNG_BYTES), ImageAsset(id="img2", data=b"")]),
            make_unit(images=[ImageAsset(id="img1", data=PNG_BYTES),
                              ImageAsset(id="img3", data=b"\x01\x00\x00\x00", format="emf")]),
        ]
        assets = collect_assets(units, warnings)
        assert [a.name for a in assets] == ["img1.png", "img3.png"]
        assert any("img2 has no data" in w for w in warnings)
        assert any("img3 is EMF" in w for w in warnings)

    def test_source_archive(self):
        from book_typesetter.models import Asset

        data = create_source_archive("\\documentclass{book}", [Asset(name="a.png", data=PNG_BYTES)])
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert zf.read("images/a.png") == PNG_BYTES
