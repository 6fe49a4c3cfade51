"""Chunk, assemble, compile and validate a small book without the orchestrator."""

from __future__ import annotations

import re

from book_typesetter.models import BuildPlan, CompilationResult, CoverInfo, Quality, TypesetSettings
from book_typesetter.pipeline import collect_assets
from book_typesetter.tools.chunker import chunk, serialized_size
from book_typesetter.tools.latex_builder import assemble
from book_typesetter.tools.pdf_validator import validate_pdf
from book_typesetter.tools.repair_loop import compile_with_retry

from .conftest import make_pdf, make_unit

_GRAPHICS_RE = re.compile(r"\\includegraphics(?:\[[^\]]*\])?\{([^}]+)\}")


class _CheckingCompiler:
    """Accepts only complete documents whose figures all ship as assets."""

    def __init__(self):
        self.sources: list[str] = []

    def __call__(self, source, assets):
        self.sources.append(source)
        names = {a.name for a in assets}
        missing = [f for f in _GRAPHICS_RE.findall(source) if f not in names]
        complete = "\\begin{document}" in source and source.rstrip().endswith("\\end{document}")
        if missing or not complete:
            return CompilationResult(success=False, page_count=0, errors=[f"missing: {missing}"])
        return CompilationResult(success=True, pdf=make_pdf(pages=4), page_count=4, log="ok")


class TestRoundTrip:
    def test_small_book_compiles_and_validates(self, rich_unit):
        section = make_unit("Background", "\n\n".join("y" * 700 for _ in range(60)), level=2)
        units = [rich_unit, make_unit("Method", "Short opening.", sub_units=[section])]
        plan = BuildPlan(estimated_total_pages=4)
        settings = TypesetSettings()

        chunked = chunk(units, 20_000)
        assert len(chunked) > len(units)
        assert all(serialized_size(u) <= 20_000 for u in chunked)

        warnings: list[str] = []
        assets = collect_assets(chunked, warnings)
        source = assemble(chunked, plan, settings, CoverInfo(title="Field Notes"), None, warnings=warnings)
        assert source.count("\\chapter{Method}") == 1
        assert source.count("\\section{Background}") == 1

        compiler = _CheckingCompiler()
        outcome = compile_with_retry(source, assets, max_attempts=3, compile_fn=compiler)
        assert outcome.result.success
        assert outcome.attempts == 1
        assert [a.name for a in assets] == ["img1.png"]

        report = validate_pdf(outcome.result.pdf, plan, outcome.result.page_count)
        assert report.errors == []
        assert report.quality is Quality.EXCELLENT
        assert report.page_count == 4
