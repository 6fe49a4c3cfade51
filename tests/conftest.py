"""Shared test fixtures."""

from __future__ import annotations

import pytest

from book_typesetter.models import (
    BuildPlan,
    CompilationResult,
    Footnote,
    ImageAsset,
    ServiceConfig,
    StructuralUnit,
    Table,
    TableCell,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

ERROR_LOG = """\
This is pdfTeX, Version 3.141592653-2.6-1.40.25 (TeX Live 2023)
(./main.tex
LaTeX2e <2023-06-01>
! Undefined control sequence.
l.42 \\badcommand
                 {x}
! LaTeX Error: File `missing.sty' not found.

Type X to quit or <RETURN> to proceed,
! Undefined control sequence.
l.42 \\badcommand
                 {x}
"""


def make_pdf(pages: int = 3, fonts: int = 2, pad_to: int = 2000) -> bytes:
    """Uncompressed PDF-like bytes with the given page and font objects."""
    chunks = [b"%PDF-1.5\n"]
    chunks.append(b"1 0 obj << /Type /Catalog /Pages 2 0 R /Outlines 9 0 R >> endobj\n")
    chunks.append(b"2 0 obj << /Type /Pages /Count %d >> endobj\n" % pages)
    for n in range(pages):
        chunks.append(b"%d 0 obj << /Type /Page /Parent 2 0 R /Contents %d 0 R >> endobj\n" % (10 + n, 100 + n))
    for n in range(fonts):
        chunks.append(b"%d 0 obj << /Type /Font /Subtype /Type1 >> endobj\n" % (200 + n))
    data = b"".join(chunks)
    if len(data) < pad_to:
        data += b"%" + b"x" * (pad_to - len(data) - 2) + b"\n"
    return data + b"%%EOF\n"


def make_unit(title: str = "Chapter", body: str = "Some text.", **kwargs) -> StructuralUnit:
    return StructuralUnit(title=title, body=body, **kwargs)


def make_table(table_id: str = "1") -> Table:
    return Table(
        id=table_id,
        rows=[
            [TableCell(text="Name", is_header=True), TableCell(text="Value", is_header=True)],
            [TableCell(text="alpha"), TableCell(text="1")],
        ],
        col_count=2,
        has_header_row=True,
    )


@pytest.fixture
def service_config(tmp_path) -> ServiceConfig:
    return ServiceConfig(
        scratch_root=str(tmp_path / "scratch"),
        blob_root=str(tmp_path / "blobs"),
        job_store_path=str(tmp_path / "jobs.json"),
        cleanup_grace_seconds=0,
    )


@pytest.fixture
def minimal_pdf() -> bytes:
    return make_pdf()


@pytest.fixture
def error_log() -> str:
    return ERROR_LOG


@pytest.fixture
def rich_unit() -> StructuralUnit:
    """A chapter referencing one image, one table and one footnote."""
    return make_unit(
        title="Introduction",
        body=(
            "First paragraph with **bold** text.[FOOTNOTE: 1]\n\n"
            "[IMAGE: img1]\n\n"
            "[TABLE: 1]\n\n"
            "Closing words."
        ),
        images=[ImageAsset(id="img1", data=PNG_BYTES, format="png")],
        tables=[make_table("1")],
        footnotes=[Footnote(id="1", text="A note.")],
    )


@pytest.fixture
def plan() -> BuildPlan:
    return BuildPlan(estimated_total_pages=3)


@pytest.fixture
def ok_result(minimal_pdf) -> CompilationResult:
    return CompilationResult(success=True, pdf=minimal_pdf, page_count=3, log="Compilation successful")
