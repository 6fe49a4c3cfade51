"""Structural parser: DOCX bytes -> :class:`ParsedDocument`.

Walks the document body in order with python-docx and emits a chapter tree.
``Title`` and ``Heading 1`` open a chapter, ``Heading 2``-``Heading 4`` open
nested sub-units. Body text keeps light markers that the LaTeX side resolves:

- inline: ``**bold**``, ``*italic*``, ``__underline__``, ``~~strike~~``
- blocks: ``[IMAGE: img3]``, ``[TABLE: 2]``, ``[FOOTNOTE: 5]``,
  ``[QUOTE]...[/QUOTE]`` and ``- `` list lines

Images, tables and footnotes are attached to the unit whose body mentions
them. Endnotes go to the last chapter.
"""

from __future__ import annotations

import io
import logging
import math
import re
import zipfile
from dataclasses import dataclass, field

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml import parse_xml
from docx.oxml.ns import qn
from docx.table import Table as DocxTable
from docx.text.paragraph import Paragraph
from docx.text.run import Run

from ..errors import SourceError
from ..models import (
    DocumentMetadata,
    Footnote,
    ImageAsset,
    ParsedDocument,
    PipelineStep,
    StructuralUnit,
    Table,
    TableCell,
)

logger = logging.getLogger(__name__)

# Sub-unit levels below the chapter; deeper headings are clamped
MAX_DEPTH = 3
WORDS_PER_PAGE = 250

QUOTE_STYLES = frozenset({"Quote", "Intense Quote", "Block Text"})
CAPTION_STYLE = "Caption"

_HEADING_RE = re.compile(r"^Heading\s+(\d+)$")
_VML_IMAGEDATA = "{urn:schemas-microsoft-com:vml}imagedata"
_MARKER_RE = re.compile(r"\[(?:IMAGE|TABLE|FOOTNOTE):[^\]]*\]|\[/?QUOTE\]")

_ALIGN = {
    WD_ALIGN_PARAGRAPH.CENTER: "center",
    WD_ALIGN_PARAGRAPH.RIGHT: "right",
}


@dataclass
class _Section:
    """Mutable builder for one unit while the body is being walked."""
    title: str
    level: int
    blocks: list[str] = field(default_factory=list)
    in_list: bool = False
    children: list["_Section"] = field(default_factory=list)
    images: list[ImageAsset] = field(default_factory=list)
    tables: list[Table] = field(default_factory=list)
    footnotes: list[Footnote] = field(default_factory=list)
    endnotes: list[Footnote] = field(default_factory=list)

    def add_block(self, text: str) -> None:
        self.blocks.append(text)
        self.in_list = False

    def add_list_item(self, text: str) -> None:
        if self.in_list and self.blocks:
            self.blocks[-1] += "\n- " + text
        else:
            self.blocks.append("- " + text)
        self.in_list = True

    def to_unit(self) -> StructuralUnit:
        return StructuralUnit(
            title=self.title,
            body="\n\n".join(self.blocks),
            level=self.level,
            sub_units=[c.to_unit() for c in self.children],
            images=self.images,
            tables=self.tables,
            footnotes=self.footnotes,
            endnotes=self.endnotes,
        )


def heading_level(style_name: str | None) -> int | None:
    """Return the heading level for a paragraph style, or ``None`` for body text."""
    if not style_name:
        return None
    if style_name == "Title":
        return 1
    m = _HEADING_RE.match(style_name)
    if not m:
        return None
    return min(int(m.group(1)), MAX_DEPTH + 1)


def count_words(text: str) -> int:
    return len(_MARKER_RE.sub(" ", text).split())


# ---------------------------------------------------------------------------
# Notes parts
# ---------------------------------------------------------------------------

def _read_notes(document, partname: str, tag: str) -> dict[str, str]:
    """Return ``{id: text}`` from ``word/footnotes.xml`` or ``word/endnotes.xml``."""
    for part in document.part.package.iter_parts():
        if str(part.partname) != partname:
            continue
        root = parse_xml(part.blob)
        notes: dict[str, str] = {}
        for note in root.iter(qn(tag)):
            note_id = note.get(qn("w:id"))
            # ids 0 and -1 are the separator and continuation notes
            if note_id in (None, "0", "-1"):
                continue
            text = "".join(t.text or "" for t in note.iter(qn("w:t"))).strip()
            if text:
                notes[note_id] = text
        return notes
    return {}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class DocxParser:
    """Parse one DOCX into chapters with their images, tables and notes."""

    def parse(self, data: bytes, filename: str = "document.docx") -> ParsedDocument:
        try:
            document = Document(io.BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise SourceError(f"{filename} is not a readable DOCX file: {exc}",
                              step=PipelineStep.PARSING) from exc

        chapters = _Walker(document).walk()
        if not chapters:
            raise SourceError(f"{filename} contains no text", step=PipelineStep.PARSING)

        units = [c.to_unit() for c in chapters]
        metadata = document_metadata(units)
        logger.info(
            "DOCX parsed: %d chapters, %d words, %d images, %d tables, %d footnotes",
            metadata.chapter_count, metadata.word_count, metadata.image_count,
            metadata.table_count, metadata.footnote_count,
        )
        return ParsedDocument(units=units, metadata=metadata)


def document_metadata(units: list[StructuralUnit]) -> DocumentMetadata:
    words = images = tables = notes = 0

    def walk(unit: StructuralUnit) -> None:
        nonlocal words, images, tables, notes
        words += count_words(unit.body)
        images += len(unit.images)
        tables += len(unit.tables)
        notes += len(unit.footnotes) + len(unit.endnotes)
        for sub in unit.sub_units:
            walk(sub)

    for unit in units:
        walk(unit)
    return DocumentMetadata(
        word_count=words,
        chapter_count=len(units),
        image_count=images,
        table_count=tables,
        footnote_count=notes,
        estimated_pages=math.ceil(words / WORDS_PER_PAGE),
    )


class _Walker:
    """Single-use state for walking one document body in order."""

    def __init__(self, document) -> None:
        self._document = document
        self._footnotes = _read_notes(document, "/word/footnotes.xml", "w:footnote")
        self._endnotes = _read_notes(document, "/word/endnotes.xml", "w:endnote")
        self._chapters: list[_Section] = []
        self._stack: list[_Section] = []
        self._image_count = 0
        self._table_count = 0

    def walk(self) -> list[_Section]:
        for child in self._document.element.body.iterchildren():
            if child.tag == qn("w:p"):
                self._paragraph(Paragraph(child, self._document))
            elif child.tag == qn("w:tbl"):
                self._table(DocxTable(child, self._document))
        if self._chapters and self._endnotes:
            self._chapters[-1].endnotes = [Footnote(id=k, text=v) for k, v in self._endnotes.items()]
        return self._chapters

    # -- tree ---------------------------------------------------------------

    def _current(self) -> _Section:
        if not self._stack:
            chapter = _Section(title="", level=1)
            self._chapters.append(chapter)
            self._stack.append(chapter)
        return self._stack[-1]

    def _open(self, title: str, level: int) -> None:
        if level == 1:
            chapter = _Section(title=title, level=1)
            self._chapters.append(chapter)
            self._stack = [chapter]
            return
        self._current()
        while len(self._stack) > 1 and self._stack[-1].level >= level:
            self._stack.pop()
        parent = self._stack[-1]
        section = _Section(title=title, level=min(level, parent.level + 1))
        parent.children.append(section)
        self._stack.append(section)

    # -- block handlers -----------------------------------------------------

    def _paragraph(self, paragraph: Paragraph) -> None:
        style = paragraph.style.name if paragraph.style is not None else ""
        level = heading_level(style)
        if level is not None:
            title = paragraph.text.strip()
            if title:
                self._open(title, level)
            return

        images = self._images(paragraph)
        if not images and not paragraph.text.strip():
            return
        section = self._current()
        for image in images:
            section.images.append(image)
            section.add_block(f"[IMAGE: {image.id}]")

        text = self._runs_text(paragraph, section).strip()
        if not text:
            return
        if style == CAPTION_STYLE and section.images and not section.images[-1].caption:
            section.images[-1].caption = paragraph.text.strip()
        elif style in QUOTE_STYLES:
            section.add_block(f"[QUOTE]\n{text}\n[/QUOTE]")
        elif self._is_list(paragraph, style):
            section.add_list_item(text)
        else:
            section.add_block(text)

    @staticmethod
    def _is_list(paragraph: Paragraph, style: str) -> bool:
        if style.startswith("List"):
            return True
        ppr = paragraph._p.pPr
        return ppr is not None and ppr.numPr is not None

    def _runs_text(self, paragraph: Paragraph, section: _Section) -> str:
        parts: list[str] = []
        for child in paragraph._p.iterchildren():
            if child.tag == qn("w:r"):
                parts.append(self._run_text(Run(child, paragraph), section))
            elif child.tag == qn("w:hyperlink"):
                for r in child.iterchildren(qn("w:r")):
                    parts.append(self._run_text(Run(r, paragraph), section))
        return "".join(parts)

    def _run_text(self, run: Run, section: _Section) -> str:
        for ref in run._r.iter(qn("w:footnoteReference")):
            note_id = ref.get(qn("w:id"))
            if note_id in self._footnotes:
                if not any(f.id == note_id for f in section.footnotes):
                    section.footnotes.append(Footnote(id=note_id, text=self._footnotes[note_id]))
                return f"[FOOTNOTE: {note_id}]"
        text = run.text
        if not text.strip():
            return text
        if run.bold:
            text = f"**{text}**"
        elif run.italic:
            text = f"*{text}*"
        if run.underline:
            text = f"__{text}__"
        if run.font.strike:
            text = f"~~{text}~~"
        return text

    def _images(self, paragraph: Paragraph) -> list[ImageAsset]:
        related = self._document.part.related_parts
        found: list[ImageAsset] = []
        rel_ids = [b.get(qn("r:embed")) for b in paragraph._p.iter(qn("a:blip"))]
        rel_ids += [v.get(qn("r:id")) for v in paragraph._p.iter(_VML_IMAGEDATA)]
        for rel_id in rel_ids:
            part = related.get(rel_id) if rel_id else None
            if part is None:
                continue
            self._image_count += 1
            found.append(ImageAsset(
                id=f"img{self._image_count}",
                data=part.blob,
                format=part.partname.ext.lower(),
            ))
        return found

    def _table(self, docx_table: DocxTable) -> None:
        section = self._current()
        self._table_count += 1
        table = parse_table(docx_table, str(self._table_count))
        section.tables.append(table)
        section.add_block(f"[TABLE: {table.id}]")


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def _cell_text(tc, parent) -> str:
    texts = [Paragraph(p, parent).text.strip() for p in tc.iterchildren(qn("w:p"))]
    return " ".join(t for t in texts if t)


def _cell_align(tc, parent) -> str:
    for p in tc.iterchildren(qn("w:p")):
        return _ALIGN.get(Paragraph(p, parent).alignment, "left")
    return "left"


def _is_header_row(tr) -> bool:
    trpr = tr.trPr
    return trpr is not None and trpr.find(qn("w:tblHeader")) is not None


def parse_table(docx_table: DocxTable, table_id: str) -> Table:
    """Convert a Word table to a cell grid with spans and header detection.

    Vertically merged continuation cells are kept as empty cells so every
    row still covers the full grid.
    """
    grid: list[list[tuple[int, object]]] = []
    for tr in docx_table._tbl.tr_lst:
        col = 0
        row: list[tuple[int, object]] = []
        for tc in tr.tc_lst:
            row.append((col, tc))
            col += tc.grid_span
        grid.append(row)

    first_header = bool(grid) and _is_header_row(docx_table._tbl.tr_lst[0])
    rows: list[list[TableCell]] = []
    for r, row in enumerate(grid):
        cells: list[TableCell] = []
        for col, tc in row:
            if tc.vMerge == "continue":
                cells.append(TableCell(text="", colspan=tc.grid_span))
                continue
            rowspan = 1
            if tc.vMerge == "restart":
                for below in grid[r + 1:]:
                    match = next((c for gc, c in below if gc == col), None)
                    if match is None or match.vMerge != "continue":
                        break
                    rowspan += 1
            cells.append(TableCell(
                text=_cell_text(tc, docx_table),
                colspan=tc.grid_span,
                rowspan=rowspan,
                align=_cell_align(tc, docx_table),
                is_header=r == 0 and first_header,
            ))
        rows.append(cells)

    col_count = max((sum(c.colspan for c in row) for row in rows), default=0)
    return Table(id=table_id, rows=rows, col_count=col_count, has_header_row=first_header)
