"""LaTeX document assembly: preamble, deterministic fragments, full document.

The preamble and every fragment built here are deterministic functions of
the settings; only chapter bodies come from the content transcoder.
Output is a single ``main.tex`` whose images live in a flat ``images/``
directory next to it::

    main.tex
    images/
    ├── img1.png
    └── img2.jpg
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Protocol

from ..models import (
    BuildPlan,
    CoverInfo,
    DocumentType,
    Footnote,
    ImageAsset,
    StructuralUnit,
    Table,
    TypesetSettings,
)
from .post_processor import normalize

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings lookup tables
# ---------------------------------------------------------------------------

PAPER_SIZES = {
    "a4": "a4paper",
    "a5": "a5paper",
    "b5": "b5paper",
    "letter": "letterpaper",
}

MARGIN_PRESETS = {
    "standard": {"top": "25mm", "bottom": "25mm", "inner": "30mm", "outer": "20mm"},
    "wide": {"top": "30mm", "bottom": "30mm", "inner": "35mm", "outer": "25mm"},
    "narrow": {"top": "20mm", "bottom": "20mm", "inner": "25mm", "outer": "15mm"},
}

FONT_PACKAGES = {
    "ebgaramond": "\\usepackage{ebgaramond}",
    "palatino": "\\usepackage{mathpazo}",
    "times": "\\usepackage{mathptmx}",
    "libertine": "\\usepackage{libertine}",
    "opensans": "\\usepackage[default]{opensans}",
}

CLASS_MAP = {
    DocumentType.BOOK: "book",
    DocumentType.REPORT: "report",
    DocumentType.ARTICLE: "article",
    DocumentType.EXAM: "article",
}

# Packages the generated markup relies on: (package name, preamble line)
REQUIRED_PACKAGES = [
    ("float", "\\usepackage{float}"),
    ("multirow", "\\usepackage{multirow}"),
    ("ulem", "\\usepackage[normalem]{ulem}"),
    ("booktabs", "\\usepackage{booktabs}"),
]

# Extra packages a build plan may request; anything else is ignored
SAFE_PACKAGES = frozenset({
    "amsmath", "amssymb", "array", "caption", "enumitem", "fancyhdr",
    "longtable", "microtype", "setspace", "subcaption", "tabularx",
    "titlesec", "xcolor", "csquotes", "url",
})

_CHAPTER_STYLES = {
    "classic": "",
    "modern": (
        "\\usepackage{titlesec}\n"
        "\\titleformat{\\chapter}[display]{\\normalfont\\sffamily\\huge\\bfseries}"
        "{\\chaptertitlename\\ \\thechapter}{16pt}{\\Huge}\n"
    ),
    "academic": "\\usepackage{fancyhdr}\n\\pagestyle{fancy}\n",
    "minimal": "\\pagestyle{plain}\n",
}

SUPPORTED_IMAGE_EXTS = ("png", "jpg", "pdf")

ENDNOTES_TITLE = {"en": "Notes", "tr": "Son Notlar"}
DEFAULT_TITLE = {"en": "Book", "tr": "Kitap"}
DEFAULT_AUTHOR = {"en": "Author", "tr": "Yazar"}
UNTITLED_UNIT = {"en": "Chapter", "tr": "Bolum"}


def heading_commands(document_type: DocumentType | str) -> tuple[str, str, str]:
    """Return (top-level, sub, sub-sub) heading commands for a document type."""
    doc_type = DocumentType(document_type)
    if doc_type is DocumentType.ARTICLE:
        return ("\\section", "\\subsection", "\\subsubsection")
    if doc_type is DocumentType.EXAM:
        return ("\\section*", "\\subsection*", "\\paragraph*")
    return ("\\chapter", "\\section", "\\subsection")


# ---------------------------------------------------------------------------
# Escaping and inline markup
# ---------------------------------------------------------------------------

_ESCAPES = {
    "\\": "\\textbackslash{}",
    "&": "\\&",
    "%": "\\%",
    "$": "\\$",
    "#": "\\#",
    "_": "\\_",
    "{": "\\{",
    "}": "\\}",
    "~": "\\textasciitilde{}",
    "^": "\\textasciicircum{}",
}
_ESCAPE_RE = re.compile(r"[\\&%$#_{}~^]")


def escape_latex(text: str) -> str:
    """Escape LaTeX special characters in one pass (UTF-8 letters pass through)."""
    if not text:
        return ""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], text)


# Longest markers first so ** wins over *
_INLINE_RE = re.compile(
    r"\*\*(?P<bold>[^*]+)\*\*"
    r"|__(?P<underline>[^_]+)__"
    r"|~~(?P<strike>[^~]+)~~"
    r"|\*(?P<italic>[^*]+)\*"
)
_INLINE_COMMANDS = {
    "bold": "\\textbf",
    "underline": "\\underline",
    "strike": "\\sout",
    "italic": "\\textit",
}


def render_inline(text: str) -> str:
    """Escape *text* and turn ``**b**``, ``*i*``, ``__u__``, ``~~s~~`` into commands."""
    out: list[str] = []
    pos = 0
    for m in _INLINE_RE.finditer(text):
        out.append(escape_latex(text[pos:m.start()]))
        kind = m.lastgroup
        out.append(f"{_INLINE_COMMANDS[kind]}{{{escape_latex(m.group(kind))}}}")
        pos = m.end()
    out.append(escape_latex(text[pos:]))
    return "".join(out)


# ---------------------------------------------------------------------------
# Deterministic fragments
# ---------------------------------------------------------------------------

def image_filename(image: ImageAsset) -> str:
    """Flat asset name used both in markup and in the compile request.

    Formats outside PNG/JPG/PDF are shipped under a ``.png`` name; the
    compiler detects the real format and converts them.
    """
    ext = (image.format or "png").lower().lstrip(".")
    if ext == "jpeg":
        ext = "jpg"
    if ext not in SUPPORTED_IMAGE_EXTS:
        ext = "png"
    return f"{image.id}.{ext}"


def render_figure(filename: str) -> str:
    return (
        "\\begin{figure}[H]\n"
        "  \\centering\n"
        f"  \\includegraphics[width=0.7\\textwidth]{{{filename}}}\n"
        "\\end{figure}"
    )


def _column_align(align: str) -> str:
    return {"center": "c", "right": "r"}.get(align, "l")


def render_table(table: Table) -> str:
    """Render a table as a ``booktabs`` tabular with spans and bold headers."""
    if not table.rows or table.col_count == 0:
        return ""

    alignments: list[str] = []
    for cell in table.rows[0]:
        alignments.extend(_column_align(cell.align) * max(cell.colspan, 1))
    while len(alignments) < table.col_count:
        alignments.append("l")

    lines = [
        "\\begin{table}[H]",
        "  \\centering",
        f"  \\begin{{tabular}}{{{''.join(alignments)}}}",
        "    \\toprule",
    ]
    for i, row in enumerate(table.rows):
        cells: list[str] = []
        for cell in row:
            text = escape_latex(cell.text)
            if cell.is_header:
                text = f"\\textbf{{{text}}}"
            if cell.colspan > 1:
                text = f"\\multicolumn{{{cell.colspan}}}{{{_column_align(cell.align)}}}{{{text}}}"
            if cell.rowspan > 1:
                text = f"\\multirow{{{cell.rowspan}}}{{*}}{{{text}}}"
            cells.append(text)
        lines.append("    " + " & ".join(cells) + " \\\\")
        if i == 0 and table.has_header_row:
            lines.append("    \\midrule")
    lines += [
        "    \\bottomrule",
        "  \\end{tabular}",
        "\\end{table}",
    ]
    return "\n".join(lines)


_BLOCK_MARKER_RE = re.compile(
    r"\[(?P<kind>IMAGE|TABLE|FOOTNOTE):\s*(?P<ref>[^\]\s]+)\s*\]"
    r"|\[QUOTE\]\n?(?P<quote>.*?)\n?\[/QUOTE\]",
    re.DOTALL,
)


def _render_paragraph(paragraph: str) -> str:
    lines = paragraph.strip("\n").split("\n")
    if lines and all(line.startswith("- ") for line in lines):
        items = "\n".join(f"  \\item {render_inline(line[2:])}" for line in lines)
        return f"\\begin{{itemize}}\n{items}\n\\end{{itemize}}"
    return render_inline(paragraph.strip("\n"))


def render_body(body: str, unit: StructuralUnit) -> str:
    """Deterministically render a body with its block markers resolved.

    Text is escaped before any markup is inserted, so generated commands are
    never escaped themselves.
    """
    images = {i.id: i for i in unit.images}
    tables = {t.id: t for t in unit.tables}
    footnotes = {f.id: f for f in unit.footnotes}

    out: list[str] = []
    pos = 0
    for m in _BLOCK_MARKER_RE.finditer(body):
        out.append(_render_text(body[pos:m.start()]))
        kind, ref = m.group("kind"), m.group("ref")
        if m.group("quote") is not None:
            out.append("\\begin{quote}\n" + _render_text(m.group("quote")) + "\n\\end{quote}")
        elif kind == "IMAGE" and ref in images:
            out.append("\n" + render_figure(image_filename(images[ref])) + "\n")
        elif kind == "TABLE" and ref in tables:
            out.append("\n" + render_table(tables[ref]) + "\n")
        elif kind == "FOOTNOTE" and ref in footnotes:
            out.append(f"\\footnote{{{render_inline(footnotes[ref].text)}}}")
        pos = m.end()
    out.append(_render_text(body[pos:]))
    return "".join(out).strip()


def _render_text(text: str) -> str:
    if not text:
        return ""
    parts = text.split("\n\n")
    rendered = [_render_paragraph(p) if p.strip() else "" for p in parts]
    return "\n\n".join(rendered)


def render_unit_fallback(
    unit: StructuralUnit,
    position: int,
    settings: TypesetSettings,
) -> str:
    """Template-based markup for a unit when the transcoder is unavailable."""
    top, sub, subsub = heading_commands(settings.document_type)
    lines: list[str] = []
    if not unit.is_continuation:
        title = unit.title or f"{UNTITLED_UNIT.get(settings.language, UNTITLED_UNIT['en'])} {position + 1}"
        lines.append(f"{top}{{{escape_latex(title)}}}")
        lines.append("")
    if unit.body.strip():
        lines.append(render_body(unit.body, unit))
        lines.append("")

    def _walk(units: list[StructuralUnit], depth: int) -> None:
        for s in units:
            cmd = sub if depth == 0 else subsub
            if s.title and not s.is_continuation:
                lines.append(f"{cmd}{{{escape_latex(s.title)}}}")
                lines.append("")
            if s.body.strip():
                lines.append(render_body(s.body, s))
                lines.append("")
            _walk(s.sub_units, depth + 1)

    _walk(unit.sub_units, 0)
    return "\n".join(lines).rstrip() + "\n"


# ---------------------------------------------------------------------------
# Preamble
# ---------------------------------------------------------------------------

def _line_spacing_cmd(spacing: float) -> str:
    if spacing == 1.0:
        return "% single spacing"
    if spacing == 1.5:
        return "\\onehalfspacing"
    if spacing == 2.0:
        return "\\doublespacing"
    return f"\\setstretch{{{spacing:g}}}"


def _geometry_options(plan: BuildPlan) -> str:
    geo = plan.geometry
    opts = [geo.paper_size, f"top={geo.top}", f"bottom={geo.bottom}"]
    for key in ("inner", "outer", "left", "right"):
        value = getattr(geo, key)
        if value:
            opts.append(f"{key}={value}")
    return ",".join(opts)


def generate_preamble(plan: BuildPlan, settings: TypesetSettings, cover: CoverInfo | None = None) -> str:
    """Build the preamble (everything before ``\\begin{document}``)."""
    cover = cover or CoverInfo()
    lang = settings.language
    babel = "turkish" if lang == "tr" else "english"
    features = settings.features
    doc_class = plan.document_class or CLASS_MAP[DocumentType(settings.document_type)]
    side = "twoside" if doc_class == "book" else "oneside"

    title = cover.title or DEFAULT_TITLE.get(lang, DEFAULT_TITLE["en"])
    author = cover.author or DEFAULT_AUTHOR.get(lang, DEFAULT_AUTHOR["en"])

    lines = [
        f"\\documentclass[{plan.font.font_size},{side}]{{{doc_class}}}",
        "\\usepackage[utf8]{inputenc}",
        "\\usepackage[T1]{fontenc}",
        f"\\usepackage[{babel}]{{babel}}",
        FONT_PACKAGES.get(plan.font.main_font, FONT_PACKAGES["ebgaramond"]),
        f"\\usepackage[{_geometry_options(plan)}]{{geometry}}",
        "\\usepackage{setspace}",
        _line_spacing_cmd(plan.font.line_spacing),
        "\\usepackage{graphicx}",
        "\\graphicspath{{images/}}",
    ]
    lines += [line for _, line in REQUIRED_PACKAGES]

    present = {name for name, _ in REQUIRED_PACKAGES} | {"setspace", "graphicx", "geometry"}
    for pkg in plan.required_packages:
        if pkg in SAFE_PACKAGES and pkg not in present:
            lines.append(f"\\usepackage{{{pkg}}}")
            present.add(pkg)

    if features.index:
        lines += ["\\usepackage{makeidx}", "\\makeindex"]
    if features.bibliography:
        lines.append(
            f"\\usepackage[backend=biber,style={plan.bibliography_style},sorting=nyt]{{biblatex}}"
        )
    style = _CHAPTER_STYLES.get(settings.chapter_style, "")
    # \chapter formatting only exists in chapter-based classes
    if style and ("\\chapter" not in style or doc_class in ("book", "report")):
        lines.append(style.rstrip("\n"))

    lines += [
        f"\\usepackage[pdftitle={{{escape_latex(title)}}},pdfauthor={{{escape_latex(author)}}}]{{hyperref}}",
        "",
        f"\\title{{{escape_latex(title)}" + (f"\\\\[1ex]\\large {escape_latex(cover.subtitle)}" if cover.subtitle else "") + "}",
        f"\\author{{{escape_latex(author)}}}",
        "\\date{}",
    ]
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Document assembly
# ---------------------------------------------------------------------------

def _endnotes_block(endnotes: list[Footnote], settings: TypesetSettings) -> str:
    if not endnotes:
        return ""
    title = ENDNOTES_TITLE.get(settings.language, ENDNOTES_TITLE["en"])
    level = "chapter" if heading_commands(settings.document_type)[0] == "\\chapter" else "section"
    items = "\n".join(f"  \\item {render_inline(en.text)}" for en in endnotes)
    return (
        f"\\{level}*{{{title}}}\n"
        f"\\addcontentsline{{toc}}{{{level}}}{{{title}}}\n\n"
        f"\\begin{{enumerate}}\n{items}\n\\end{{enumerate}}"
    )


def assemble_document(
    preamble: str,
    unit_markup: list[str],
    settings: TypesetSettings,
    *,
    endnotes: list[Footnote] | None = None,
) -> str:
    """Wrap chapter markup with front and back matter for the document type."""
    features = settings.features
    doc_type = DocumentType(settings.document_type)
    body = "\n\n".join(m.strip() for m in unit_markup)
    notes = _endnotes_block(endnotes or [], settings)

    parts: list[str] = [preamble.rstrip(), "", "\\begin{document}", ""]

    if doc_type is DocumentType.EXAM:
        parts += [body, ""]
        if notes:
            parts += [notes, ""]
        parts.append("\\end{document}")
        return "\n".join(parts) + "\n"

    page_break = "\n\\clearpage" if doc_type is not DocumentType.ARTICLE else ""
    front: list[str] = []
    if features.cover_page:
        front.append("\\maketitle" + page_break)
    if features.table_of_contents:
        front.append("\\tableofcontents" + page_break)
    if features.list_of_figures:
        front.append("\\listoffigures" + page_break)
    if features.list_of_tables:
        front.append("\\listoftables" + page_break)

    if doc_type is DocumentType.BOOK:
        parts += ["\\frontmatter", ""]
    parts += [f + "\n" for f in front]
    if doc_type is DocumentType.BOOK:
        parts += ["\\mainmatter", ""]
    parts += [body, ""]
    if doc_type is DocumentType.BOOK:
        parts += ["\\backmatter", ""]
    if notes:
        parts += [notes, ""]
    if features.bibliography:
        parts += ["\\printbibliography", ""]
    if features.index:
        parts += ["\\printindex", ""]
    parts.append("\\end{document}")
    return "\n".join(parts) + "\n"


# ---------------------------------------------------------------------------
# Assembler (preamble + transcoded units + normalization)
# ---------------------------------------------------------------------------

class UnitTranscoder(Protocol):
    def transcode(
        self,
        unit: StructuralUnit,
        position: int,
        plan: BuildPlan,
        settings: TypesetSettings,
    ) -> str: ...


def assemble(
    units: list[StructuralUnit],
    plan: BuildPlan,
    settings: TypesetSettings,
    cover: CoverInfo | None,
    transcoder: UnitTranscoder | None,
    *,
    on_unit: Callable[[int, int], None] | None = None,
    warnings: list[str] | None = None,
) -> str:
    """Build the complete document source for *units* (continuations included).

    Units are transcoded sequentially and concatenated in input order. A
    transcoder failure for one unit falls back to :func:`render_unit_fallback`
    and is recorded in *warnings*.
    """
    preamble = generate_preamble(plan, settings, cover)
    markup: list[str] = []
    endnotes: list[Footnote] = []
    total = len(units)

    for position, unit in enumerate(units):
        if on_unit is not None:
            on_unit(position, total)
        endnotes.extend(unit.endnotes)
        text = ""
        if transcoder is not None:
            try:
                text = transcoder.transcode(unit, position, plan, settings)
            except Exception as exc:
                logger.warning("Transcoding unit %d (%r) failed: %s", position, unit.title, exc)
                if warnings is not None:
                    warnings.append(f"Unit {position + 1} was typeset without enrichment")
        if not text.strip():
            text = render_unit_fallback(unit, position, settings)
        markup.append(text)

    document = assemble_document(preamble, markup, settings, endnotes=endnotes)
    logger.info("Assembled document: %d chars, %d units", len(document), total)
    return normalize(document)
