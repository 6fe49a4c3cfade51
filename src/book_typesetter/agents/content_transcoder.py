"""ContentTranscoder agent — converts one structural unit into LaTeX body markup.

Tables are rendered deterministically and handed to the LLM ready-made; it
only places them. The same module hosts the compile-repair agent, which
receives a failing document plus the head of its error log and returns the
whole corrected source.
"""

from __future__ import annotations

import logging

import autogen

from ..config import build_role_llm_config
from ..models import BuildPlan, DocumentType, ServiceConfig, StructuralUnit, TypesetSettings
from ..tools.latex_builder import heading_commands, image_filename, render_table
from .responses import ask, extract_text

logger = logging.getLogger(__name__)

REPAIR_LOG_CHARS = 3000

SYSTEM_PROMPT_TEMPLATE = """\
You are an expert LaTeX typesetter. Convert the given chapter text into clean LaTeX body markup.

Headings:
- Start with {top}{{Title}} (numbering is automatic).
- Sub-headings: {sub}{{...}}, {subsub}{{...}}.
{class_note}
Rules:
- Leave a blank line between paragraphs.
- Images: replace each [IMAGE: id] placeholder, exactly where it stands, with
  \\begin{{figure}}[H]
    \\centering
    \\includegraphics[width=0.7\\textwidth]{{FILENAME}}
  \\end{{figure}}
  using the file name from the image list. Write the bare file name without an
  "images/" prefix. Add no caption or label.
- Tables: replace each [TABLE: n] placeholder with the ready-made LaTeX given
  for that table, unchanged.
- Footnotes: replace each [FOOTNOTE: n] marker with \\footnote{{text}} using the
  footnote texts provided.
- Quotes: turn [QUOTE] ... [/QUOTE] blocks into \\begin{{quote}} ... \\end{{quote}}.
- Formatting: **bold** -> \\textbf{{}}, *italic* -> \\textit{{}},
  __underline__ -> \\underline{{}}, ~~strike~~ -> \\sout{{}}.
- Lines starting with "- " become \\item entries of an itemize environment.
- Escape &, %, $, #, _ in running text. Write non-ASCII letters directly.

Output only the LaTeX for this unit: no preamble, no \\begin{{document}} or
\\end{{document}}, no explanations, no markdown fences.
"""

REPAIR_PROMPT = """\
You are a LaTeX error repair specialist. The given document fails to compile.

1. Analyse the error log.
2. Find the root cause.
3. Return the COMPLETE corrected document, not only the changed part.

Rules:
- Return only the corrected LaTeX, without explanations.
- Add missing packages with \\usepackage.
- Close unclosed environments and fix malformed commands.
- \\sout needs \\usepackage[normalem]{ulem}; \\multirow needs \\usepackage{multirow}.
- Keep the text content unchanged.
"""


def make_content_transcoder(config: ServiceConfig, settings: TypesetSettings) -> autogen.AssistantAgent:
    """Create the ContentTranscoder agent for the settings' document type."""
    top, sub, subsub = heading_commands(settings.document_type)
    doc_type = DocumentType(settings.document_type)
    if doc_type is DocumentType.ARTICLE:
        class_note = "- Do NOT use \\chapter; the article class has no chapters.\n"
    elif doc_type is DocumentType.EXAM:
        class_note = "- Use only unnumbered (starred) headings; do NOT use \\chapter.\n"
    else:
        class_note = ""
    return autogen.AssistantAgent(
        name="ContentTranscoder",
        system_message=SYSTEM_PROMPT_TEMPLATE.format(top=top, sub=sub, subsub=subsub, class_note=class_note),
        llm_config=build_role_llm_config("transcoder", config),
    )


def make_repair_agent(config: ServiceConfig) -> autogen.AssistantAgent:
    """Create the LaTeX repair agent."""
    return autogen.AssistantAgent(
        name="LatexRepair",
        system_message=REPAIR_PROMPT,
        llm_config=build_role_llm_config("repair", config),
    )


def _walk_sub_units(units: list[StructuralUnit], depth: int, out: list[str]) -> None:
    marker = "-" * (depth + 3)
    for s in units:
        title = f"{s.title} (continued, no heading)" if s.is_continuation else s.title
        out.append(f"\n{marker} {title} {marker}\n{s.body}")
        _walk_sub_units(s.sub_units, depth + 1, out)


def _all_units(unit: StructuralUnit):
    yield unit
    for s in unit.sub_units:
        yield from _all_units(s)


def build_unit_message(unit: StructuralUnit, position: int, settings: TypesetSettings) -> str:
    """User message for one unit: text, sub-units, images, tables and notes."""
    top, sub, subsub = heading_commands(settings.document_type)
    parts: list[str] = []
    if unit.is_continuation:
        parts.append(
            f"IMPORTANT: this is a continuation of the previous unit (part {unit.part}). "
            f"Do NOT emit {top}; start directly with paragraph text. "
            f"Use {sub} or {subsub} only where the text has sub-headings."
        )
    parts.append(f"Unit {position + 1}:\nTitle: {unit.title}\n\nContent:\n{unit.body}")

    if unit.sub_units:
        parts.append("\nSub-units:")
        _walk_sub_units(unit.sub_units, 0, parts)

    images = list(unit.iter_images())
    if images:
        parts.append("\nImages (place each where its placeholder stands):")
        for img in images:
            parts.append(f"- [IMAGE: {img.id}] -> file: {image_filename(img)}, caption: {img.caption}")

    tables = [t for u in _all_units(unit) for t in u.tables]
    if tables:
        parts.append("\nTables (use this LaTeX as-is, do not change it):")
        for table in tables:
            parts.append(f"\n[TABLE: {table.id}]\n{render_table(table)}\n[/TABLE]")

    footnotes = [f for u in _all_units(unit) for f in u.footnotes]
    if footnotes:
        parts.append("\nFootnotes (replace each [FOOTNOTE: n] marker with \\footnote{text}):")
        for fn in footnotes:
            parts.append(f"[{fn.id}] {fn.text}")

    return "\n".join(parts)


class ContentTranscoder:
    """LLM-backed unit transcoder and compile-repair function.

    ``transcode`` lets exceptions propagate; the assembler owns the fallback.
    ``repair`` returns ``None`` instead of raising so a failed repair simply
    retries the same source.
    """

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config

    def transcode(
        self,
        unit: StructuralUnit,
        position: int,
        plan: BuildPlan,
        settings: TypesetSettings,
    ) -> str:
        agent = make_content_transcoder(self.config, settings)
        response = ask(agent, build_unit_message(unit, position, settings))
        latex = extract_text(response)
        logger.info("Unit %d transcoded (%d chars)", position + 1, len(latex))
        return latex

    def repair(self, source: str, diagnostic: str) -> str | None:
        message = (
            f"ERROR LOG (first {REPAIR_LOG_CHARS} characters):\n{diagnostic[:REPAIR_LOG_CHARS]}\n\n"
            f"--- LATEX SOURCE ---\n{source}"
        )
        try:
            response = ask(make_repair_agent(self.config), message)
        except Exception as exc:
            logger.error("LaTeX repair call failed: %s", exc)
            return None
        fixed = extract_text(response)
        logger.info("LaTeX repair generated (%d chars)", len(fixed))
        return fixed or None
