"""StructurePlanner agent — turns a parsed document and settings into a BuildPlan.

Page geometry, font and document class always come from the settings. The
LLM only proposes extra packages, per-chapter page estimates and the
bibliography style; when it is unavailable or answers with something that
does not parse, :func:`fallback_plan` is used on its own.
"""

from __future__ import annotations

import json
import logging
import math

import autogen
from pydantic import BaseModel, Field

from ..config import build_role_llm_config, llm_available
from ..errors import CollaboratorError
from ..models import (
    BuildPlan,
    ChapterEstimate,
    DocumentType,
    FontSetup,
    GeometrySettings,
    ParsedDocument,
    PipelineStep,
    ServiceConfig,
    StructuralUnit,
    TypesetSettings,
)
from ..parser.docx_parser import WORDS_PER_PAGE, count_words
from ..tools.latex_builder import CLASS_MAP, MARGIN_PRESETS, PAPER_SIZES, UNTITLED_UNIT
from .responses import ask, extract_json

logger = logging.getLogger(__name__)

# One-sided classes use symmetric left/right margins instead of inner/outer
ONESIDE_MARGINS = {
    "standard": {"top": "25mm", "bottom": "25mm", "left": "25mm", "right": "25mm"},
    "wide": {"top": "30mm", "bottom": "30mm", "left": "30mm", "right": "25mm"},
    "narrow": {"top": "20mm", "bottom": "20mm", "left": "20mm", "right": "15mm"},
}

FALLBACK_PACKAGES = [
    "babel", "geometry", "setspace", "fancyhdr", "titlesec", "tocloft",
    "graphicx", "float", "booktabs", "longtable", "hyperref", "microtype",
    "inputenc", "fontenc",
]

SYSTEM_PROMPT = """\
You are a professional book typesetter planning a LaTeX build.

Given the chapter outline and statistics of a document, decide:
- Which additional LaTeX packages the content needs
- An estimated page count per chapter
- The biblatex style to use if a bibliography is present
- The estimated total page count

Page size, margins, fonts and the document class are fixed by the user's
settings; do not change them.

Output ONLY a valid JSON object:
{
  "required_packages": ["microtype", "longtable"],
  "chapter_structure": [{"title": "Introduction", "estimated_pages": 12}],
  "bibliography_style": "authoryear",
  "estimated_total_pages": 240
}
"""


class PlanProposal(BaseModel):
    """The part of a build plan the LLM is allowed to decide."""
    required_packages: list[str] = Field(default_factory=list)
    chapter_structure: list[ChapterEstimate] = Field(default_factory=list)
    bibliography_style: str = "authoryear"
    estimated_total_pages: int = 0


def make_structure_planner(config: ServiceConfig) -> autogen.AssistantAgent:
    """Create the StructurePlanner agent."""
    agent = autogen.AssistantAgent(
        name="StructurePlanner",
        system_message=SYSTEM_PROMPT,
        llm_config=build_role_llm_config("planner", config),
    )
    if isinstance(agent.llm_config, dict):
        agent.llm_config["response_format"] = PlanProposal
    return agent


def _unit_words(unit: StructuralUnit) -> int:
    return count_words(unit.body) + sum(_unit_words(s) for s in unit.sub_units)


def geometry_for(settings: TypesetSettings) -> GeometrySettings:
    doc_type = DocumentType(settings.document_type)
    presets = MARGIN_PRESETS if doc_type is DocumentType.BOOK else ONESIDE_MARGINS
    margins = presets.get(settings.margins, presets["standard"])
    return GeometrySettings(paper_size=PAPER_SIZES.get(settings.page_size, "a5paper"), **margins)


def fallback_plan(parsed: ParsedDocument, settings: TypesetSettings) -> BuildPlan:
    """Deterministic plan derived from settings and word counts only."""
    untitled = UNTITLED_UNIT.get(settings.language, UNTITLED_UNIT["en"])
    chapters = [
        ChapterEstimate(
            title=unit.title or f"{untitled} {i + 1}",
            estimated_pages=math.ceil(_unit_words(unit) / WORDS_PER_PAGE),
        )
        for i, unit in enumerate(parsed.units)
    ]
    total = parsed.metadata.estimated_pages or sum(c.estimated_pages for c in chapters)
    return BuildPlan(
        document_class=CLASS_MAP[DocumentType(settings.document_type)],
        required_packages=list(FALLBACK_PACKAGES),
        geometry=geometry_for(settings),
        font=FontSetup(
            main_font=settings.font_family,
            font_size=settings.font_size,
            line_spacing=settings.line_spacing,
        ),
        chapter_structure=chapters,
        bibliography_style="authoryear",
        estimated_total_pages=total,
    )


def _outline_message(parsed: ParsedDocument, settings: TypesetSettings) -> str:
    outline = [
        {
            "title": unit.title,
            "words": _unit_words(unit),
            "sub_units": len(unit.sub_units),
            "tables": len(unit.tables),
            "images": sum(1 for _ in unit.iter_images()),
        }
        for unit in parsed.units
    ]
    return (
        f"Document type: {DocumentType(settings.document_type).value}\n"
        f"Page size: {settings.page_size}, font: {settings.font_family} {settings.font_size}, "
        f"line spacing: {settings.line_spacing}, language: {settings.language}\n"
        f"Features: {settings.features.model_dump_json()}\n\n"
        f"Chapters:\n{json.dumps(outline, indent=2, ensure_ascii=False)}\n\n"
        f"Metadata:\n{parsed.metadata.model_dump_json(indent=2)}"
    )


class StructurePlanner:
    """Produce a :class:`BuildPlan`, asking the LLM when one is configured."""

    def __init__(self, config: ServiceConfig, *, use_llm: bool | None = None, allow_fallback: bool = True) -> None:
        self.config = config
        self.use_llm = llm_available(config) if use_llm is None else use_llm
        self.allow_fallback = allow_fallback

    def plan(self, parsed: ParsedDocument, settings: TypesetSettings) -> BuildPlan:
        base = fallback_plan(parsed, settings)
        if not self.use_llm:
            return base

        proposal: PlanProposal | None = None
        try:
            response = ask(make_structure_planner(self.config), _outline_message(parsed, settings))
            proposal = extract_json(response, PlanProposal)
        except Exception as exc:
            logger.warning("Structure planner call failed: %s", exc)

        if proposal is None:
            if not self.allow_fallback:
                raise CollaboratorError("Structure planner returned no usable plan",
                                        step=PipelineStep.ANALYZING)
            logger.warning("Using fallback build plan")
            return base

        logger.info("Build plan from planner: ~%d pages", proposal.estimated_total_pages)
        return base.model_copy(update={
            "required_packages": proposal.required_packages or base.required_packages,
            "chapter_structure": proposal.chapter_structure or base.chapter_structure,
            "bibliography_style": proposal.bibliography_style or base.bibliography_style,
            "estimated_total_pages": proposal.estimated_total_pages or base.estimated_total_pages,
        })
