"""Structural and plausibility checks over produced PDF bytes.

All checks are pure functions of the bytes, the build plan estimate and the
compiler's page count. Only ``errors`` fail a job; ``warnings`` are kept on
the job record.
"""

from __future__ import annotations

import logging
import re

from ..models import BuildPlan, Quality, ValidationReport
from .page_counter import count_page_markers, object_text

logger = logging.getLogger(__name__)

MIN_PDF_BYTES = 1000
MAX_PDF_BYTES = 500 * 1024 * 1024
PDF_SIGNATURE = b"%PDF-"
MIN_PAGE_RATIO = 0.3
MAX_PAGE_RATIO = 3.0
# Below this share of /Contents streams per page the output is likely blank
MIN_CONTENT_DENSITY = 0.5
DENSITY_MIN_PAGES = 5

_FONT_RE = re.compile(rb"/Type\s*/Font(?![A-Za-z])")
_CONTENTS_RE = re.compile(rb"/Contents[\s\d]")
_IMAGE_RE = re.compile(rb"/Subtype\s*/Image")


def quality_for(errors: list[str], warnings: list[str]) -> Quality:
    if errors:
        return Quality.POOR
    if warnings:
        return Quality.GOOD
    return Quality.EXCELLENT


def validate_pdf(
    data: bytes,
    plan: BuildPlan | None = None,
    reported_page_count: int | None = None,
) -> ValidationReport:
    """Inspect *data* and classify it as excellent, good or poor.

    The compiler-reported page count wins whenever it is known (an explicit
    ``0`` stays ``0``); otherwise page objects are counted in the raw bytes.
    """
    errors: list[str] = []
    warnings: list[str] = []
    size = len(data)
    size_mb = round(size / (1024 * 1024), 2)

    if size < MIN_PDF_BYTES:
        errors.append(f"PDF is too small ({size} bytes); content is probably missing")
    if size > MAX_PDF_BYTES:
        warnings.append(f"PDF is very large: {size_mb} MB")

    if data[:5] != PDF_SIGNATURE:
        errors.append("Invalid PDF file: missing %PDF- header")

    if reported_page_count is not None:
        page_count = reported_page_count
    else:
        page_count = count_page_markers(data)
    if page_count == 0:
        errors.append("PDF has no pages")

    estimate = plan.estimated_total_pages if plan else 0
    if estimate > 0 and page_count > 0:
        ratio = page_count / estimate
        if ratio < MIN_PAGE_RATIO:
            warnings.append(f"Far fewer pages than expected: {page_count} / ~{estimate}")
        elif ratio > MAX_PAGE_RATIO:
            warnings.append(f"Far more pages than expected: {page_count} / ~{estimate}")

    objects = object_text(data)
    font_count = len(_FONT_RE.findall(objects))
    if font_count == 0:
        warnings.append("No embedded fonts found in PDF")

    contents = len(_CONTENTS_RE.findall(objects))
    if page_count > DENSITY_MIN_PAGES and contents < page_count * MIN_CONTENT_DENSITY:
        warnings.append("High share of blank pages suspected")

    image_count = len(_IMAGE_RE.findall(data))
    has_outline = b"/Outlines" in objects

    logger.info(
        "PDF validation: %d pages, %.2f MB, %d fonts, %d images, %d warnings, %d errors",
        page_count, size_mb, font_count, image_count, len(warnings), len(errors),
    )
    return ValidationReport(
        page_count=page_count,
        file_size_mb=size_mb,
        font_count=font_count,
        image_count=image_count,
        has_outline=has_outline,
        warnings=warnings,
        errors=errors,
        quality=quality_for(errors, warnings),
    )
