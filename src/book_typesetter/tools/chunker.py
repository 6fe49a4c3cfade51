"""Split oversized structural units into paragraph-aligned parts.

A unit's size is the UTF-8 length of the JSON serialization of its body,
nested sub-units and table cell text (image payloads are not counted).
Units within the limit pass through as the very same object; larger units
are replaced by sequential parts whose bodies concatenate back to the
original body exactly.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..models import StructuralUnit, Table

logger = logging.getLogger(__name__)

PART_BUDGET_RATIO = 0.8
PARAGRAPH_SEPARATOR = "\n\n"

_IMAGE_REF_RE = re.compile(r"\[IMAGE:\s*([^\]\s]+)\s*\]")
_TABLE_REF_RE = re.compile(r"\[TABLE:\s*([^\]\s]+)\s*\]")
_FOOTNOTE_REF_RE = re.compile(r"\[FOOTNOTE:\s*([^\]\s]+)\s*\]")


# ---------------------------------------------------------------------------
# Size measurement
# ---------------------------------------------------------------------------

def _table_payload(table: Table) -> list[list[str]]:
    return [[cell.text for cell in row] for row in table.rows]


def _unit_payload(unit: StructuralUnit) -> dict[str, Any]:
    return {
        "title": unit.title,
        "body": unit.body,
        "sub_units": [_unit_payload(s) for s in unit.sub_units],
        "tables": [_table_payload(t) for t in unit.tables],
    }


def _json_bytes(value: Any) -> int:
    return len(json.dumps(value, ensure_ascii=False).encode("utf-8"))


def serialized_size(unit: StructuralUnit) -> int:
    """Size of *unit* in bytes as measured against the chunk limit."""
    return _json_bytes(_unit_payload(unit))


def _escaped_len(text: str) -> int:
    """JSON-escaped UTF-8 length of *text* without the surrounding quotes."""
    return _json_bytes(text) - 2


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

def split_paragraphs(body: str) -> list[str]:
    """Split *body* on blank lines, keeping each separator on the preceding paragraph.

    ``"".join(split_paragraphs(body)) == body`` always holds.
    """
    pieces = body.split(PARAGRAPH_SEPARATOR)
    out = [p + PARAGRAPH_SEPARATOR for p in pieces[:-1]]
    if pieces[-1] or not out:
        out.append(pieces[-1])
    return out


def _part(unit: StructuralUnit, index: int, part_no: int, body: str, **extra: Any) -> StructuralUnit:
    fields = {
        "title": unit.title,
        "body": body,
        "level": unit.level,
        "sub_units": [],
        "images": [],
        "tables": [],
        "footnotes": [],
        "endnotes": [],
        "source_index": index,
        "part": part_no,
    }
    fields.update(extra)
    return StructuralUnit(**fields)


def split_unit(unit: StructuralUnit, index: int, max_size_bytes: int) -> list[StructuralUnit]:
    """Split one oversized unit into ordered parts.

    Parts are packed greedily by paragraph up to ``0.8 * max_size_bytes``.
    A paragraph larger than that budget on its own becomes a part by itself.
    Images, tables and footnotes follow the part whose body references them;
    unreferenced ones go to the last body part. Sub-units are packed into
    trailing parts after the body; one that cannot fit a part by itself is
    split recursively, its later pieces marked as continuations.
    """
    budget = int(max_size_bytes * PART_BUDGET_RATIO)
    overhead = serialized_size(_part(unit, index, 1, ""))
    tables_by_id = {t.id: t for t in unit.tables}

    def _cost(paragraph: str) -> int:
        cost = _escaped_len(paragraph)
        for ref in _TABLE_REF_RE.findall(paragraph):
            table = tables_by_id.get(ref)
            if table is not None:
                cost += _json_bytes(_table_payload(table)) + 1
        return cost

    groups: list[list[str]] = []
    current: list[str] = []
    current_cost = overhead
    for paragraph in split_paragraphs(unit.body):
        cost = _cost(paragraph)
        if current and current_cost + cost > budget:
            groups.append(current)
            current, current_cost = [], overhead
        current.append(paragraph)
        current_cost += cost
    if current:
        groups.append(current)

    images = {i.id: i for i in unit.images}
    footnotes = {f.id: f for f in unit.footnotes}
    tables = dict(tables_by_id)

    parts: list[StructuralUnit] = []
    for n, group in enumerate(groups, start=1):
        body = "".join(group)
        parts.append(_part(
            unit, index, n, body,
            images=[images.pop(ref) for ref in _IMAGE_REF_RE.findall(body) if ref in images],
            tables=[tables.pop(ref) for ref in _TABLE_REF_RE.findall(body) if ref in tables],
            footnotes=[footnotes.pop(ref) for ref in _FOOTNOTE_REF_RE.findall(body) if ref in footnotes],
        ))

    # Leftovers ride on the last body part
    last = parts[-1]
    parts[-1] = last.model_copy(update={
        "images": last.images + list(images.values()),
        "tables": last.tables + list(tables.values()),
        "footnotes": last.footnotes + list(footnotes.values()),
    })
    parts[0] = parts[0].model_copy(update={"endnotes": list(unit.endnotes)})

    # Sub-units: attach to the last part while it fits, then open new parts.
    # A sub-unit too large for a part of its own is split the same way.
    for sub in unit.sub_units:
        alone = serialized_size(_part(unit, index, 1, "", sub_units=[sub]))
        pieces = [sub]
        if alone > budget and max_size_bytes > overhead:
            pieces = split_unit(sub, index, max_size_bytes - overhead)
            logger.debug("Sub-unit %r of unit %d split into %d pieces", sub.title, index, len(pieces))
        for piece in pieces:
            target = parts[-1]
            candidate = target.model_copy(update={"sub_units": target.sub_units + [piece]})
            if serialized_size(candidate) <= budget:
                parts[-1] = candidate
            else:
                parts.append(_part(unit, index, len(parts) + 1, "", sub_units=[piece]))

    return parts


def chunk(units: list[StructuralUnit], max_size_bytes: int) -> list[StructuralUnit]:
    """Replace every unit larger than *max_size_bytes* by its parts.

    The input list and its units are never mutated.
    """
    if max_size_bytes <= 0:
        raise ValueError("max_size_bytes must be positive")

    out: list[StructuralUnit] = []
    for index, unit in enumerate(units):
        size = serialized_size(unit)
        if size <= max_size_bytes:
            out.append(unit)
            continue
        parts = split_unit(unit, index, max_size_bytes)
        if len(parts) == 1:
            logger.warning("Unit %d (%r) is %d bytes but cannot be split further", index, unit.title, size)
            out.append(unit)
            continue
        logger.info("Unit %d (%r) split into %d parts (%d bytes)", index, unit.title, len(parts), size)
        out.extend(parts)
    return out
