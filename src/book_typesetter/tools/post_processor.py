"""Normalization passes applied to the assembled LaTeX source.

Each pass is a plain ``str -> str`` function; :func:`normalize` runs them in
order. Generated chapter markup may still contain parser placeholders or
floating figures, and the compiler only sees a flat asset directory.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

# \includegraphics[...]{images/foo.png} -> \includegraphics[...]{foo.png}
_IMAGE_PREFIX_RE = re.compile(r"\\includegraphics(\[[^\]]*\])?\{(?:\./)?images/")

_PLACEHOLDER_RES = [
    re.compile(r"\[IMAGE:\s*[^\]\s]+\s*\]"),
    re.compile(r"\[FOOTNOTE:\s*[^\]\s]+\s*\]"),
    re.compile(r"\[TABLE:\s*[^\]\s]+\s*\]"),
]

_FIGURE_WITH_PLACEMENT_RE = re.compile(r"\\begin\{figure\}\[(?!H\])[^\]]*\]")
_FIGURE_NO_PLACEMENT_RE = re.compile(r"\\begin\{figure\}(?!\[)")

_QUOTE_MARKER_RE = re.compile(r"\[QUOTE\]\n?(.*?)\n?\[/QUOTE\]", re.DOTALL)


def strip_image_prefix(source: str) -> str:
    """Drop the ``images/`` directory from every ``\\includegraphics`` path."""
    return _IMAGE_PREFIX_RE.sub(lambda m: r"\includegraphics" + (m.group(1) or "") + "{", source)


def strip_placeholders(source: str) -> str:
    """Remove any ``[IMAGE: ..]``, ``[FOOTNOTE: ..]`` or ``[TABLE: ..]`` left unresolved."""
    for pattern in _PLACEHOLDER_RES:
        source = pattern.sub("", source)
    return source


def force_figure_here(source: str) -> str:
    """Pin every figure environment with ``[H]`` (requires the ``float`` package)."""
    source = _FIGURE_WITH_PLACEMENT_RE.sub(r"\\begin{figure}[H]", source)
    return _FIGURE_NO_PLACEMENT_RE.sub(r"\\begin{figure}[H]", source)


def convert_quote_markers(source: str) -> str:
    """Turn leftover ``[QUOTE]...[/QUOTE]`` blocks into ``quote`` environments."""
    return _QUOTE_MARKER_RE.sub(lambda m: "\\begin{quote}\n" + m.group(1) + "\n\\end{quote}", source)


POST_PROCESSORS = (
    strip_image_prefix,
    strip_placeholders,
    force_figure_here,
    convert_quote_markers,
)


def normalize(source: str) -> str:
    """Apply every normalization pass in :data:`POST_PROCESSORS`."""
    result = source
    for fn in POST_PROCESSORS:
        result = fn(result)
    if result != source:
        logger.info("Post-processing changed the assembled source (%d -> %d chars)", len(source), len(result))
    return result
