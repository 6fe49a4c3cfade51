"""Page counting: ``pdfinfo`` metadata, LaTeX log fallback, raw page markers."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import zlib
from pathlib import Path

logger = logging.getLogger(__name__)

PDFINFO_TIMEOUT = 5

_OUTPUT_WRITTEN_RE = re.compile(r"Output written on .+?\((\d+)\s+page")
# "/Type /Page" but not "/Type /Pages"
_PAGE_MARKER_RE = re.compile(rb"/Type\s*/Page[^s]")
# Compressed object stream header; its objects are invisible to raw regexes
_OBJSTM_RE = re.compile(rb"<<[^>]*/Type\s*/ObjStm[^>]*>>\s*stream\r?\n")


def pdfinfo_available() -> bool:
    """Check if pdfinfo (from poppler-utils) is on PATH."""
    return shutil.which("pdfinfo") is not None


def pdf_info(pdf_path: str | Path) -> dict[str, str]:
    """Return ``pdfinfo`` output as a ``{key: value}`` dict (empty on failure)."""
    if not pdfinfo_available():
        return {}
    try:
        result = subprocess.run(
            ["pdfinfo", str(pdf_path)],
            capture_output=True,
            text=True,
            timeout=PDFINFO_TIMEOUT,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        logger.warning("pdfinfo failed for %s: %s", pdf_path, exc)
        return {}
    if result.returncode != 0:
        return {}

    info: dict[str, str] = {}
    for line in result.stdout.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            info[key.strip()] = value.strip()
    return info


def count_pages(pdf_path: str | Path) -> int | None:
    """Count pages in a compiled PDF.

    Uses ``pdfinfo`` when available, then the ``Output written on`` line of
    the sibling ``.log``. Returns ``None`` when neither source knows.
    """
    pdf = Path(pdf_path)
    if pdf.exists():
        pages = pdf_info(pdf).get("Pages")
        if pages is not None:
            try:
                return int(pages)
            except ValueError:
                logger.warning("Unexpected pdfinfo page count %r", pages)

    return count_pages_from_log(pdf.with_suffix(".log"))


def count_pages_from_log(log_path: str | Path) -> int | None:
    log = Path(log_path)
    if not log.exists():
        return None
    try:
        text = log.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    m = _OUTPUT_WRITTEN_RE.search(text)
    return int(m.group(1)) if m else None


def object_text(data: bytes) -> bytes:
    """Raw PDF bytes followed by the inflated contents of every object stream.

    pdflatex stores page, font and outline dictionaries in Flate-compressed
    ``/ObjStm`` streams by default. Streams that fail to inflate are skipped.
    """
    chunks = [data]
    for m in _OBJSTM_RE.finditer(data):
        if b"/FlateDecode" not in m.group(0):
            continue
        end = data.find(b"endstream", m.end())
        if end < 0:
            continue
        try:
            chunks.append(zlib.decompressobj().decompress(data[m.end():end]))
        except zlib.error as exc:
            logger.debug("Skipping unreadable object stream at %d: %s", m.start(), exc)
    return b"\n".join(chunks)


def count_page_markers(data: bytes) -> int:
    """Count ``/Type /Page`` objects, including those inside object streams."""
    return len(_PAGE_MARKER_RE.findall(object_text(data)))
