"""Image format detection and conversion for the compile scratch directory.

pdflatex only embeds PNG, JPEG and PDF. Files are classified by their magic
bytes (the extension is not trusted) and anything else is rasterized to PNG
with the first external converter that succeeds:

1. ``inkscape`` (EMF/WMF/SVG at 300 dpi)
2. ImageMagick ``convert``
3. ``rsvg-convert`` (SVG only)

A file no converter can handle is restored untouched and reported as failed.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from ..models import ImageReport

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = frozenset({"png", "jpeg", "pdf"})

# ---------------------------------------------------------------------------
# Magic-byte detection
# ---------------------------------------------------------------------------


def detect_format(data: bytes) -> str:
    """Classify image bytes; returns ``"unknown"`` for anything unrecognized."""
    if not data or len(data) < 8:
        return "unknown"

    head = data[:4]
    if head == b"\x89PNG":
        return "png"
    if data[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if head == b"%PDF":
        return "pdf"
    if head == b"GIF8":
        return "gif"
    if data[:2] == b"BM":
        return "bmp"
    if head in (b"II*\x00", b"MM\x00*"):
        return "tiff"
    if head == b"RIFF" and len(data) > 11 and data[8:12] == b"WEBP":
        return "webp"
    # EMF header record type 1. Most files carry " EMF" at offset 40 but not
    # all writers set it, so any long enough record-1 header counts.
    if head == b"\x01\x00\x00\x00" and len(data) > 44:
        return "emf"
    if head in (b"\xd7\xcd\xc6\x9a", b"\x01\x00\x09\x00"):
        return "wmf"

    text = data[:500].decode("utf-8", errors="ignore")
    if "<svg" in text or ("<?xml" in text and "svg" in text):
        return "svg"
    return "unknown"


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _converter_commands(src: Path, dst: Path, fmt: str) -> list[tuple[str, list[str]]]:
    commands = [
        ("inkscape", ["inkscape", str(src), "--export-type=png", f"--export-filename={dst}", "--export-dpi=300"]),
        ("convert", ["convert", str(src), str(dst)]),
    ]
    if fmt == "svg":
        commands.append(("rsvg-convert", ["rsvg-convert", "-f", "png", "-o", str(dst), str(src)]))
    return commands


def convert_to_png(path: Path, fmt: str, *, timeout: int = 30) -> bool:
    """Rasterize *path* to ``<stem>.png`` in place.

    The source is first renamed to carry its real extension so the
    converters pick the right reader. On failure it is renamed back.
    """
    src = path.with_suffix(f".{fmt}")
    dst = path.with_suffix(".png")
    path.rename(src)

    env = {**os.environ, "DISPLAY": ""}
    for name, cmd in _converter_commands(src, dst, fmt):
        if shutil.which(cmd[0]) is None:
            continue
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env)
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %ds on %s", name, timeout, src.name)
            continue
        except OSError as exc:
            logger.warning("%s failed on %s: %s", name, src.name, exc)
            continue
        if dst.exists() and dst.stat().st_size > 0:
            logger.info("%s: %s -> %s", name, src.name, dst.name)
            if src != dst:
                src.unlink(missing_ok=True)
            return True

    logger.error("All conversion methods failed for %s", path.name)
    if src != path:
        src.rename(path)
    return False


def normalize_images(images_dir: str | Path, *, timeout: int = 30, workers: int = 3) -> ImageReport:
    """Convert every unsupported image in *images_dir*, at most *workers* at once.

    Only ``converted``, ``failed`` and ``failed_files`` are filled in.
    """
    report = ImageReport()
    folder = Path(images_dir)
    if not folder.is_dir():
        return report

    pending: list[tuple[Path, str]] = []
    for path in sorted(folder.iterdir()):
        if not path.is_file():
            continue
        fmt = detect_format(path.read_bytes())
        if fmt in SUPPORTED_FORMATS:
            continue
        logger.info("Image %s detected as %s, converting", path.name, fmt)
        pending.append((path, fmt))

    if not pending:
        return report

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(convert_to_png, path, fmt, timeout=timeout) for path, fmt in pending]
        for (path, _), future in zip(pending, futures):
            try:
                ok = future.result()
            except OSError as exc:
                logger.error("Converting %s raised: %s", path.name, exc)
                ok = False
            if ok:
                report.converted += 1
            else:
                report.failed += 1
                report.failed_files.append(path.name)

    logger.info("Image conversion: %d converted, %d failed", report.converted, report.failed)
    return report
