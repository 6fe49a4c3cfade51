"""Sandboxed multi-pass LaTeX compilation with log error extraction.

The pass sequence mirrors what ``latexmk`` would do for a book, spelled out
so every step has its own timeout::

    pdflatex  (pass 1)
    biber     (only if main.bcf exists)
    makeindex (only if main.idx exists)
    pdflatex  (pass 2, cross-references)
    pdflatex  (pass 3, final)

A non-zero exit from a single pass is not fatal; pdflatex exits 1 on
recoverable warnings, and a helper that is not installed is skipped.
Only a missing PDF after the last pass is a failure.
"""

from __future__ import annotations

import base64
import logging
import os
import shutil
import subprocess
import uuid
from pathlib import Path

from ..models import Asset, CompilationResult, ImageReport
from .image_convert import normalize_images
from .page_counter import count_pages

logger = logging.getLogger(__name__)

MAX_ERRORS = 10
LOG_TAIL_CHARS = 5000
BIBER_TIMEOUT = 60
MAKEINDEX_TIMEOUT = 30
VALIDATE_TIMEOUT = 30

# Shell escape off; writes restricted to the job directory (openout_any=p)
ENGINE_FLAGS = ("-interaction=nonstopmode", "-no-shell-escape", "-halt-on-error")

# ---------------------------------------------------------------------------
# Tool availability
# ---------------------------------------------------------------------------


def _find_engine(engine: str) -> str | None:
    """Find the LaTeX engine executable (pdflatex, xelatex, lualatex)."""
    return shutil.which(engine)


def engine_version(engine: str = "pdflatex") -> str:
    """First line of ``<engine> --version``, or ``"unknown"``."""
    cmd = _find_engine(engine)
    if not cmd:
        return "unknown"
    try:
        proc = subprocess.run([cmd, "--version"], capture_output=True, text=True, timeout=10)
    except (subprocess.TimeoutExpired, OSError):
        return "unknown"
    lines = (proc.stdout or "").strip().splitlines()
    return lines[0].strip() if lines else "unknown"


def _sandbox_env() -> dict[str, str]:
    return {**os.environ, "TEXMFVAR": "/tmp/texmf-var", "openout_any": "p"}


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------


def read_log_tail(log_path: str | Path, limit: int = LOG_TAIL_CHARS) -> str:
    """Return the last *limit* characters of a LaTeX log (empty if missing)."""
    path = Path(log_path)
    if not path.exists():
        return ""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return text[-limit:]


def extract_errors(log_text: str) -> list[str]:
    """Extract deduplicated error lines from a LaTeX log (at most 10).

    Picks lines starting with ``!`` or mentioning ``LaTeX Error`` /
    ``Fatal error`` (joined with the following line for context), plus
    ``Undefined control sequence`` and ``File ... not found`` lines.
    """
    if not log_text:
        return []
    lines = log_text.split("\n")
    found: list[str] = []
    for i, line in enumerate(lines):
        if line.startswith("!") or "LaTeX Error" in line or "Fatal error" in line:
            msg = line.strip()
            if i + 1 < len(lines):
                msg += " " + lines[i + 1].strip()
            found.append(msg)
        if "Undefined control sequence" in line:
            found.append(line.strip())
        if "File" in line and "not found" in line:
            found.append(line.strip())
    return list(dict.fromkeys(found))[:MAX_ERRORS]


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


class _PassTimeout(Exception):
    def __init__(self, label: str, timeout: int) -> None:
        super().__init__(f"{label} timed out after {timeout}s")


def _run_pass(cmd: list[str], cwd: Path, timeout: int, label: str, log_lines: list[str]) -> int:
    log_lines.append(label)
    logger.debug("Running %s: %s", label, " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=_sandbox_env(),
        )
    except subprocess.TimeoutExpired as exc:
        raise _PassTimeout(label, timeout) from exc
    except OSError as exc:
        logger.warning("%s could not be started: %s", label, exc)
        log_lines.append(f"{label} skipped: {exc}")
        return -1
    if proc.returncode not in (0, 1):
        logger.info("%s exited with %d", label, proc.returncode)
    return proc.returncode


def run_compile(
    job_dir: str | Path,
    *,
    engine: str = "pdflatex",
    main_file: str = "main.tex",
    pass_timeout: int = 120,
) -> CompilationResult:
    """Run the full pass sequence in *job_dir* and collect the result."""
    out = Path(job_dir)
    base = Path(main_file).stem
    log_lines: list[str] = []

    engine_cmd = _find_engine(engine)
    if not engine_cmd:
        return CompilationResult(success=False, page_count=0, errors=[f"{engine} not found on PATH"])

    engine_args = [engine_cmd, *ENGINE_FLAGS, f"-output-directory={out}", main_file]
    # (label, command, timeout, intermediate file that must exist first)
    steps: list[tuple[str, list[str], int, str | None]] = [
        ("Pass 1/3: initial compilation", engine_args, pass_timeout, None),
        ("Running biber", ["biber", f"--input-directory={out}", f"--output-directory={out}", base],
         BIBER_TIMEOUT, f"{base}.bcf"),
        ("Running makeindex", ["makeindex", str(out / f"{base}.idx")], MAKEINDEX_TIMEOUT, f"{base}.idx"),
        ("Pass 2/3: resolving references", engine_args, pass_timeout, None),
        ("Pass 3/3: final compilation", engine_args, pass_timeout, None),
    ]

    try:
        for label, cmd, timeout, needs in steps:
            if needs and not (out / needs).exists():
                continue
            _run_pass(cmd, out, timeout, label, log_lines)
    except _PassTimeout as exc:
        logger.warning("Compilation in %s aborted: %s", out, exc)
        latex_log = read_log_tail(out / f"{base}.log")
        return CompilationResult(
            success=False,
            page_count=0,
            log="\n".join(log_lines) + "\n---\n" + latex_log,
            errors=[str(exc)] + extract_errors(latex_log)[: MAX_ERRORS - 1],
        )

    pdf_path = out / f"{base}.pdf"
    if not pdf_path.exists():
        latex_log = read_log_tail(out / f"{base}.log")
        errors = extract_errors(latex_log) or ["PDF not generated"]
        logger.info("Compilation failed in %s: %d errors", out, len(errors))
        return CompilationResult(
            success=False,
            page_count=0,
            log="\n".join(log_lines) + "\n---\n" + latex_log,
            errors=errors,
        )

    pages = count_pages(pdf_path)
    log_lines.append(f"Compilation successful: {pages if pages is not None else '?'} pages")
    logger.info("Compilation succeeded in %s (%s pages)", out, pages)
    return CompilationResult(
        success=True,
        pdf=pdf_path.read_bytes(),
        page_count=pages,
        log="\n".join(log_lines),
    )


# ---------------------------------------------------------------------------
# Scratch job directories
# ---------------------------------------------------------------------------


def new_job_dir(scratch_root: str | Path, prefix: str = "") -> tuple[str, Path]:
    """Create a fresh scratch directory; returns ``(job_id, path)``."""
    job_id = str(uuid.uuid4())
    path = Path(scratch_root) / f"{prefix}{job_id}"
    path.mkdir(parents=True, exist_ok=False)
    return job_id, path


def remove_job_dir(path: str | Path) -> None:
    """Delete a scratch directory; failures are logged, never raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove scratch directory %s: %s", path, exc)


def write_job_inputs(job_dir: Path, source: str, assets: list[Asset]) -> ImageReport:
    """Write ``main.tex`` and ``images/<name>`` into *job_dir*."""
    (job_dir / "main.tex").write_text(source, encoding="utf-8")
    report = ImageReport(total=len(assets))
    if not assets:
        return report
    images_dir = job_dir / "images"
    images_dir.mkdir(exist_ok=True)
    for asset in assets:
        name = Path(asset.name).name
        if not name or not asset.data:
            report.skipped += 1
            logger.info("Skipped asset name=%r (%d bytes)", asset.name, len(asset.data))
            continue
        (images_dir / name).write_bytes(asset.data)
        report.written += 1
    return report


def decode_assets(items: list[dict]) -> list[Asset]:
    """Turn ``[{name, data(base64)}]`` request items into assets.

    Items missing a name or payload become empty assets so they are
    counted as skipped.
    """
    assets: list[Asset] = []
    for item in items:
        name = item.get("name") or ""
        data = item.get("data") or ""
        assets.append(Asset(name=name, data=base64.b64decode(data) if data else b""))
    return assets


def compile_in_dir(
    job_dir: Path,
    source: str,
    assets: list[Asset],
    *,
    engine: str = "pdflatex",
    pass_timeout: int = 120,
    image_timeout: int = 30,
    image_workers: int = 3,
) -> CompilationResult:
    """Write inputs, normalize images and compile inside an existing scratch dir."""
    report = write_job_inputs(job_dir, source, assets)
    if report.written:
        conversion = normalize_images(job_dir / "images", timeout=image_timeout, workers=image_workers)
        report.converted = conversion.converted
        report.failed = conversion.failed
        report.failed_files = conversion.failed_files

    result = run_compile(job_dir, engine=engine, pass_timeout=pass_timeout)
    return result.model_copy(update={"image_report": report})


def validate_source(
    source: str,
    *,
    scratch_root: str | Path,
    engine: str = "pdflatex",
    timeout: int = VALIDATE_TIMEOUT,
) -> tuple[bool, list[str]]:
    """Single ``-draftmode`` pass that checks *source* without producing a PDF."""
    engine_cmd = _find_engine(engine)
    if not engine_cmd:
        return False, [f"{engine} not found on PATH"]

    _, job_dir = new_job_dir(scratch_root, prefix="validate-")
    try:
        (job_dir / "validate.tex").write_text(source, encoding="utf-8")
        cmd = [engine_cmd, "-interaction=nonstopmode", "-no-shell-escape", "-draftmode",
               f"-output-directory={job_dir}", "validate.tex"]
        try:
            code = _run_pass(cmd, job_dir, timeout, "Validate pass", [])
        except _PassTimeout as exc:
            return False, [str(exc)]
        errors = extract_errors(read_log_tail(job_dir / "validate.log"))
        if code not in (0, 1) or errors:
            return False, errors or [f"{engine} exited with code {code}"]
        return True, []
    finally:
        remove_job_dir(job_dir)

