"""Tests for tools/compiler.py — log parsing and the pass sequence."""

from __future__ import annotations

import base64
import subprocess
from pathlib import Path
from unittest.mock import patch

from book_typesetter.models import Asset
from book_typesetter.tools.compiler import (
    MAX_ERRORS,
    compile_in_dir,
    decode_assets,
    extract_errors,
    new_job_dir,
    read_log_tail,
    remove_job_dir,
    run_compile,
    validate_source,
    write_job_inputs,
)

from .conftest import PNG_BYTES, make_pdf

MODULE = "book_typesetter.tools.compiler"


def _engine_run(pdf: bytes | None = None, log: str = "", timeout_on: str | None = None):
    """Fake ``subprocess.run`` that writes main.pdf/main.log like pdflatex would."""
    calls: list[list[str]] = []

    def _run(cmd, cwd=None, **kwargs):
        calls.append(cmd)
        if timeout_on and timeout_on in cmd[0]:
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout", 0))
        out = Path(cwd)
        if log:
            (out / "main.log").write_text(log, encoding="utf-8")
        if pdf is not None and "pdflatex" in cmd[0]:
            (out / "main.pdf").write_bytes(pdf)
        return subprocess.CompletedProcess(cmd, 0 if pdf is not None else 1, "", "")

    return _run, calls


class TestExtractErrors:
    def test_error_lines_with_context(self, error_log):
        errors = extract_errors(error_log)
        assert errors[0] == "! Undefined control sequence. l.42 \\badcommand"
        assert any("missing.sty' not found" in e for e in errors)

    def test_deduplicated(self, error_log):
        errors = extract_errors(error_log)
        assert len(errors) == len(set(errors))

    def test_capped(self):
        log = "\n".join(f"! Error number {i}\ncontext {i}" for i in range(30))
        assert len(extract_errors(log)) == MAX_ERRORS

    def test_empty(self):
        assert extract_errors("") == []


class TestReadLogTail:
    def test_missing_file(self, tmp_path):
        assert read_log_tail(tmp_path / "nope.log") == ""

    def test_tail(self, tmp_path):
        log = tmp_path / "main.log"
        log.write_text("a" * 100 + "END", encoding="utf-8")
        assert read_log_tail(log, limit=3) == "END"


class TestRunCompile:
    def test_engine_missing(self, tmp_path):
        with patch(f"{MODULE}._find_engine", return_value=None):
            result = run_compile(tmp_path)
        assert not result.success
        assert "not found" in result.errors[0]

    def test_success_runs_three_passes(self, tmp_path):
        pdf = make_pdf(pages=4)
        (tmp_path / "main.tex").write_text("x", encoding="utf-8")
        run, calls = _engine_run(pdf=pdf, log="Output written on main.pdf (4 pages, 2000 bytes).")
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=run), \
             patch("book_typesetter.tools.page_counter.pdfinfo_available", return_value=False):
            result = run_compile(tmp_path)
        assert result.success
        assert result.pdf == pdf
        assert result.page_count == 4
        assert len(calls) == 3
        assert "-no-shell-escape" in calls[0]

    def test_biber_and_makeindex_only_when_needed(self, tmp_path):
        (tmp_path / "main.bcf").write_text("", encoding="utf-8")
        (tmp_path / "main.idx").write_text("", encoding="utf-8")
        run, calls = _engine_run(pdf=make_pdf())
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=run), \
             patch("book_typesetter.tools.page_counter.pdfinfo_available", return_value=False):
            run_compile(tmp_path)
        assert [c[0] for c in calls] == ["/usr/bin/pdflatex", "biber", "makeindex",
                                          "/usr/bin/pdflatex", "/usr/bin/pdflatex"]

    def test_missing_pdf_is_failure(self, tmp_path, error_log):
        run, _ = _engine_run(pdf=None, log=error_log)
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=run):
            result = run_compile(tmp_path)
        assert not result.success
        assert result.page_count == 0
        assert any("Undefined control sequence" in e for e in result.errors)
        assert "Pass 3/3" in result.log

    def test_pass_timeout(self, tmp_path):
        run, calls = _engine_run(pdf=None, timeout_on="pdflatex")
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=run):
            result = run_compile(tmp_path, pass_timeout=7)
        assert not result.success
        assert len(calls) == 1
        assert "timed out after 7s" in result.errors[0]

    def test_missing_helper_tool_is_not_fatal(self, tmp_path):
        (tmp_path / "main.bcf").write_text("", encoding="utf-8")
        run, calls = _engine_run(pdf=make_pdf())

        def _run(cmd, cwd=None, **kwargs):
            if cmd[0] == "biber":
                raise FileNotFoundError(2, "No such file or directory", "biber")
            return run(cmd, cwd=cwd, **kwargs)

        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=_run), \
             patch("book_typesetter.tools.page_counter.pdfinfo_available", return_value=False):
            result = run_compile(tmp_path)
        assert result.success
        assert len(calls) == 3
        assert "Running biber skipped" in result.log

    def test_missing_helper_tool_without_pdf_is_a_failure_result(self, tmp_path, error_log):
        (tmp_path / "main.idx").write_text("", encoding="utf-8")
        run, _ = _engine_run(pdf=None, log=error_log)

        def _run(cmd, cwd=None, **kwargs):
            if cmd[0] == "makeindex":
                raise FileNotFoundError(2, "No such file or directory", "makeindex")
            return run(cmd, cwd=cwd, **kwargs)

        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=_run):
            result = run_compile(tmp_path)
        assert not result.success
        assert "Running makeindex skipped" in result.log
        assert any("Undefined control sequence" in e for e in result.errors)

class TestJobDirs:
    def test_new_and_remove(self, tmp_path):
        job_id, path = new_job_dir(tmp_path, prefix="x-")
        assert path.is_dir()
        assert path.name == f"x-{job_id}"
        remove_job_dir(path)
        assert not path.exists()
        remove_job_dir(path)  # second removal is a no-op

    def test_write_inputs_flat_names(self, tmp_path):
        assets = [
            Asset(name="nested/dir/img1.png", data=PNG_BYTES),
            Asset(name="", data=PNG_BYTES),
            Asset(name="empty.png", data=b""),
        ]
        report = write_job_inputs(tmp_path, "\\documentclass{book}", assets)
        assert (tmp_path / "main.tex").read_text(encoding="utf-8") == "\\documentclass{book}"
        assert (tmp_path / "images" / "img1.png").read_bytes() == PNG_BYTES
        assert (report.total, report.written, report.skipped) == (3, 1, 2)

    def test_decode_assets(self):
        items = [{"name": "a.png", "data": base64.b64encode(PNG_BYTES).decode()}, {"name": "b.png"}]
        assets = decode_assets(items)
        assert assets[0].data == PNG_BYTES
        assert assets[1].data == b""


class TestCompileInDir:
    def test_reports_images(self, tmp_path):
        run, _ = _engine_run(pdf=make_pdf())
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=run), \
             patch("book_typesetter.tools.page_counter.pdfinfo_available", return_value=False):
            result = compile_in_dir(tmp_path, "src", [Asset(name="a.png", data=PNG_BYTES)])
        assert result.success
        assert result.image_report.written == 1
        assert result.image_report.converted == 0


class TestValidateSource:
    def test_clean_source_is_valid(self, tmp_path):
        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run",
                   return_value=subprocess.CompletedProcess([], 0, "", "")) as run:
            valid, errors = validate_source("\\documentclass{article}", scratch_root=tmp_path)
        assert valid is True
        assert errors == []
        assert "-draftmode" in run.call_args[0][0]
        assert list(tmp_path.iterdir()) == []

    def test_errors_in_log_make_it_invalid(self, tmp_path, error_log):
        def _run(cmd, cwd=None, **kwargs):
            (Path(cwd) / "validate.log").write_text(error_log, encoding="utf-8")
            return subprocess.CompletedProcess(cmd, 1, "", "")

        with patch(f"{MODULE}._find_engine", return_value="/usr/bin/pdflatex"), \
             patch(f"{MODULE}.subprocess.run", side_effect=_run):
            valid, errors = validate_source("\\badcommand", scratch_root=tmp_path)
        assert valid is False
        assert errors
