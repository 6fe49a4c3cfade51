"""Tests for tools/compile_client.py — HTTP and in-process compilers."""

from __future__ import annotations

import base64
import json
from unittest.mock import patch

import httpx

from book_typesetter.models import Asset, CompilationResult, ServiceConfig
from book_typesetter.tools.compile_client import HttpCompiler, LocalCompiler, build_compiler

from .conftest import PNG_BYTES, make_pdf


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestHttpCompiler:
    def test_success_parses_headers(self):
        pdf = make_pdf()
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(
                200,
                content=pdf,
                headers={
                    "content-type": "application/pdf",
                    "x-page-count": "3",
                    "x-image-report": json.dumps({"total": 1, "written": 1}),
                },
            )

        compiler = HttpCompiler("http://compiler:3001/", client=_client(handler))
        result = compiler.compile("\\documentclass{book}", [Asset(name="img1.png", data=PNG_BYTES)])

        assert result.success
        assert result.pdf == pdf
        assert result.page_count == 3
        assert result.image_report.written == 1
        assert seen["latex"] == "\\documentclass{book}"
        assert base64.b64decode(seen["images"][0]["data"]) == PNG_BYTES

    def test_missing_page_count_is_none(self):
        def handler(request):
            return httpx.Response(200, content=make_pdf(), headers={"content-type": "application/pdf"})

        result = HttpCompiler("http://c", client=_client(handler)).compile("x", [])
        assert result.success
        assert result.page_count is None

    def test_compile_failure_body(self):
        def handler(request):
            return httpx.Response(422, json={
                "success": False,
                "error": "Compilation failed",
                "log": "! Undefined control sequence.",
                "errors": ["! Undefined control sequence."],
                "image_report": {"total": 0},
            })

        result = HttpCompiler("http://c", client=_client(handler)).compile("x", [])
        assert not result.success
        assert result.log == "! Undefined control sequence."
        assert result.errors == ["! Undefined control sequence."]

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = HttpCompiler("http://c", client=_client(handler)).compile("x", [])
        assert not result.success
        assert result.errors == ["Compilation timed out"]

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = HttpCompiler("http://c", client=_client(handler)).compile("x", [])
        assert not result.success
        assert "Compiler unavailable" in result.log

    def test_non_json_error(self):
        def handler(request):
            return httpx.Response(502, text="Bad gateway")

        result = HttpCompiler("http://c", client=_client(handler)).compile("x", [])
        assert not result.success
        assert result.log == "Bad gateway"

    def test_validate(self):
        def handler(request):
            assert request.url.path == "/validate"
            return httpx.Response(200, json={"valid": False, "errors": ["! Missing $ inserted."]})

        valid, errors = HttpCompiler("http://c", client=_client(handler)).validate("x")
        assert valid is False
        assert errors == ["! Missing $ inserted."]


class TestLocalCompiler:
    def test_cleans_scratch_dir(self, service_config, tmp_path):
        expected = CompilationResult(success=True, pdf=make_pdf(), page_count=3)
        with patch("book_typesetter.tools.compile_client.compile_in_dir", return_value=expected) as run:
            result = LocalCompiler(service_config).compile("x", [])
        assert result is expected
        job_dir = run.call_args[0][0]
        assert not job_dir.exists()


class TestBuildCompiler:
    def test_url_selects_http(self):
        assert isinstance(build_compiler(ServiceConfig(compiler_url="http://c:3001")), HttpCompiler)

    def test_default_is_local(self):
        assert isinstance(build_compiler(ServiceConfig()), LocalCompiler)
