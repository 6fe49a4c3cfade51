"""Tests for tools/repair_loop.py — bounded compile/repair retries."""

from __future__ import annotations

import pytest

from book_typesetter.models import CompilationResult
from book_typesetter.tools.repair_loop import (
    Action,
    compile_with_retry,
    diagnostic_text,
    next_state,
    usable_repair,
)

FAIL = CompilationResult(success=False, page_count=0, log="! Undefined control sequence.", errors=["! Undefined"])


class _ScriptedCompiler:
    """Returns the given results in order and records every source it saw."""

    def __init__(self, *results: CompilationResult):
        self.results = list(results)
        self.sources: list[str] = []

    def __call__(self, source, assets):
        self.sources.append(source)
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class TestNextState:
    def test_success_is_done(self, ok_result):
        assert next_state(1, 3, ok_result).action is Action.DONE

    def test_failure_with_attempts_left(self):
        assert next_state(2, 3, FAIL).action is Action.REPAIR

    def test_failure_on_last_attempt(self):
        assert next_state(3, 3, FAIL).action is Action.GIVE_UP


class TestUsableRepair:
    @pytest.mark.parametrize("candidate", [None, "", "   ", "Sorry, I cannot help with that."])
    def test_rejected(self, candidate):
        assert usable_repair(candidate) is None

    def test_accepted_and_trimmed(self):
        assert usable_repair("  \\documentclass{book}\n") == "\\documentclass{book}"


class TestDiagnosticText:
    def test_errors_then_log(self):
        assert diagnostic_text(FAIL) == "! Undefined\n! Undefined control sequence."


class TestCompileWithRetry:
    def test_first_attempt_success(self, ok_result):
        compiler = _ScriptedCompiler(ok_result)
        outcome = compile_with_retry("src", [], max_attempts=3, compile_fn=compiler)
        assert outcome.attempts == 1
        assert outcome.result is ok_result
        assert outcome.history == [Action.DONE]

    def test_repair_then_success(self, ok_result):
        compiler = _ScriptedCompiler(FAIL, ok_result)
        retries: list[tuple[int, int]] = []
        outcome = compile_with_retry(
            "broken",
            [],
            max_attempts=3,
            compile_fn=compiler,
            repair_fn=lambda src, diag: "\\documentclass{book}\\begin{document}x\\end{document}",
            on_retry=lambda a, m: retries.append((a, m)),
        )
        assert outcome.result.success
        assert outcome.repairs_applied == 1
        assert compiler.sources[1].startswith("\\documentclass")
        assert outcome.source == compiler.sources[1]
        assert retries == [(1, 3)]

    def test_throwing_repair_compiles_exactly_max_attempts(self):
        third = CompilationResult(success=False, page_count=0, log="third", errors=["third"])
        compiler = _ScriptedCompiler(FAIL, FAIL, third)

        def _boom(source, diagnostic):
            raise RuntimeError("model down")

        outcome = compile_with_retry("src", [], max_attempts=3, compile_fn=compiler, repair_fn=_boom)

        assert len(compiler.sources) == 3
        assert compiler.sources == ["src", "src", "src"]
        assert outcome.result is third
        assert outcome.history == [Action.REPAIR, Action.REPAIR, Action.GIVE_UP]
        assert outcome.repairs_applied == 0

    def test_unusable_repair_keeps_source(self):
        compiler = _ScriptedCompiler(FAIL)
        outcome = compile_with_retry("src", [], max_attempts=2, compile_fn=compiler,
                                     repair_fn=lambda s, d: "no latex here")
        assert compiler.sources == ["src", "src"]
        assert outcome.source == "src"

    def test_repair_sees_diagnostic(self, ok_result):
        seen: list[str] = []
        compiler = _ScriptedCompiler(FAIL, ok_result)

        def _repair(source, diagnostic):
            seen.append(diagnostic)
            return None

        compile_with_retry("src", [], max_attempts=3, compile_fn=compiler, repair_fn=_repair)
        assert "Undefined control sequence" in seen[0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            compile_with_retry("src", [], max_attempts=0, compile_fn=_ScriptedCompiler(FAIL))
