"""Bounded compile-repair loop.

The decision logic lives in :func:`next_state`, a pure function over the
attempt counter and the latest result; :func:`compile_with_retry` only
drives it with real compile and repair callables.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..models import Asset, CompilationResult

logger = logging.getLogger(__name__)

CompileFn = Callable[[str, list[Asset]], CompilationResult]
RepairFn = Callable[[str, str], "str | None"]

_LATEX_HINT_RE = re.compile(r"\\(?:begin\{|end\{|documentclass|section|chapter)")


class Action(str, Enum):
    DONE = "done"          # compile succeeded
    REPAIR = "repair"      # failed with attempts left
    GIVE_UP = "give_up"    # failed on the last attempt


@dataclass(frozen=True)
class RetryState:
    attempt: int
    max_attempts: int
    action: Action


@dataclass
class RetryOutcome:
    result: CompilationResult
    source: str
    attempts: int
    repairs_applied: int = 0
    history: list[Action] = field(default_factory=list)


def next_state(attempt: int, max_attempts: int, result: CompilationResult) -> RetryState:
    """Decide what follows compile attempt number *attempt* (1-based)."""
    if result.success:
        action = Action.DONE
    elif attempt >= max_attempts:
        action = Action.GIVE_UP
    else:
        action = Action.REPAIR
    return RetryState(attempt=attempt, max_attempts=max_attempts, action=action)


def usable_repair(candidate: str | None) -> str | None:
    """Return the trimmed candidate if it is plausibly a full LaTeX source."""
    if not candidate:
        return None
    text = candidate.strip()
    if not text or not _LATEX_HINT_RE.search(text):
        return None
    return text


def diagnostic_text(result: CompilationResult) -> str:
    """Diagnostic handed to the repair function: extracted errors, then the log."""
    parts = list(result.errors)
    if result.log:
        parts.append(result.log)
    return "\n".join(parts)


def compile_with_retry(
    source: str,
    assets: list[Asset],
    *,
    max_attempts: int,
    compile_fn: CompileFn,
    repair_fn: RepairFn | None = None,
    on_retry: Callable[[int, int], None] | None = None,
) -> RetryOutcome:
    """Compile *source*, repairing between failures, at most *max_attempts* times.

    A repair that raises or returns nothing usable leaves the source as it
    was, so the next attempt recompiles it unchanged. After the last failure
    the final result is returned as-is.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    current = source
    history: list[Action] = []
    repairs = 0
    attempt = 0

    while True:
        attempt += 1
        logger.info("Compilation attempt %d/%d", attempt, max_attempts)
        result = compile_fn(current, assets)
        state = next_state(attempt, max_attempts, result)
        history.append(state.action)

        if state.action is not Action.REPAIR:
            if state.action is Action.GIVE_UP:
                logger.warning("Compilation failed after %d attempts", attempt)
            return RetryOutcome(result=result, source=current, attempts=attempt,
                                repairs_applied=repairs, history=history)

        if on_retry is not None:
            on_retry(attempt, max_attempts)
        if repair_fn is None:
            continue
        try:
            revised = usable_repair(repair_fn(current, diagnostic_text(result)))
        except Exception as exc:
            logger.error("Auto-repair failed on attempt %d: %s", attempt, exc)
            continue
        if revised is None:
            logger.info("Auto-repair returned nothing usable; retrying the same source")
            continue
        current = revised
        repairs += 1
