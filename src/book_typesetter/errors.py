"""Error taxonomy for the typesetting pipeline.

Every fatal failure is raised as a :class:`PipelineError` subclass so the
orchestrator can record a stable :class:`~book_typesetter.models.ErrorKind`
alongside the step that failed.
"""

from __future__ import annotations

from .models import ErrorKind, PipelineStep


class PipelineError(Exception):
    """Base class for errors caught at the orchestrator boundary."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        step: PipelineStep | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.user_message = user_message


class SourceError(PipelineError):
    """Uploaded document is missing or malformed."""

    kind = ErrorKind.SOURCE


class CollaboratorError(PipelineError):
    """Planner/transcoder unavailable and no fallback applies."""

    kind = ErrorKind.COLLABORATOR


class CompilationError(PipelineError):
    """Toolchain failed after the full repair budget."""

    kind = ErrorKind.COMPILATION

    def __init__(self, message: str, *, log: str = "", errors: list[str] | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.log = log
        self.errors = list(errors or [])


class ValidationError(PipelineError):
    """Produced PDF is structurally unsound."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])


class InfrastructureError(PipelineError):
    """Blob store or job record unreachable."""

    kind = ErrorKind.INFRASTRUCTURE


class TransitionError(PipelineError):
    """A step transition not present in the transition table."""


class JobNotFoundError(KeyError):
    pass


class JobStateError(RuntimeError):
    """Operation not permitted in the job's current status."""


class UnknownFieldError(ValueError):
    """Job record update touched a field outside the whitelist."""
