"""Deterministic tools for chunking, LaTeX assembly, compilation and validation."""

from .chunker import chunk
from .pdf_validator import validate_pdf
from .post_processor import normalize
from .repair_loop import compile_with_retry

__all__ = [
    "chunk",
    "compile_with_retry",
    "normalize",
    "validate_pdf",
]
