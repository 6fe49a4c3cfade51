"""DOCX to print-ready PDF typesetting pipeline and LaTeX compilation service."""

__version__ = "1.0.0"
