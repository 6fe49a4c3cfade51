from .docx_parser import DocxParser

__all__ = ["DocxParser"]
