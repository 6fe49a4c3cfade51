"""AG2 agents: structure planner, content transcoder and compile repair."""

from .content_transcoder import ContentTranscoder
from .structure_planner import StructurePlanner, fallback_plan

__all__ = ["ContentTranscoder", "StructurePlanner", "fallback_plan"]
