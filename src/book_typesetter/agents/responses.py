"""Helpers for reading AG2 chat results."""

from __future__ import annotations

import logging
import re
from typing import Any

import autogen

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^\s*```(?:latex|tex|json)?[ \t]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def ask(agent: autogen.AssistantAgent, message: str) -> Any:
    """Send one message to *agent* and return the chat result (single turn)."""
    orchestrator = autogen.UserProxyAgent(
        name="Orchestrator",
        human_input_mode="NEVER",
        code_execution_config=False,
    )
    return orchestrator.initiate_chat(agent, message=message, max_turns=1)


def extract_text(response: Any) -> str:
    """Extract the reply text from an AG2 chat response, without code fences."""
    if hasattr(response, "summary") and response.summary:
        text = str(response.summary)
    elif hasattr(response, "chat_history") and response.chat_history:
        last = response.chat_history[-1]
        text = last.get("content", "") if isinstance(last, dict) else str(last)
    else:
        text = str(response)

    text = _FENCE_OPEN_RE.sub("", text)
    text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()


def extract_json(response: Any, model_cls: type) -> Any:
    """Extract and validate a Pydantic model from an AG2 response, or ``None``."""
    text = extract_text(response)
    if "{" in text:
        json_str = text[text.find("{"):text.rfind("}") + 1]
        try:
            return model_cls.model_validate_json(json_str)
        except ValueError:
            pass
    try:
        return model_cls.model_validate_json(text)
    except ValueError as e:
        logger.warning("Failed to parse %s from response: %s", model_cls.__name__, e)
        return None
