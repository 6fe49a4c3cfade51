"""Service settings from YAML, and AG2 ``llm_config`` dicts per collaborator.

Three LLM collaborators exist: the Structure Planner, the Content
Transcoder and the compile-repair agent. Each resolves to one model name and
one endpoint; without any endpoint the pipeline runs on its deterministic
fallbacks.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import ServiceConfig

load_dotenv()

# ``${NAME}`` or ``${NAME:-default}``
_ENV_REF_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

# azure field -> environment variable used when the field is empty
AZURE_ENV_FALLBACKS = {
    "api_key": "AZURE_OPENAI_API_KEY",
    "api_version": "AZURE_OPENAI_API_VERSION",
    "endpoint": "AZURE_OPENAI_ENDPOINT",
}

# collaborator -> model fields tried in order before ``models.default``
ROLE_MODEL_FIELDS = {
    "planner": ("planner",),
    "transcoder": ("transcoder",),
    "repair": ("repair", "transcoder"),
}

_AZURE_OPENAI_HOSTS = ("openai.azure.com", "cognitiveservices.azure.com")


def _interpolate(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: _interpolate(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate(v) for v in value]
    return value


def apply_azure_fallbacks(config: ServiceConfig) -> ServiceConfig:
    """Fill empty azure fields from ``AZURE_OPENAI_*`` and drop the endpoint's trailing slash."""
    for field, env_name in AZURE_ENV_FALLBACKS.items():
        if not getattr(config.azure, field):
            setattr(config.azure, field, os.getenv(env_name, ""))
    config.azure.endpoint = config.azure.endpoint.rstrip("/")
    return config


def load_config(config_path: str | Path) -> ServiceConfig:
    """Read a ``ServiceConfig`` from YAML, resolving environment references."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return apply_azure_fallbacks(ServiceConfig.model_validate(_interpolate(raw)))


def llm_available(config: ServiceConfig) -> bool:
    """True when some endpoint is configured for LLM calls."""
    return bool(config.azure.endpoint or config.models.overrides)


def model_for_role(role: str, config: ServiceConfig) -> str:
    models = config.models
    for field in ROLE_MODEL_FIELDS.get(role.lower(), ()):
        name = getattr(models, field)
        if name:
            return name
    return models.default


def build_role_llm_config(role: str, config: ServiceConfig) -> dict[str, Any]:
    """AG2 ``llm_config`` for one collaborator (``planner``, ``transcoder`` or ``repair``).

    A ``models.overrides`` entry for the chosen model replaces the azure
    endpoint, and its ``api_type`` (if set) is passed through with the
    endpoint as ``base_url``. Azure OpenAI hosts get deployment routing;
    anything else is called as an OpenAI-compatible ``base_url``.
    """
    model = model_for_role(role, config)
    azure = config.azure
    override = config.models.overrides.get(model)

    entry: dict[str, Any] = {"model": model, "api_key": (override and override.api_key) or azure.api_key}
    endpoint = override.endpoint.rstrip("/") if override else azure.endpoint

    if override and override.api_type:
        entry.update(api_type=override.api_type, base_url=endpoint)
    elif any(host in endpoint.lower() for host in _AZURE_OPENAI_HOSTS):
        entry.update(
            api_type="azure",
            azure_endpoint=endpoint,
            api_version=(override and override.api_version) or azure.api_version,
            azure_deployment=model,
        )
    elif endpoint:
        entry["base_url"] = endpoint

    return {"config_list": [entry], "timeout": config.timeout, "seed": config.seed}
