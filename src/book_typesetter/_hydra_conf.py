"""Hydra structured config dataclasses.

These mirror the Pydantic ``ServiceConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ServiceConfig`` via
``cli._to_service_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hydra.core.config_store import ConfigStore


@dataclass
class AzureConf:
    api_key: str = "${oc.env:AZURE_OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:AZURE_OPENAI_API_VERSION,''}"
    endpoint: str = "${oc.env:AZURE_OPENAI_ENDPOINT,''}"


@dataclass
class ModelConf:
    default: str = "gpt-4.1"
    planner: str | None = None
    transcoder: str | None = None
    repair: str | None = None


@dataclass
class TypesetConf:
    # --- Dispatch + CLI-only fields ---
    mode: str = "typeset"
    input: str | None = None
    output: str | None = None
    config_file: str | None = None
    host: str = "0.0.0.0"
    port: int = 8000
    verbose: bool = False
    quiet: bool = False
    # TypesetSettings / CoverInfo overrides for mode=typeset
    settings: dict[str, Any] = field(default_factory=dict)
    cover: dict[str, Any] = field(default_factory=dict)

    # --- ServiceConfig fields (1:1 mapping) ---
    azure: AzureConf = field(default_factory=AzureConf)
    models: ModelConf = field(default_factory=ModelConf)
    timeout: int = 120
    seed: int = 42

    compile_max_attempts: int = 3
    chunk_max_bytes: int = 100_000
    language: str = "en"

    compiler_url: str = ""
    compiler_timeout: float = 150.0
    latex_engine: str = "pdflatex"
    pass_timeout: int = 120
    image_timeout: int = 30
    image_workers: int = 3
    cleanup_grace_seconds: float = 5.0
    scratch_root: str = "/tmp/latex-jobs"

    blob_backend: str = "local"
    blob_root: str = "data/blobs"
    s3_bucket: str = ""
    s3_region: str = "eu-central-1"
    job_store_path: str = "data/jobs.json"

    worker_count: int = 2
    notify_url: str = ""


# Keys present in TypesetConf that are NOT part of ServiceConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "input", "output", "config_file", "host", "port",
    "verbose", "quiet", "settings", "cover",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="typeset_schema", node=TypesetConf)
