"""CLI entry point using Hydra.

Usage examples:
  book-typesetter mode=typeset input=manuscript.docx output=book.pdf
  book-typesetter mode=typeset input=manuscript.docx +settings.page_size=a4 +cover.title="My Book"
  book-typesetter mode=serve_compiler port=3001
  book-typesetter mode=serve_api compiler_url=http://localhost:3001 port=8000
  book-typesetter mode=compile input=build/main.tex output=main.pdf
  book-typesetter mode=check_pdf input=book.pdf
  book-typesetter mode=serve_api config_file=service.yaml
"""

from __future__ import annotations

import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_azure_fallbacks, llm_available, load_config
from .logging_config import RichPublisher, console, setup_logging
from .models import Asset, CoverInfo, ServiceConfig, TypesetSettings

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → Pydantic ServiceConfig bridge
# ---------------------------------------------------------------------------


def _to_service_config(cfg: DictConfig) -> ServiceConfig:
    """Convert a Hydra *DictConfig* to a Pydantic ``ServiceConfig``.

    When ``config_file`` is set the YAML file is loaded instead and the Hydra
    values are ignored. CLI-only keys are stripped before validation.
    """
    config_file = cfg.get("config_file")
    if config_file:
        return load_config(config_file)
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ServiceConfig.model_validate(container)
    return apply_azure_fallbacks(config)


def _require_input(cfg: DictConfig, suffix: str) -> Path:
    raw = cfg.get("input")
    if not raw:
        console.print(f"[red]input=<file{suffix}> is required for mode={cfg.mode}[/]")
        sys.exit(1)
    path = Path(raw)
    if not path.is_file():
        console.print(f"[red]Input file not found: {path}[/]")
        sys.exit(1)
    return path


def _output_path(cfg: DictConfig, source: Path, suffix: str) -> Path:
    raw = cfg.get("output")
    return Path(raw) if raw else source.with_suffix(suffix)


def _section(cfg: DictConfig, key: str) -> dict[str, Any]:
    node = cfg.get(key)
    if node is None:
        return {}
    return OmegaConf.to_container(node, resolve=True)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _typeset_mode(cfg: DictConfig) -> None:
    config = _to_service_config(cfg)
    source = _require_input(cfg, ".docx")
    output = _output_path(cfg, source, ".pdf")
    settings = TypesetSettings.model_validate(_section(cfg, "settings"))
    cover = CoverInfo.model_validate(_section(cfg, "cover"))

    from .agents import ContentTranscoder, StructurePlanner
    from .parser import DocxParser
    from .pipeline import TypesettingPipeline
    from .stores import JobStore, LocalBlobStore
    from .stores.blob_store import source_key
    from .tools.compile_client import build_compiler

    use_llm = llm_available(config)
    if not use_llm:
        console.print("[yellow]No LLM endpoint configured; using deterministic markup only.[/]")
    transcoder = ContentTranscoder(config) if use_llm else None

    with tempfile.TemporaryDirectory(prefix="typeset-") as workdir:
        jobs = JobStore()
        blobs = LocalBlobStore(workdir)
        pipeline = TypesettingPipeline(
            config,
            jobs=jobs,
            blobs=blobs,
            parser=DocxParser(),
            planner=StructurePlanner(config, use_llm=use_llm),
            transcoder=transcoder,
            compiler=build_compiler(config),
            repair_fn=transcoder.repair if transcoder else None,
            publisher=RichPublisher(),
        )
        job_id = uuid.uuid4().hex[:12]
        key = blobs.put(source_key(job_id, source.name), source.read_bytes())
        job = jobs.create(
            job_id=job_id,
            source_key=key,
            source_filename=source.name,
            settings=settings,
            cover=cover,
        )

        console.print(f"[bold]Typesetting {source.name}...[/]")
        result = pipeline.run_pipeline(job.job_id)

        if not result.success:
            console.print(f"\n[bold red]Typesetting failed at {result.failed_step.value}.[/]")
            console.print(f"  [red]{result.error_message}[/]")
            sys.exit(1)

        finished = jobs.get(job.job_id)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(blobs.get(finished.output_pdf_key))
        archive = output.with_suffix(".zip")
        archive.write_bytes(blobs.get(finished.output_archive_key))

    console.print("\n[bold green]Typesetting completed successfully![/]")
    console.print(f"  PDF: {output}")
    console.print(f"  Source archive: {archive}")
    console.print(f"  Pages: {result.page_count}  Quality: {result.quality.value}")


def _serve_compiler_mode(cfg: DictConfig) -> None:
    import uvicorn

    from .server.compiler_api import create_app

    config = _to_service_config(cfg)
    console.print(f"[bold]Compilation Service on {cfg.host}:{cfg.port}[/]")
    uvicorn.run(create_app(config), host=cfg.host, port=cfg.port, log_config=None)


def _serve_api_mode(cfg: DictConfig) -> None:
    import uvicorn

    from .server.typeset_api import create_app

    config = _to_service_config(cfg)
    console.print(f"[bold]Typeset API on {cfg.host}:{cfg.port}[/]")
    uvicorn.run(create_app(config), host=cfg.host, port=cfg.port, log_config=None)


def _compile_mode(cfg: DictConfig) -> None:
    from .tools.compile_client import build_compiler

    config = _to_service_config(cfg)
    source = _require_input(cfg, ".tex")
    output = _output_path(cfg, source, ".pdf")

    images_dir = source.parent / "images"
    assets = [
        Asset(name=p.name, data=p.read_bytes())
        for p in sorted(images_dir.iterdir()) if p.is_file()
    ] if images_dir.is_dir() else []

    result = build_compiler(config).compile(source.read_text(encoding="utf-8"), assets)
    if result.success and result.pdf is not None:
        output.write_bytes(result.pdf)
        console.print(f"[green]Compilation successful: {output}[/]")
        if result.page_count:
            console.print(f"  Pages: {result.page_count}")
        if result.image_report and result.image_report.failed:
            console.print(f"  [yellow]Images not converted: {', '.join(result.image_report.failed_files)}[/]")
    else:
        console.print("[red]Compilation failed.[/]")
        for err in result.errors:
            console.print(f"  [red]{err}[/]")
        sys.exit(1)


def _check_pdf_mode(cfg: DictConfig) -> None:
    from .tools.pdf_validator import validate_pdf

    source = _require_input(cfg, ".pdf")
    report = validate_pdf(source.read_bytes())

    colour = {"excellent": "green", "good": "yellow", "poor": "red"}[report.quality.value]
    console.print(f"[bold {colour}]Quality: {report.quality.value}[/]")
    console.print(f"  Pages: {report.page_count}")
    console.print(f"  Size: {report.file_size_mb} MB")
    console.print(f"  Fonts: {report.font_count}  Images: {report.image_count}")
    for warning in report.warnings:
        console.print(f"  [yellow]WARNING:[/] {warning}")
    for error in report.errors:
        console.print(f"  [red]ERROR:[/] {error}")

    if report.errors:
        sys.exit(1)


_MODE_DISPATCH: dict[str, Any] = {
    "typeset": _typeset_mode,
    "serve_compiler": _serve_compiler_mode,
    "serve_api": _serve_api_mode,
    "compile": _compile_mode,
    "check_pdf": _check_pdf_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "typeset")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
