"""Rich console setup and CLI progress reporting."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Progress publisher for the terminal
# ---------------------------------------------------------------------------


class RichPublisher:
    """Print pipeline progress events to the Rich console."""

    def publish(self, job_id: str, event: dict) -> None:
        step = event.get("step", "")
        progress = event.get("progress", 0)
        message = event.get("message", "")
        if step == "failed":
            console.print(f"  [red]FAILED[/] {message}")
            for hint in event.get("suggestions", []):
                console.print(f"    [dim]- {hint}[/]")
        elif step == "completed":
            console.rule(f"[bold green]Completed[/] {job_id}")
            for warning in event.get("warnings", []):
                console.print(f"  [yellow]WARNING:[/] {warning}")
        else:
            console.print(f"  [cyan]{progress:3d}%[/] [bold]{step}[/] {message}")
