"""livepipe command line.

Commands are grouped per module (pipeline, project, state); each one registers
itself on ``app`` when imported at the bottom of this file.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

app = typer.Typer(
    name="livepipe",
    help="Declarative dataset pipelines: SQL definitions, incremental ingestion, data quality constraints.",
    no_args_is_help=True,
)
console = Console()


def _resolve_project(project_dir: Path | None = None) -> Path:
    root = Path(project_dir) if project_dir else Path.cwd()
    if (root / "project.yml").is_file():
        return root
    console.print(f"[red]No project.yml found in {root}[/red]")
    console.print("Run [bold]livepipe init[/bold] to create a new project.")
    raise typer.Exit(1)


def _load_config(project_dir: Path, env: str | None = None):
    """Read project.yml for the chosen environment and configure logging from it."""
    from pydantic import ValidationError

    from livepipe import setup_logging
    from livepipe.config import load_project

    try:
        config = load_project(project_dir, env=env)
    except ValidationError as e:
        console.print(f"[red]Invalid project.yml:[/red] {e}")
        raise typer.Exit(1)
    setup_logging(config.log_level)
    return config


def _load_registry(config):
    """Load definitions, exiting with a readable message on configuration errors."""
    from livepipe.engine.pipeline import load_definitions
    from livepipe.errors import ConfigurationError

    try:
        return load_definitions(config.definitions_dir, base_dir=config.project_dir)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


from livepipe.cli import pipeline  # noqa: E402, F401
from livepipe.cli import project  # noqa: E402, F401
from livepipe.cli import state  # noqa: E402, F401
