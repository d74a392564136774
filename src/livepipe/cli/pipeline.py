"""Pipeline commands: run, validate, dag."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from livepipe.cli import _load_config, _load_registry, _resolve_project, app, console


@app.command()
def run(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Datasets to refresh, with their dependencies (default: all)")] = None,
    workers: Annotated[Optional[int], typer.Option("--workers", "-w", help="Max parallel materializations per layer")] = None,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use (e.g. dev, prod)")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the run report as JSON")] = False,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Resolve the dataset graph and materialize it in dependency order.

    Exits non-zero unless every selected dataset succeeded.
    """
    from livepipe.engine.database import connect
    from livepipe.engine.pipeline import run_pipeline
    from livepipe.errors import ConfigurationError

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    registry = _load_registry(config)

    if not len(registry):
        console.print(f"[yellow]No dataset definitions found in {config.pipeline.definitions}/[/yellow]")
        return

    env_label = f" [dim](env={config.active_environment})[/dim]" if config.active_environment else ""
    if not as_json:
        console.print(f"[bold]Run{env_label}:[/bold]")

    conn = connect(config.db_path)
    try:
        try:
            report = run_pipeline(
                conn,
                registry,
                targets or None,
                output_schema=config.pipeline.output_schema,
                max_workers=workers or config.pipeline.max_workers,
                quiet=as_json,
            )
        except ConfigurationError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            raise typer.Exit(1)
    finally:
        conn.close()

    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    if report.overall_status != "succeeded":
        raise typer.Exit(1)


@app.command()
def validate(
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Load every definition and check the graph without running anything."""
    from livepipe.engine.pipeline import find_cycles, resolve
    from livepipe.errors import ConfigurationError

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    registry = _load_registry(config)

    cycles = find_cycles(registry.datasets())
    for err in cycles:
        console.print(f"[red]error[/red]  {err}")
    if cycles:
        raise typer.Exit(1)
    try:
        layers = resolve(registry.datasets())
    except ConfigurationError as e:
        console.print(f"[red]error[/red]  {e}")
        raise typer.Exit(1)

    for idx, layer in enumerate(layers, 1):
        console.print(f"  [dim]layer {idx}[/dim]  {', '.join(d.name for d in layer)}")

    incremental = sum(1 for d in registry if d.is_incremental)
    constraints = sum(len(d.constraints) for d in registry)
    console.print(
        f"[green]ok[/green]  {len(registry)} datasets ({incremental} incremental), "
        f"{len(layers)} layers, {constraints} constraints"
    )


@app.command()
def dag(
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show datasets grouped by execution layer."""
    from livepipe.engine.pipeline import resolve
    from livepipe.errors import ConfigurationError

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    registry = _load_registry(config)

    try:
        layers = resolve(registry.datasets())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Execution layers")
    table.add_column("Layer", style="dim")
    table.add_column("Dataset", style="bold")
    table.add_column("Kind")
    table.add_column("Reads from")
    table.add_column("Constraints")
    for idx, layer in enumerate(layers, 1):
        for d in layer:
            reads = ", ".join(d.dependencies)
            if d.source:
                reads = ", ".join(filter(None, [reads, f"{d.source.format}:{d.source.path}"]))
            table.add_row(
                str(idx),
                d.name,
                d.kind.value,
                reads or "-",
                ", ".join(f"{c.name}[{c.policy.value}]" for c in d.constraints) or "-",
            )
    console.print(table)
