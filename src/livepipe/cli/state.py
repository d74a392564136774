"""State commands: state, state-reset, runs."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from livepipe.cli import _load_config, _resolve_project, app, console


@app.command()
def state(
    dataset: Annotated[Optional[str], typer.Argument(help="Show consumed units of one dataset")] = None,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show incremental state: output versions and consumed input units."""
    from livepipe.engine.database import connect, ensure_meta_tables
    from livepipe.engine.pipeline import get_state, list_states

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)

    conn = connect(config.db_path)
    try:
        ensure_meta_tables(conn)
        if dataset:
            st = get_state(conn, dataset.lower())
            console.print(f"[bold]{st.dataset}[/bold]  version {st.output_version}, {len(st.consumed)} unit(s)")
            for unit_id, fingerprint in st.consumed.items():
                console.print(f"  {unit_id} [dim]{fingerprint}[/dim]", soft_wrap=True)
            return

        rows = list_states(conn)
        if not rows:
            console.print("[yellow]No incremental state recorded yet.[/yellow]")
            return
        table = Table(title="Incremental state")
        table.add_column("Dataset", style="bold")
        table.add_column("Version", justify="right")
        table.add_column("Units", justify="right")
        table.add_column("Updated", style="dim")
        for r in rows:
            table.add_row(r["dataset"], str(r["output_version"]), str(r["units_consumed"]), str(r["updated_at"] or ""))
        console.print(table)
    finally:
        conn.close()


@app.command("state-reset")
def state_reset(
    dataset: Annotated[str, typer.Argument(help="Incremental dataset to reset")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Forget consumed units and drop the output so the next run re-ingests everything."""
    from livepipe.engine.database import connect, ensure_meta_tables
    from livepipe.engine.pipeline import reset

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)

    if not yes and not typer.confirm(f"Drop {dataset} and forget its consumed input?"):
        raise typer.Exit(1)

    conn = connect(config.db_path)
    try:
        ensure_meta_tables(conn)
        forgotten = reset(conn, dataset.lower(), config.pipeline.output_schema)
    finally:
        conn.close()
    console.print(f"[green]Reset {dataset}[/green] ({forgotten} unit(s) forgotten)")


@app.command()
def runs(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of runs to show")] = 10,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show recent run history."""
    from livepipe.engine.database import connect, ensure_meta_tables, recent_runs

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)

    conn = connect(config.db_path)
    try:
        ensure_meta_tables(conn)
        history = recent_runs(conn, limit)
    finally:
        conn.close()

    if not history:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        return
    table = Table(title="Recent runs")
    table.add_column("Run", style="dim")
    table.add_column("Started")
    table.add_column("Targets")
    table.add_column("Status", style="bold")
    table.add_column("OK / Failed / Skipped", justify="right")
    table.add_column("Violations", justify="right")
    for r in history:
        status = r["status"]
        color = "green" if status == "succeeded" else "red"
        table.add_row(
            r["run_id"][:12],
            str(r["started_at"]),
            r["targets"],
            f"[{color}]{status}[/{color}]",
            f"{r['succeeded']} / {r['failed']} / {r['skipped']}",
            str(r["violations"]),
        )
    console.print(table)
