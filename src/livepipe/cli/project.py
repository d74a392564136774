"""Project commands: init."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer

from livepipe.cli import app, console


@app.command()
def init(
    name: Annotated[str, typer.Argument(help="Project name")] = "my-pipeline",
    directory: Annotated[Optional[Path], typer.Option("--dir", "-d", help="Target directory")] = None,
) -> None:
    """Scaffold a new pipeline project with sample definitions and data."""
    from livepipe.templates import (
        PROJECT_YML_TEMPLATE,
        SAMPLE_BRONZE_SQL,
        SAMPLE_COMPLAINTS_CSV,
        SAMPLE_EMPLOYEES_CSV,
        SAMPLE_GOLD_SQL,
        SAMPLE_SILVER_SQL,
    )

    target = directory or Path.cwd() / name
    target.mkdir(parents=True, exist_ok=True)

    dirs = ["pipelines", "data/complaints", "data/employees"]
    for d in dirs:
        (target / d).mkdir(parents=True, exist_ok=True)

    (target / "project.yml").write_text(PROJECT_YML_TEMPLATE.format(name=name))
    (target / "pipelines" / "bronze.sql").write_text(SAMPLE_BRONZE_SQL)
    (target / "pipelines" / "silver.sql").write_text(SAMPLE_SILVER_SQL)
    (target / "pipelines" / "gold.sql").write_text(SAMPLE_GOLD_SQL)
    (target / "data" / "complaints" / "complaints_001.csv").write_text(SAMPLE_COMPLAINTS_CSV)
    (target / "data" / "employees" / "employees.csv").write_text(SAMPLE_EMPLOYEES_CSV)
    (target / ".gitignore").write_text("warehouse.duckdb\nwarehouse.duckdb.wal\n.env\n__pycache__/\n")

    console.print(f"[green]Project '{name}' created at {target}[/green]")
    console.print()
    console.print("Structure:")
    for d in dirs:
        console.print(f"  {d}/")
    console.print()
    console.print("Quick start:")
    console.print(f"  cd {target}")
    console.print("  livepipe validate   # check definitions and the dependency graph")
    console.print("  livepipe run        # materialize every dataset")
    console.print("  livepipe state      # see what the incremental tables consumed")
