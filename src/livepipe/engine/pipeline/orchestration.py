"""Pipeline orchestration: layered, bounded-parallel runs with failure propagation."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Iterable

import duckdb
from rich.console import Console

from livepipe.engine.database import ensure_meta_tables, log_run
from livepipe.errors import ConstraintFailure, MaterializationFailure

from .compute import Compute
from .execution import ensure_output_schema, materialize
from .models import Dataset, DatasetResult, DatasetStatus, Policy, RunReport, RunStatus
from .registry import DatasetRegistry
from .resolver import dependency_closure, resolve
from .sources import SourceLister

console = Console()
logger = logging.getLogger("livepipe.orchestrator")

# Datasets currently materializing in this process, keyed by (database, dataset).
# One in-flight materialization per dataset, across overlapping runs.
_in_flight: set[tuple[str, str]] = set()
_in_flight_lock = threading.Lock()


def _database_key(conn: duckdb.DuckDBPyConnection) -> str:
    row = conn.execute(
        "SELECT database_name, path FROM duckdb_databases() WHERE database_name = current_database()"
    ).fetchone()
    if not row:
        return "memory"
    return row[1] or row[0]


def _normalize_targets(targets: str | Iterable[str] | None) -> list[str] | None:
    """None means the full graph."""
    if targets is None or targets == "all":
        return None
    if isinstance(targets, str):
        targets = [targets]
    names = sorted({t.lower() for t in targets})
    if not names or "all" in names:
        return None
    return names


def _materialize_task(
    conn: duckdb.DuckDBPyConnection,
    db_key: str,
    dataset: Dataset,
    output_schema: str,
    compute: Compute | None,
    lister: SourceLister | None,
    cancel: threading.Event | None,
) -> DatasetResult:
    """Materialize one dataset on its own cursor. Never raises."""
    kind = dataset.kind.value
    if cancel is not None and cancel.is_set():
        return DatasetResult(name=dataset.name, kind=kind, status=DatasetStatus.SKIPPED.value, error="cancelled")

    key = (db_key, dataset.name)
    with _in_flight_lock:
        if key in _in_flight:
            return DatasetResult(
                name=dataset.name,
                kind=kind,
                status=DatasetStatus.FAILED.value,
                error="already being materialized by another run",
            )
        _in_flight.add(key)

    cursor = conn.cursor()
    try:
        result = materialize(
            cursor, dataset, output_schema=output_schema, compute=compute, lister=lister,
        )
        return DatasetResult(
            name=dataset.name,
            kind=kind,
            status=DatasetStatus.SUCCEEDED.value,
            rows_written=result.rows_written,
            output_version=result.output_version,
            violations=result.report.outcomes,
            duration_ms=result.duration_ms,
        )
    except ConstraintFailure as e:
        return DatasetResult(
            name=dataset.name,
            kind=kind,
            status=DatasetStatus.FAILED.value,
            violations=e.report.outcomes,
            error=e.reason,
        )
    except MaterializationFailure as e:
        return DatasetResult(name=dataset.name, kind=kind, status=DatasetStatus.FAILED.value, error=e.reason)
    except Exception as e:
        logger.exception("Unexpected error materializing %s", dataset.name)
        return DatasetResult(name=dataset.name, kind=kind, status=DatasetStatus.FAILED.value, error=str(e))
    finally:
        cursor.close()
        with _in_flight_lock:
            _in_flight.discard(key)


def _print_result(out: Console, result: DatasetResult) -> None:
    label = f"[bold]{result.name}[/bold] ({result.kind})"
    if result.status == DatasetStatus.SUCCEEDED.value:
        out.print(f"  [green]done[/green]  {label} ({result.rows_written:,} rows, {result.duration_ms}ms)")
    elif result.status == DatasetStatus.SKIPPED.value:
        out.print(f"  [dim]skip[/dim]  {label}: {result.error}")
    else:
        out.print(f"  [red]fail[/red]  {label}: {result.error}")
    for v in result.violations:
        if not v.violations:
            continue
        color = "red" if v.policy == Policy.FAIL.value else "yellow"
        out.print(f"         [{color}]{v.policy}[/{color}]  {v.name}: {v.violations} row(s) violate ({v.predicate})")


def _overall_status(report: RunReport) -> RunStatus:
    statuses = [r.status for r in report.per_dataset.values()]
    if all(s == DatasetStatus.SUCCEEDED.value for s in statuses):
        return RunStatus.SUCCEEDED
    if report.targets is None:
        return RunStatus.FAILED
    if any(s == DatasetStatus.SUCCEEDED.value for s in statuses):
        return RunStatus.PARTIALLY_FAILED
    return RunStatus.FAILED


def run_pipeline(
    conn: duckdb.DuckDBPyConnection,
    registry: DatasetRegistry,
    targets: str | Iterable[str] | None = None,
    *,
    output_schema: str = "live",
    max_workers: int = 4,
    compute: Compute | None = None,
    lister: SourceLister | None = None,
    cancel: threading.Event | None = None,
    quiet: bool = False,
    record: bool = True,
) -> RunReport:
    """Run the whole graph or the dependency closure of some targets.

    Args:
        conn: DuckDB connection; each materialization uses its own cursor.
        registry: Loaded dataset definitions.
        targets: ``None``/``"all"`` for the full graph, or dataset names.
        output_schema: Schema holding the dataset output tables.
        max_workers: Upper bound on concurrent materializations in a layer.
        compute: Compute collaborator (DuckDB by default).
        lister: Source-listing collaborator (local files by default).
        cancel: When set, datasets that have not started are skipped.
        quiet: Suppress console progress output.
        record: Append the finished run to the run history tables.

    Raises:
        ConfigurationError: cycles, unknown references or unknown targets.
    """
    out = Console(quiet=True) if quiet else console
    report = RunReport(run_id=uuid.uuid4().hex, targets=_normalize_targets(targets))

    # Configuration errors anywhere in the graph are fatal, even for partial runs
    layers = resolve(registry.datasets())
    if report.targets is not None:
        selected = {d.name for d in dependency_closure(registry.datasets(), report.targets)}
        layers = [[d for d in layer if d.name in selected] for layer in layers]
        layers = [layer for layer in layers if layer]
    report.layers = [[d.name for d in layer] for layer in layers]

    ensure_meta_tables(conn)
    ensure_output_schema(conn, output_schema)
    db_key = _database_key(conn)

    report.status = RunStatus.RUNNING
    report.started_at = datetime.now()
    logger.info("Run %s started: %d dataset(s) in %d layer(s)", report.run_id, len(report.order), len(layers))

    for layer_idx, layer in enumerate(layers, 1):
        runnable: list[Dataset] = []
        for dataset in layer:
            blocked = [
                dep for dep in dataset.dependencies
                if report.per_dataset[dep].status != DatasetStatus.SUCCEEDED.value
            ]
            if blocked:
                result = DatasetResult(
                    name=dataset.name,
                    kind=dataset.kind.value,
                    status=DatasetStatus.SKIPPED.value,
                    error=f"upstream did not succeed: {', '.join(sorted(blocked))}",
                )
                report.per_dataset[dataset.name] = result
                _print_result(out, result)
            else:
                runnable.append(dataset)

        if not runnable:
            continue
        if len(runnable) > 1:
            out.print(f"  [dim]layer {layer_idx}/{len(layers)}[/dim] ({len(runnable)} datasets in parallel)")

        workers = max(1, min(max_workers, len(runnable)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(
                    _materialize_task, conn, db_key, dataset, output_schema, compute, lister, cancel,
                )
                for dataset in runnable
            ]
            results = [f.result() for f in futures]

        # Report in name order regardless of completion order
        for result in results:
            report.per_dataset[result.name] = result
            _print_result(out, result)
            if result.status == DatasetStatus.FAILED.value:
                logger.error("%s failed: %s", result.name, result.error)

    report.status = _overall_status(report)
    report.finished_at = datetime.now()
    if record:
        log_run(conn, report)

    counts = report.status_counts()
    out.print()
    out.print(
        f"  {counts.get('succeeded', 0)} succeeded, {counts.get('failed', 0)} failed, "
        f"{counts.get('skipped', 0)} skipped [dim]({report.overall_status}, {report.duration_ms}ms)[/dim]"
    )
    logger.info("Run %s finished: %s", report.run_id, report.overall_status)
    return report
