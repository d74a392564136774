"""Dataset materialization: incremental append and full recompute."""

from __future__ import annotations

import logging
import time

import duckdb

from livepipe.engine.database import (
    get_output_version,
    record_output,
    table_columns,
    table_exists,
    transaction,
)
from livepipe.engine.sql_analysis import SOURCE_RELATION
from livepipe.engine.utils import qualified
from livepipe.errors import MaterializationFailure, SourceUnavailable

from . import state
from .compute import Compute, DuckDBCompute, drop_temp, temp_name
from .models import (
    Dataset,
    FullSnapshot,
    IncrementalUnits,
    MaterializationInputs,
    MaterializationResult,
    SourceUnit,
)
from .quality import evaluate_constraints
from .sources import FileSourceLister, SourceLister, stage_units

logger = logging.getLogger("livepipe.executor")


def ensure_output_schema(conn: duckdb.DuckDBPyConnection, output_schema: str) -> None:
    conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{output_schema}"')


def _list_units(dataset: Dataset, lister: SourceLister) -> list[SourceUnit]:
    assert dataset.source is not None
    try:
        return lister.list_units(dataset.source.path)
    except OSError as e:
        raise SourceUnavailable(dataset.name, f"cannot list {dataset.source.path}: {e}") from e


def plan_inputs(
    conn: duckdb.DuckDBPyConnection,
    dataset: Dataset,
    lister: SourceLister,
) -> MaterializationInputs:
    """Decide what a materialization reads.

    Incremental datasets get only the units they have not consumed yet.
    Recomputed datasets get the committed version of every dependency, plus
    every unit of their source when they read raw files.
    """
    if dataset.is_incremental:
        units = _list_units(dataset, lister)
        return IncrementalUnits(tuple(state.pending(conn, dataset.name, units)))

    versions = tuple((dep, get_output_version(conn, dep)) for dep in dataset.dependencies)
    units = tuple(_list_units(dataset, lister)) if dataset.source else ()
    return FullSnapshot(versions=versions, units=units)


def _stage_source(conn: duckdb.DuckDBPyConnection, dataset: Dataset, units: list[SourceUnit]) -> str:
    assert dataset.source is not None
    table = temp_name("source", dataset.name)
    try:
        stage_units(conn, dataset.source, units, table)
    except (duckdb.Error, ValueError) as e:
        raise SourceUnavailable(dataset.name, f"cannot read {dataset.source.path}: {e}") from e
    return table


def _append(conn: duckdb.DuckDBPyConnection, output_schema: str, name: str, staged: str) -> None:
    """Append staged rows by column name. New columns are added to the target."""
    target = qualified(output_schema, name)
    if not table_exists(conn, output_schema, name):
        conn.execute(f"CREATE TABLE {target} AS SELECT * FROM {staged}")
        return

    existing = {c for c, _ in table_columns(conn, output_schema, name)}
    staged_cols = conn.execute(f"DESCRIBE {staged}").fetchall()
    for col_name, col_type, *_ in staged_cols:
        if col_name not in existing:
            conn.execute(f'ALTER TABLE {target} ADD COLUMN "{col_name}" {col_type}')
    conn.execute(f"INSERT INTO {target} BY NAME SELECT * FROM {staged}")


def _row_count(conn: duckdb.DuckDBPyConnection, relation: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {relation}").fetchone()
    return row[0] if row else 0


def _materialize_incremental(
    conn: duckdb.DuckDBPyConnection,
    dataset: Dataset,
    inputs: IncrementalUnits,
    output_schema: str,
    compute: Compute,
) -> MaterializationResult:
    units = list(inputs.units)
    if not units:
        logger.info("%s: no new input units", dataset.name)
        return MaterializationResult(
            rows_written=0,
            output_version=state.get_state(conn, dataset.name).output_version,
        )

    source_table = staged = None
    try:
        source_table = _stage_source(conn, dataset, units)
        staged = compute.evaluate(conn, dataset.query, {SOURCE_RELATION: source_table}, dataset.name)
        report = evaluate_constraints(conn, staged, dataset.constraints, dataset.name)

        # Rows and consumed units become visible together or not at all
        with transaction(conn):
            version = state.get_state(conn, dataset.name).output_version + 1
            _append(conn, output_schema, dataset.name, staged)
            state.commit(conn, dataset.name, units, version)
            total = _row_count(conn, qualified(output_schema, dataset.name))
            record_output(conn, dataset.name, dataset.kind.value, version, total)
    finally:
        drop_temp(conn, staged, source_table)

    logger.info(
        "%s: appended %d row(s) from %d unit(s) as version %d",
        dataset.name, report.kept_rows, len(units), version,
    )
    return MaterializationResult(
        rows_written=report.kept_rows,
        output_version=version,
        units_consumed=len(units),
        report=report,
    )


def _check_snapshot(conn: duckdb.DuckDBPyConnection, dataset: Dataset, inputs: FullSnapshot) -> None:
    """Refuse to publish when an upstream output moved past the planned version."""
    for dep, planned in inputs.versions:
        current = get_output_version(conn, dep)
        if current != planned:
            raise MaterializationFailure(
                dataset.name,
                f"upstream dataset {dep!r} changed from version {planned} to {current} during evaluation",
            )


def _materialize_recomputed(
    conn: duckdb.DuckDBPyConnection,
    dataset: Dataset,
    inputs: FullSnapshot,
    output_schema: str,
    compute: Compute,
) -> MaterializationResult:
    bindings: dict[str, str] = {}
    for dep, version in inputs.versions:
        if version == 0 or not table_exists(conn, output_schema, dep):
            raise MaterializationFailure(dataset.name, f"upstream dataset {dep!r} has no committed output")
        bindings[dep] = qualified(output_schema, dep)

    source_table = staged = None
    try:
        if dataset.source:
            source_table = _stage_source(conn, dataset, list(inputs.units))
            bindings[SOURCE_RELATION] = source_table
        staged = compute.evaluate(conn, dataset.query, bindings, dataset.name)
        report = evaluate_constraints(conn, staged, dataset.constraints, dataset.name)

        # Readers see either the previous table or the complete new one
        with transaction(conn):
            _check_snapshot(conn, dataset, inputs)
            version = get_output_version(conn, dataset.name) + 1
            conn.execute(
                f"CREATE OR REPLACE TABLE {qualified(output_schema, dataset.name)} AS SELECT * FROM {staged}"
            )
            record_output(conn, dataset.name, dataset.kind.value, version, report.kept_rows)
    finally:
        drop_temp(conn, staged, source_table)

    logger.info("%s: replaced output with %d row(s) as version %d", dataset.name, report.kept_rows, version)
    return MaterializationResult(rows_written=report.kept_rows, output_version=version, report=report)


def materialize(
    conn: duckdb.DuckDBPyConnection,
    dataset: Dataset,
    *,
    output_schema: str = "live",
    compute: Compute | None = None,
    lister: SourceLister | None = None,
    inputs: MaterializationInputs | None = None,
) -> MaterializationResult:
    """Materialize one dataset. Nothing is committed unless it succeeds.

    Raises:
        MaterializationFailure: evaluation, constraints (ConstraintFailure) or
            source access (SourceUnavailable) failed.
    """
    compute = compute or DuckDBCompute()
    lister = lister or FileSourceLister()
    start = time.perf_counter()

    try:
        ensure_output_schema(conn, output_schema)
        if inputs is None:
            inputs = plan_inputs(conn, dataset, lister)
        if isinstance(inputs, IncrementalUnits):
            result = _materialize_incremental(conn, dataset, inputs, output_schema, compute)
        else:
            result = _materialize_recomputed(conn, dataset, inputs, output_schema, compute)
    except MaterializationFailure:
        raise
    except (duckdb.Error, KeyError, ValueError) as e:
        raise MaterializationFailure(dataset.name, str(e)) from e

    result.duration_ms = int((time.perf_counter() - start) * 1000)
    return result
