"""DuckDB connection management and the engine's metadata tables."""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import duckdb

if TYPE_CHECKING:
    from livepipe.engine.pipeline.models import RunReport

META_SCHEMA = "_livepipe"


def connect(db_path: str | Path, read_only: bool = False) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection to the given path (``:memory:`` works too)."""
    db_path = str(db_path)
    return duckdb.connect(db_path, read_only=read_only)


def ensure_meta_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the internal tables for incremental state, outputs and run history."""
    conn.execute(f"CREATE SCHEMA IF NOT EXISTS {META_SCHEMA}")
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.incremental_state (
            dataset        VARCHAR PRIMARY KEY,
            output_version BIGINT NOT NULL DEFAULT 0,
            updated_at     TIMESTAMP DEFAULT current_timestamp
        )
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.consumed_units (
            dataset        VARCHAR NOT NULL,
            unit_id        VARCHAR NOT NULL,
            fingerprint    VARCHAR,
            output_version BIGINT NOT NULL,
            consumed_at    TIMESTAMP DEFAULT current_timestamp,
            PRIMARY KEY (dataset, unit_id)
        )
    """)
    # One row per published output table (both kinds)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.dataset_outputs (
            dataset    VARCHAR PRIMARY KEY,
            kind       VARCHAR NOT NULL,
            version    BIGINT NOT NULL,
            row_count  BIGINT DEFAULT 0,
            updated_at TIMESTAMP DEFAULT current_timestamp
        )
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.run_log (
            run_id       VARCHAR PRIMARY KEY,
            targets      VARCHAR NOT NULL,
            status       VARCHAR NOT NULL,
            started_at   TIMESTAMP,
            finished_at  TIMESTAMP,
            duration_ms  BIGINT,
            layers       JSON,
            succeeded    INTEGER DEFAULT 0,
            failed       INTEGER DEFAULT 0,
            skipped      INTEGER DEFAULT 0,
            violations   BIGINT DEFAULT 0
        )
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.run_datasets (
            run_id         VARCHAR NOT NULL,
            dataset        VARCHAR NOT NULL,
            kind           VARCHAR NOT NULL,
            status         VARCHAR NOT NULL,
            rows_written   BIGINT DEFAULT 0,
            output_version BIGINT,
            duration_ms    BIGINT DEFAULT 0,
            error          VARCHAR
        )
    """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {META_SCHEMA}.constraint_results (
            run_id          VARCHAR NOT NULL,
            dataset         VARCHAR NOT NULL,
            constraint_name VARCHAR NOT NULL,
            policy          VARCHAR NOT NULL,
            predicate       VARCHAR NOT NULL,
            violations      BIGINT NOT NULL,
            checked_at      TIMESTAMP DEFAULT current_timestamp
        )
    """)


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run a block inside one DuckDB transaction; roll back on any exception."""
    conn.begin()
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def table_exists(conn: duckdb.DuckDBPyConnection, schema: str, name: str) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
        [schema, name],
    ).fetchone()
    return bool(row and row[0])


def table_columns(conn: duckdb.DuckDBPyConnection, schema: str, name: str) -> list[tuple[str, str]]:
    """Return ``(column_name, data_type)`` pairs in ordinal order."""
    return conn.execute(
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = ? AND table_name = ? ORDER BY ordinal_position",
        [schema, name],
    ).fetchall()


def get_output_version(conn: duckdb.DuckDBPyConnection, dataset: str) -> int:
    row = conn.execute(
        f"SELECT version FROM {META_SCHEMA}.dataset_outputs WHERE dataset = ?",
        [dataset],
    ).fetchone()
    return int(row[0]) if row else 0


def record_output(
    conn: duckdb.DuckDBPyConnection,
    dataset: str,
    kind: str,
    version: int,
    row_count: int,
) -> None:
    """Record a newly published output version. Call inside the publish transaction."""
    conn.execute(
        f"""
        INSERT OR REPLACE INTO {META_SCHEMA}.dataset_outputs
            (dataset, kind, version, row_count, updated_at)
        VALUES (?, ?, ?, ?, current_timestamp)
        """,
        [dataset, kind, version, row_count],
    )


def log_run(conn: duckdb.DuckDBPyConnection, report: RunReport) -> None:
    """Append a finished run and its per-dataset outcomes to the run history."""
    counts = report.status_counts()
    conn.execute(
        f"""
        INSERT INTO {META_SCHEMA}.run_log
            (run_id, targets, status, started_at, finished_at, duration_ms, layers,
             succeeded, failed, skipped, violations)
        VALUES (?, ?, ?, ?, ?, ?, ?::JSON, ?, ?, ?, ?)
        """,
        [
            report.run_id,
            ",".join(report.targets) if report.targets else "all",
            report.overall_status,
            report.started_at,
            report.finished_at,
            report.duration_ms,
            json.dumps(report.layers),
            counts.get("succeeded", 0),
            counts.get("failed", 0),
            counts.get("skipped", 0),
            report.total_violations(),
        ],
    )
    for result in report.per_dataset.values():
        conn.execute(
            f"""
            INSERT INTO {META_SCHEMA}.run_datasets
                (run_id, dataset, kind, status, rows_written, output_version, duration_ms, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                report.run_id,
                result.name,
                result.kind,
                result.status,
                result.rows_written,
                result.output_version,
                result.duration_ms,
                result.error,
            ],
        )
        for outcome in result.violations:
            conn.execute(
                f"""
                INSERT INTO {META_SCHEMA}.constraint_results
                    (run_id, dataset, constraint_name, policy, predicate, violations)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [report.run_id, result.name, outcome.name, outcome.policy, outcome.predicate, outcome.violations],
            )


def recent_runs(conn: duckdb.DuckDBPyConnection, limit: int = 10) -> list[dict]:
    rows = conn.execute(
        f"""
        SELECT run_id, targets, status, started_at, duration_ms, succeeded, failed, skipped, violations
        FROM {META_SCHEMA}.run_log
        ORDER BY started_at DESC
        LIMIT ?
        """,
        [limit],
    ).fetchall()
    keys = ("run_id", "targets", "status", "started_at", "duration_ms", "succeeded", "failed", "skipped", "violations")
    return [dict(zip(keys, r)) for r in rows]
