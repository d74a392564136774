"""Incremental state tracking for append-only datasets.

Each incremental dataset owns one record: the set of consumed unit ids (with
the fingerprint seen at consumption time) and the output version those units
were committed in. State is stored in ``_livepipe.incremental_state`` and
``_livepipe.consumed_units``.

``commit`` is meant to run in the same transaction as the output append, so
a unit is recorded as consumed exactly when its rows are durable. It is also
idempotent under unit identity: ids that are already recorded are skipped.
"""

from __future__ import annotations

import logging

import duckdb

from livepipe.engine.database import META_SCHEMA, transaction
from livepipe.engine.utils import qualified

from .models import IncrementalState, SourceUnit

logger = logging.getLogger("livepipe.state")


def get_state(conn: duckdb.DuckDBPyConnection, dataset: str) -> IncrementalState:
    """Current state of a dataset (empty state if it never committed)."""
    row = conn.execute(
        f"SELECT output_version, updated_at FROM {META_SCHEMA}.incremental_state WHERE dataset = ?",
        [dataset],
    ).fetchone()
    consumed = conn.execute(
        f"SELECT unit_id, fingerprint FROM {META_SCHEMA}.consumed_units WHERE dataset = ? ORDER BY unit_id",
        [dataset],
    ).fetchall()
    return IncrementalState(
        dataset=dataset,
        output_version=int(row[0]) if row else 0,
        consumed={unit_id: fp or "" for unit_id, fp in consumed},
        updated_at=row[1] if row else None,
    )


def list_states(conn: duckdb.DuckDBPyConnection) -> list[dict]:
    """Summary of every incremental dataset's state."""
    rows = conn.execute(
        f"""
        SELECT s.dataset, s.output_version, s.updated_at, COUNT(u.unit_id)
        FROM {META_SCHEMA}.incremental_state s
        LEFT JOIN {META_SCHEMA}.consumed_units u ON u.dataset = s.dataset
        GROUP BY s.dataset, s.output_version, s.updated_at
        ORDER BY s.dataset
        """
    ).fetchall()
    return [
        {"dataset": r[0], "output_version": r[1], "updated_at": r[2], "units_consumed": r[3]}
        for r in rows
    ]


def pending(
    conn: duckdb.DuckDBPyConnection,
    dataset: str,
    units: list[SourceUnit],
) -> list[SourceUnit]:
    """Units whose id has not been consumed yet, deduplicated and ordered by id.

    A consumed unit whose content fingerprint changed is not re-read; the
    output is append-only, so rewriting a file after ingestion is ignored.
    """
    consumed = dict(
        conn.execute(
            f"SELECT unit_id, fingerprint FROM {META_SCHEMA}.consumed_units WHERE dataset = ?",
            [dataset],
        ).fetchall()
    )
    new: dict[str, SourceUnit] = {}
    for unit in units:
        if unit.unit_id in consumed:
            old_fp = consumed[unit.unit_id]
            if old_fp and unit.fingerprint and old_fp != unit.fingerprint:
                logger.warning(
                    "%s: %s changed after it was consumed; the change is ignored",
                    dataset, unit.unit_id,
                )
            continue
        new.setdefault(unit.unit_id, unit)
    return [new[k] for k in sorted(new)]


def commit(
    conn: duckdb.DuckDBPyConnection,
    dataset: str,
    units: list[SourceUnit],
    output_version: int,
) -> int:
    """Record units as consumed at ``output_version``. Returns how many were new.

    Call inside the transaction that appends the units' rows.
    """
    current = conn.execute(
        f"SELECT output_version FROM {META_SCHEMA}.incremental_state WHERE dataset = ?",
        [dataset],
    ).fetchone()
    if current and output_version < current[0]:
        raise ValueError(
            f"{dataset}: output version must not go backwards ({current[0]} -> {output_version})"
        )

    already = {
        r[0]
        for r in conn.execute(
            f"SELECT unit_id FROM {META_SCHEMA}.consumed_units WHERE dataset = ?",
            [dataset],
        ).fetchall()
    }
    recorded = 0
    for unit in units:
        if unit.unit_id in already:
            continue
        conn.execute(
            f"""
            INSERT INTO {META_SCHEMA}.consumed_units (dataset, unit_id, fingerprint, output_version)
            VALUES (?, ?, ?, ?)
            """,
            [dataset, unit.unit_id, unit.fingerprint, output_version],
        )
        already.add(unit.unit_id)
        recorded += 1

    conn.execute(
        f"""
        INSERT OR REPLACE INTO {META_SCHEMA}.incremental_state (dataset, output_version, updated_at)
        VALUES (?, ?, current_timestamp)
        """,
        [dataset, output_version],
    )
    return recorded


def reset(conn: duckdb.DuckDBPyConnection, dataset: str, output_schema: str) -> int:
    """Forget everything a dataset consumed and drop its output.

    The next run re-ingests every unit from scratch. Returns the number of
    units that were forgotten.
    """
    with transaction(conn):
        row = conn.execute(
            f"SELECT COUNT(*) FROM {META_SCHEMA}.consumed_units WHERE dataset = ?",
            [dataset],
        ).fetchone()
        conn.execute(f"DELETE FROM {META_SCHEMA}.consumed_units WHERE dataset = ?", [dataset])
        conn.execute(f"DELETE FROM {META_SCHEMA}.incremental_state WHERE dataset = ?", [dataset])
        conn.execute(f"DELETE FROM {META_SCHEMA}.dataset_outputs WHERE dataset = ?", [dataset])
        conn.execute(f"DROP TABLE IF EXISTS {qualified(output_schema, dataset)}")
    forgotten = row[0] if row else 0
    logger.info("Reset %s (%d unit(s) forgotten)", dataset, forgotten)
    return forgotten
