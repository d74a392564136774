"""Compute collaborator: evaluate a dataset query against bound inputs.

The engine only needs ``evaluate(conn, query, bindings) -> table``. Bindings
map every referenced dataset name (and ``_source``) to the relation holding
the rows the query should see; the result is a temp table the caller owns.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Protocol

import duckdb

from livepipe.engine.sql_analysis import bind_query

logger = logging.getLogger("livepipe.compute")

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def temp_name(prefix: str, dataset: str) -> str:
    """Unique temp relation name for one evaluation."""
    with _counter_lock:
        n = next(_counter)
    return f"_lp_{prefix}_{dataset}_{n}"


class Compute(Protocol):
    def evaluate(
        self,
        conn: duckdb.DuckDBPyConnection,
        query: str,
        bindings: dict[str, str],
        dataset: str,
    ) -> str: ...


class DuckDBCompute:
    """Evaluates queries with DuckDB into a connection-local temp table."""

    def evaluate(
        self,
        conn: duckdb.DuckDBPyConnection,
        query: str,
        bindings: dict[str, str],
        dataset: str,
    ) -> str:
        sql = bind_query(query, bindings)
        table = temp_name("stage", dataset)
        logger.debug("Evaluating %s into %s", dataset, table)
        conn.execute(f"CREATE OR REPLACE TEMP TABLE {table} AS\n{sql}")
        return table


def drop_temp(conn: duckdb.DuckDBPyConnection, *tables: str | None) -> None:
    for table in tables:
        if table:
            conn.execute(f"DROP TABLE IF EXISTS {table}")
