"""Row-level data quality constraints.

Constraints run against the staged candidate rows of one materialization,
before anything is committed. Every constraint is counted independently
against the full candidate set (in declared order, for reporting); then:

    fail -- any violating row aborts the dataset (ConstraintFailure)
    drop -- violating rows are deleted from the candidate set
    warn -- violations are only counted and logged

A predicate that evaluates to NULL counts as a violation.
"""

from __future__ import annotations

import logging

import duckdb

from livepipe.errors import ConstraintFailure

from .models import Constraint, ConstraintOutcome, ConstraintReport, Policy

logger = logging.getLogger("livepipe.quality")


def _violation_filter(predicate: str) -> str:
    return f"NOT COALESCE(({predicate}), FALSE)"


def _count(conn: duckdb.DuckDBPyConnection, table: str, where: str | None = None) -> int:
    sql = f"SELECT COUNT(*) FROM {table}"
    if where:
        sql += f" WHERE {where}"
    row = conn.execute(sql).fetchone()
    return row[0] if row else 0


def evaluate_constraints(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    constraints: tuple[Constraint, ...] | list[Constraint],
    dataset: str = "",
) -> ConstraintReport:
    """Apply constraints to a staged table in place and report violations.

    Raises:
        ConstraintFailure: a fail-policy constraint matched at least one row.
            The staged table is left untouched.
    """
    report = ConstraintReport(input_rows=_count(conn, table))

    for c in constraints:
        violations = _count(conn, table, _violation_filter(c.predicate)) if report.input_rows else 0
        report.outcomes.append(
            ConstraintOutcome(name=c.name, policy=c.policy.value, predicate=c.predicate, violations=violations)
        )
        if violations and c.policy == Policy.WARN:
            logger.warning("%s: constraint %s violated by %d row(s)", dataset, c.name, violations)

    if any(o.violations and o.policy == Policy.FAIL.value for o in report.outcomes):
        raise ConstraintFailure(dataset, report)

    drops = [
        c for c, o in zip(constraints, report.outcomes)
        if c.policy == Policy.DROP and o.violations
    ]
    if drops:
        where = " OR ".join(_violation_filter(c.predicate) for c in drops)
        conn.execute(f"DELETE FROM {table} WHERE {where}")
        report.kept_rows = _count(conn, table)
        logger.info("%s: dropped %d row(s) failing constraints", dataset, report.dropped_rows)
    else:
        report.kept_rows = report.input_rows

    return report
