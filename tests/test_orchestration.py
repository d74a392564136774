"""Tests for pipeline runs: layering, failure propagation and run history."""

from __future__ import annotations

import json
import threading

import duckdb
import pytest

from livepipe.engine.database import META_SCHEMA, recent_runs
from livepipe.engine.pipeline import (
    DatasetRegistry,
    DuckDBCompute,
    dataset_from_record,
    get_state,
    run_pipeline,
)
from livepipe.engine.pipeline import orchestration
from livepipe.errors import ConfigurationError, CycleDetectedError


@pytest.fixture
def db(tmp_path):
    conn = duckdb.connect(str(tmp_path / "test.duckdb"))
    yield conn
    conn.close()


@pytest.fixture
def landing(tmp_path):
    d = tmp_path / "landing"
    d.mkdir()
    for i in range(1, 4):
        (d / f"x_{i:03d}.csv").write_text(f"id,amount\n{i * 10 + 1},{i}\n{i * 10 + 2},{i}\n")
    return d


def _records(landing):
    return [
        {
            "name": "bronze_x",
            "kind": "incremental",
            "query": "SELECT id, amount FROM _source",
            "source": {"path": str(landing), "options": {"header": True}},
        },
        {"name": "silver_y", "query": "SELECT id, amount FROM LIVE.bronze_x"},
        {
            "name": "gold_z",
            "query": "SELECT COUNT(*) AS n FROM LIVE.silver_y",
            "constraints": [{"name": "tiny", "predicate": "n < 3", "policy": "fail"}],
        },
        {"name": "platinum_w", "query": "SELECT * FROM LIVE.gold_z"},
        {"name": "other_a", "query": "SELECT 1 AS x"},
        {"name": "other_b", "query": "SELECT x + 1 AS y FROM LIVE.other_a"},
    ]


def registry_of(records):
    return DatasetRegistry(dataset_from_record(r) for r in records)


@pytest.fixture
def registry(landing):
    return registry_of(_records(landing))


def run(db, registry, targets=None, **kwargs):
    return run_pipeline(db, registry, targets, quiet=True, **kwargs)


def count(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM live.{table}").fetchone()[0]


class TestScenario:
    def test_first_run(self, db, registry):
        report = run(db, registry)
        assert report.layers == [["bronze_x", "other_a"], ["other_b", "silver_y"], ["gold_z"], ["platinum_w"]]
        assert {name: r.status for name, r in report.per_dataset.items()} == {
            "bronze_x": "succeeded",
            "other_a": "succeeded",
            "other_b": "succeeded",
            "silver_y": "succeeded",
            "gold_z": "failed",
            "platinum_w": "skipped",
        }
        assert report.overall_status == "failed"
        assert report.per_dataset["bronze_x"].rows_written == 6
        assert len(get_state(db, "bronze_x").consumed) == 3
        assert count(db, "silver_y") == 6
        assert "tiny" in report.per_dataset["gold_z"].error
        assert "gold_z" in report.per_dataset["platinum_w"].error

    def test_second_run_without_new_units(self, db, registry):
        run(db, registry)
        before = get_state(db, "bronze_x")
        report = run(db, registry)
        assert report.status_of("bronze_x") == "succeeded"
        assert report.per_dataset["bronze_x"].rows_written == 0
        after = get_state(db, "bronze_x")
        assert after.output_version == before.output_version
        assert after.consumed == before.consumed
        assert report.status_of("silver_y") == "succeeded"
        assert count(db, "silver_y") == 6
        assert report.status_of("gold_z") == "failed"
        assert report.status_of("platinum_w") == "skipped"

    def test_every_dataset_has_a_terminal_status(self, db, registry):
        report = run(db, registry)
        assert sorted(report.per_dataset) == registry.names()
        assert set(report.status_counts()) <= {"succeeded", "failed", "skipped"}

    def test_report_serializes(self, db, registry):
        report = run(db, registry)
        data = json.loads(json.dumps(report.to_dict()))
        assert data["overall_status"] == "failed"
        assert data["targets"] == "all"
        assert data["violations"]["fail"] == 1
        assert data["per_dataset"]["gold_z"]["violations"][0]["name"] == "tiny"


class TestPartialRuns:
    def test_target_closure_only(self, db, registry):
        report = run(db, registry, "silver_y")
        assert sorted(report.per_dataset) == ["bronze_x", "silver_y"]
        assert report.overall_status == "succeeded"
        assert report.targets == ["silver_y"]

    def test_partially_failed(self, db, registry):
        report = run(db, registry, ["gold_z"])
        assert report.overall_status == "partially_failed"
        assert report.status_of("silver_y") == "succeeded"
        assert report.status_of("gold_z") == "failed"

    def test_all_keyword(self, db, registry):
        assert run(db, registry, "all").targets is None

    def test_unknown_target(self, db, registry):
        with pytest.raises(ConfigurationError, match="Unknown target"):
            run(db, registry, ["nope"])

    def test_cycle_elsewhere_is_still_fatal(self, db, landing):
        records = _records(landing) + [
            {"name": "loop_a", "query": "SELECT * FROM LIVE.loop_b"},
            {"name": "loop_b", "query": "SELECT * FROM LIVE.loop_a"},
        ]
        with pytest.raises(CycleDetectedError):
            run(db, registry_of(records), ["other_a"])


class TestFailurePropagation:
    def test_drop_never_aborts(self, db, landing):
        records = _records(landing)[:2]
        records[1]["constraints"] = [{"name": "big", "predicate": "amount > 1", "policy": "drop"}]
        report = run(db, registry_of(records))
        assert report.overall_status == "succeeded"
        assert report.per_dataset["silver_y"].rows_written == 4
        assert report.violation_counts()["drop"] == 2

    def test_source_failure_skips_dependents(self, db, tmp_path, landing):
        records = _records(landing)
        records[0]["source"]["path"] = str(tmp_path / "missing")
        report = run(db, registry_of(records))
        assert report.status_of("bronze_x") == "failed"
        assert [report.status_of(n) for n in ("silver_y", "gold_z", "platinum_w")] == ["skipped"] * 3
        assert report.status_of("other_b") == "succeeded"

    def test_unexpected_error_is_contained(self, db, registry):
        class ExplodingCompute(DuckDBCompute):
            def evaluate(self, conn, query, bindings, dataset):
                if dataset == "other_a":
                    raise RuntimeError("boom")
                return super().evaluate(conn, query, bindings, dataset)

        report = run(db, registry, compute=ExplodingCompute())
        assert report.status_of("other_a") == "failed"
        assert report.per_dataset["other_a"].error == "boom"
        assert report.status_of("other_b") == "skipped"
        assert report.status_of("silver_y") == "succeeded"


class TestConcurrency:
    def test_wide_layer(self, db, landing):
        records = _records(landing)[:1] + [
            {"name": f"slice_{k}", "query": f"SELECT id FROM LIVE.bronze_x WHERE id % 5 = {k}"}
            for k in range(5)
        ]
        report = run(db, registry_of(records), max_workers=4)
        assert report.overall_status == "succeeded"
        assert report.layers[1] == [f"slice_{k}" for k in range(5)]
        assert sum(report.per_dataset[f"slice_{k}"].rows_written for k in range(5)) == 6

    def test_single_worker(self, db, registry):
        report = run(db, registry, max_workers=1)
        assert report.status_of("other_b") == "succeeded"

    def test_dataset_already_in_flight(self, db, registry, monkeypatch):
        key = (orchestration._database_key(db), "bronze_x")
        monkeypatch.setattr(orchestration, "_in_flight", {key})
        report = run(db, registry)
        assert report.status_of("bronze_x") == "failed"
        assert "already being materialized" in report.per_dataset["bronze_x"].error
        assert report.status_of("silver_y") == "skipped"
        assert report.status_of("other_a") == "succeeded"

    def test_in_flight_released_after_run(self, db, registry):
        run(db, registry)
        assert orchestration._in_flight == set()


class TestCancellation:
    def test_cancel_before_start(self, db, registry):
        cancel = threading.Event()
        cancel.set()
        report = run(db, registry, cancel=cancel)
        assert report.per_dataset["bronze_x"].error == "cancelled"
        assert report.status_of("bronze_x") == "skipped"
        assert report.status_of("silver_y") == "skipped"
        assert report.overall_status == "failed"

    def test_in_flight_task_completes(self, db, registry):
        cancel = threading.Event()

        class CancellingCompute(DuckDBCompute):
            def evaluate(self, conn, query, bindings, dataset):
                if dataset == "bronze_x":
                    cancel.set()
                return super().evaluate(conn, query, bindings, dataset)

        report = run(db, registry, ["silver_y"], cancel=cancel, compute=CancellingCompute())
        assert report.status_of("bronze_x") == "succeeded"
        assert report.status_of("silver_y") == "skipped"
        assert report.per_dataset["silver_y"].error == "cancelled"
        assert len(get_state(db, "bronze_x").consumed) == 3


class TestRunLog:
    def test_run_is_recorded(self, db, registry):
        report = run(db, registry)
        [logged] = recent_runs(db)
        assert logged["run_id"] == report.run_id
        assert logged["status"] == "failed"
        assert (logged["succeeded"], logged["failed"], logged["skipped"]) == (4, 1, 1)
        per_dataset = db.execute(
            f"SELECT COUNT(*) FROM {META_SCHEMA}.run_datasets WHERE run_id = ?", [report.run_id]
        ).fetchone()[0]
        assert per_dataset == 6
        violations = db.execute(
            f"SELECT dataset, constraint_name, violations FROM {META_SCHEMA}.constraint_results WHERE run_id = ?",
            [report.run_id],
        ).fetchall()
        assert violations == [("gold_z", "tiny", 1)]

    def test_record_false(self, db, registry):
        run(db, registry, record=False)
        assert recent_runs(db) == []
