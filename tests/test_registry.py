"""Tests for dataset definition loading and validation."""

import textwrap
from pathlib import Path

import pytest

from livepipe.engine.pipeline import (
    Dataset,
    DatasetKind,
    DatasetRegistry,
    Policy,
    dataset_from_record,
    load_definitions,
)
from livepipe.errors import (
    ConfigurationError,
    DefinitionError,
    MalformedConstraintError,
)


@pytest.fixture
def definitions_dir(tmp_path):
    d = tmp_path / "pipelines"
    d.mkdir()
    return d


def _source_record(name="bronze_orders", **overrides):
    record = {
        "name": name,
        "kind": "incremental",
        "query": "SELECT * FROM _source",
        "source": {"path": "/data/orders", "format": "csv"},
    }
    record.update(overrides)
    return record


class TestDatasetFromRecord:
    def test_dependencies_are_derived(self):
        d = dataset_from_record({
            "name": "silver",
            "query": "SELECT * FROM LIVE.bronze_a JOIN LIVE.bronze_b USING (id)",
        })
        assert d.kind == DatasetKind.RECOMPUTED
        assert d.dependencies == ("bronze_a", "bronze_b")
        assert d.source is None

    def test_name_is_lower_cased(self):
        d = dataset_from_record({"name": "Silver_Orders", "query": "SELECT 1 AS x"})
        assert d.name == "silver_orders"

    def test_kind_aliases(self):
        assert dataset_from_record(_source_record(kind="streaming")).kind == DatasetKind.INCREMENTAL
        assert dataset_from_record({"name": "a", "kind": "live", "query": "SELECT 1"}).kind == DatasetKind.RECOMPUTED
        assert (
            dataset_from_record({"name": "a", "kind": "materialized_view", "query": "SELECT 1"}).kind
            == DatasetKind.RECOMPUTED
        )

    def test_unknown_kind(self):
        with pytest.raises(DefinitionError, match="Unknown kind"):
            dataset_from_record({"name": "a", "kind": "view", "query": "SELECT 1"})

    def test_reserved_name(self):
        with pytest.raises(DefinitionError, match="may not start"):
            dataset_from_record({"name": "_source", "query": "SELECT 1"})

    def test_invalid_name(self):
        with pytest.raises(DefinitionError, match="Invalid dataset name"):
            dataset_from_record({"name": "bad-name", "query": "SELECT 1"})

    def test_empty_query(self):
        with pytest.raises(DefinitionError, match="empty query"):
            dataset_from_record({"name": "a", "query": "  "})

    def test_incremental_needs_source(self):
        with pytest.raises(DefinitionError, match="must read a raw source"):
            dataset_from_record({"name": "a", "kind": "incremental", "query": "SELECT 1"})

    def test_incremental_may_not_read_datasets(self):
        record = _source_record(query="SELECT * FROM _source JOIN LIVE.dim USING (id)")
        with pytest.raises(DefinitionError, match="may not read other datasets"):
            dataset_from_record(record)

    def test_source_must_be_read(self):
        with pytest.raises(DefinitionError, match="never reads _source"):
            dataset_from_record(_source_record(query="SELECT 1 AS x"))

    def test_source_relation_without_source(self):
        with pytest.raises(DefinitionError, match="declares no source"):
            dataset_from_record({"name": "a", "query": "SELECT * FROM _source"})

    def test_inline_source_resolves_against_base_dir(self, tmp_path):
        d = dataset_from_record(
            {"name": "a", "kind": "incremental", "query": "SELECT * FROM read_files('landing/a', format => 'json')"},
            base_dir=tmp_path,
        )
        assert d.source.path == str(tmp_path / "landing/a")
        assert d.source.format == "json"
        assert d.query == "SELECT * FROM _source"

    def test_inline_and_declared_source(self):
        record = _source_record(query="SELECT * FROM read_files('x.csv')")
        with pytest.raises(DefinitionError, match="also calls read_files"):
            dataset_from_record(record)

    def test_unsupported_format(self):
        record = _source_record(source={"path": "/data", "format": "xml"})
        with pytest.raises(DefinitionError, match="Unsupported source format"):
            dataset_from_record(record)

    def test_source_options(self):
        record = _source_record(source={"path": "/data", "options": {"Header": True, "delimiter": ";"}})
        d = dataset_from_record(record)
        assert d.source.option("header") == "True"
        assert d.source.option("delimiter") == ";"
        assert d.source.option("missing", "x") == "x"

    def test_self_reference_is_kept(self):
        d = dataset_from_record({"name": "loop", "query": "SELECT * FROM LIVE.loop"})
        assert d.dependencies == ("loop",)


class TestConstraintValidation:
    def test_policies(self):
        d = dataset_from_record({
            "name": "a",
            "query": "SELECT 1 AS x",
            "constraints": [
                {"name": "w", "predicate": "x > 0"},
                {"name": "d", "predicate": "x > 0", "policy": "drop row"},
                {"name": "f", "predicate": "x > 0", "policy": "FAIL_UPDATE"},
            ],
        })
        assert [c.policy for c in d.constraints] == [Policy.WARN, Policy.DROP, Policy.FAIL]

    def test_missing_predicate(self):
        with pytest.raises(MalformedConstraintError, match="Invalid predicate"):
            dataset_from_record({"name": "a", "query": "SELECT 1", "constraints": [{"name": "c"}]})

    def test_missing_name(self):
        with pytest.raises(MalformedConstraintError, match="missing a name"):
            dataset_from_record({"name": "a", "query": "SELECT 1", "constraints": [{"predicate": "x > 0"}]})

    def test_duplicate_name(self):
        constraints = [{"name": "c", "predicate": "x > 0"}, {"name": "c", "predicate": "x < 9"}]
        with pytest.raises(MalformedConstraintError, match="Duplicate constraint"):
            dataset_from_record({"name": "a", "query": "SELECT 1", "constraints": constraints})

    def test_unknown_policy(self):
        constraints = [{"name": "c", "predicate": "x > 0", "policy": "ignore"}]
        with pytest.raises(MalformedConstraintError, match="Unknown policy"):
            dataset_from_record({"name": "a", "query": "SELECT 1", "constraints": constraints})

    def test_constraint_errors_are_configuration_errors(self):
        assert issubclass(MalformedConstraintError, ConfigurationError)
        assert issubclass(ConfigurationError, ValueError)


class TestLoadDefinitions:
    def test_sql_and_yaml(self, definitions_dir, tmp_path):
        (definitions_dir / "bronze.sql").write_text(textwrap.dedent("""\
            CREATE OR REFRESH STREAMING TABLE bronze_orders
            AS SELECT * FROM STREAM(read_files('landing/orders', format => 'csv', header => true));
        """))
        (definitions_dir / "silver.yml").write_text(textwrap.dedent("""\
            datasets:
              - name: silver_orders
                kind: recomputed
                comment: Cleaned orders
                query: SELECT * FROM LIVE.bronze_orders
                constraints:
                  - name: positive_amount
                    predicate: amount > 0
                    policy: drop
        """))
        (definitions_dir / "notes.txt").write_text("ignored")

        registry = load_definitions(definitions_dir, base_dir=tmp_path)
        assert registry.names() == ["bronze_orders", "silver_orders"]
        bronze = registry.get("bronze_orders")
        assert bronze.is_incremental
        assert bronze.source.path == str(tmp_path / "landing/orders")
        assert bronze.origin.endswith("bronze.sql")
        silver = registry.get("SILVER_ORDERS")
        assert silver.dependencies == ("bronze_orders",)
        assert silver.comment == "Cleaned orders"
        assert silver.constraints[0].policy == Policy.DROP

    def test_nested_directories(self, definitions_dir):
        (definitions_dir / "gold").mkdir()
        (definitions_dir / "gold" / "totals.sql").write_text("CREATE OR REFRESH LIVE TABLE totals AS SELECT 1 AS n")
        assert load_definitions(definitions_dir).names() == ["totals"]

    def test_duplicate_across_files(self, definitions_dir):
        (definitions_dir / "a.sql").write_text("CREATE OR REFRESH LIVE TABLE dup AS SELECT 1")
        (definitions_dir / "b.yml").write_text("datasets:\n  - name: dup\n    query: SELECT 2\n")
        with pytest.raises(DefinitionError, match="defined more than once"):
            load_definitions(definitions_dir)

    def test_yaml_without_datasets_list(self, definitions_dir):
        (definitions_dir / "bad.yml").write_text("datasets: not-a-list\n")
        with pytest.raises(DefinitionError, match="Expected a 'datasets' list"):
            load_definitions(definitions_dir)

    def test_yaml_entry_that_is_not_a_mapping(self, definitions_dir):
        (definitions_dir / "defs.yml").write_text("datasets:\n  - just_a_name\n")
        with pytest.raises(DefinitionError, match=r"datasets\[0\] must be a mapping"):
            load_definitions(definitions_dir)

    def test_yaml_syntax_error(self, definitions_dir):
        (definitions_dir / "broken.yml").write_text("datasets:\n  - name: a\n    query: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_definitions(definitions_dir)

    def test_source_options_must_be_a_mapping(self):
        with pytest.raises(DefinitionError, match="options must be a mapping"):
            dataset_from_record(_source_record(source={"path": "/data/orders", "options": ["header"]}))

    def test_missing_directory(self, tmp_path):
        assert len(load_definitions(tmp_path / "nope")) == 0


class TestRegistry:
    def test_lookup(self):
        registry = DatasetRegistry([dataset_from_record({"name": "a", "query": "SELECT 1"})])
        assert "a" in registry
        assert "A" in registry
        assert "b" not in registry
        assert [d.name for d in registry] == ["a"]
        with pytest.raises(ConfigurationError, match="Unknown dataset"):
            registry.get("b")

    def test_register_duplicate(self):
        d = dataset_from_record({"name": "a", "query": "SELECT 1"}, origin="a.sql")
        registry = DatasetRegistry([d])
        with pytest.raises(DefinitionError, match="a.sql"):
            registry.register(d)

    def test_mixed_case_dataset_is_stored_lower_cased(self):
        d = Dataset(name="Orders", kind=DatasetKind.RECOMPUTED, query="SELECT 1")
        registry = DatasetRegistry([d])
        assert "orders" in registry
        assert registry.get("ORDERS").name == "orders"
        assert registry.names() == ["orders"]
        with pytest.raises(DefinitionError, match="defined more than once"):
            registry.register(Dataset(name="ORDERS", kind=DatasetKind.RECOMPUTED, query="SELECT 2"))
