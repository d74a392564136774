"""Tests for dependency resolution."""

import pytest

from livepipe.engine.pipeline import (
    Dataset,
    DatasetKind,
    build_order,
    dependency_closure,
    downstream_of,
    find_cycles,
    resolve,
)
from livepipe.engine.pipeline.resolver import strongly_connected_components
from livepipe.errors import ConfigurationError, CycleDetectedError, UnknownDependencyError


def ds(name, *deps):
    return Dataset(name=name, kind=DatasetKind.RECOMPUTED, query="SELECT 1", dependencies=tuple(deps))


@pytest.fixture
def diamond():
    return [ds("d", "b", "c"), ds("c", "a"), ds("b", "a"), ds("a")]


class TestResolve:
    def test_layers(self, diamond):
        layers = resolve(diamond)
        assert [[d.name for d in layer] for layer in layers] == [["a"], ["b", "c"], ["d"]]

    def test_independent_roots_share_a_layer(self):
        layers = resolve([ds("z"), ds("y"), ds("x", "z")])
        assert [[d.name for d in layer] for layer in layers] == [["y", "z"], ["x"]]

    def test_order_respects_dependencies(self):
        datasets = [
            ds("gold", "silver_a", "silver_b"),
            ds("silver_a", "bronze_1"),
            ds("silver_b", "bronze_1", "bronze_2"),
            ds("bronze_1"),
            ds("bronze_2"),
            ds("report", "gold", "bronze_2"),
        ]
        order = [d.name for d in build_order(datasets)]
        position = {name: i for i, name in enumerate(order)}
        for d in datasets:
            for dep in d.dependencies:
                assert position[dep] < position[d.name]

    def test_empty(self):
        assert resolve([]) == []

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependencyError) as exc:
            resolve([ds("a", "missing")])
        assert exc.value.dataset == "a"
        assert exc.value.reference == "missing"
        assert isinstance(exc.value, ConfigurationError)


class TestCycles:
    def test_cycle_names_every_member(self):
        datasets = [ds("a", "b"), ds("b", "c"), ds("c", "a"), ds("d")]
        with pytest.raises(CycleDetectedError) as exc:
            resolve(datasets)
        assert exc.value.members == ["a", "b", "c"]
        assert exc.value.cycle == ["a", "b", "c", "a"]
        assert "a -> b -> c -> a" in str(exc.value)

    def test_self_loop(self):
        with pytest.raises(CycleDetectedError) as exc:
            resolve([ds("a", "a")])
        assert exc.value.members == ["a"]
        assert exc.value.cycle == ["a", "a"]

    def test_component_with_chord(self):
        # a -> b -> c -> a plus a -> c: still one component, one closed walk
        errors = find_cycles([ds("a", "b", "c"), ds("b", "c"), ds("c", "a")])
        assert len(errors) == 1
        cycle = errors[0].cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) <= {"a", "b", "c"}
        assert errors[0].members == ["a", "b", "c"]

    def test_separate_cycles_reported_separately(self):
        errors = find_cycles([ds("a", "b"), ds("b", "a"), ds("x", "y"), ds("y", "x"), ds("ok")])
        assert sorted(e.members for e in errors) == [["a", "b"], ["x", "y"]]

    def test_acyclic_has_no_cycles(self, diamond):
        assert find_cycles(diamond) == []

    def test_scc(self):
        graph = {"a": ["b"], "b": ["a"], "c": ["a"]}
        assert sorted(strongly_connected_components(graph)) == [["a", "b"], ["c"]]


class TestSelection:
    def test_closure(self, diamond):
        assert [d.name for d in dependency_closure(diamond, ["d"])] == ["a", "b", "c", "d"]
        assert [d.name for d in dependency_closure(diamond, ["B"])] == ["a", "b"]

    def test_closure_unknown_target(self, diamond):
        with pytest.raises(ConfigurationError, match="Unknown target"):
            dependency_closure(diamond, ["nope"])

    def test_downstream(self, diamond):
        assert downstream_of(diamond, "a") == ["b", "c", "d"]
        assert downstream_of(diamond, "c") == ["d"]
        assert downstream_of(diamond, "d") == []
