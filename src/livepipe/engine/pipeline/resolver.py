"""Dependency resolution: cycle detection and layered execution order."""

from __future__ import annotations

from graphlib import TopologicalSorter
from typing import Iterable

from livepipe.errors import ConfigurationError, CycleDetectedError, UnknownDependencyError

from .models import Dataset


def _dataset_map(datasets: Iterable[Dataset]) -> dict[str, Dataset]:
    return {d.name: d for d in datasets}


def check_references(datasets: Iterable[Dataset]) -> None:
    """Raise UnknownDependencyError for the first reference to an unregistered name."""
    dataset_map = _dataset_map(datasets)
    for name in sorted(dataset_map):
        for dep in dataset_map[name].dependencies:
            if dep not in dataset_map:
                raise UnknownDependencyError(name, dep)


def strongly_connected_components(graph: dict[str, list[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative. ``graph`` maps node -> successors."""
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in sorted(graph):
        if root in index_of:
            continue
        work = [(root, iter(sorted(graph[root])))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, successors = work[-1]
            advanced = False
            for succ in successors:
                if succ not in index_of:
                    index_of[succ] = lowlink[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(sorted(graph[succ]))))
                    advanced = True
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[succ])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
    return components


def _cycle_path(graph: dict[str, list[str]], members: list[str]) -> list[str]:
    """Walk one concrete cycle inside a strongly connected component."""
    inside = set(members)
    start = members[0]
    path = [start]
    seen = {start}
    node = start
    while True:
        succs = sorted(s for s in graph[node] if s in inside)
        if start in succs and (len(path) == len(members) or all(s in seen for s in succs)):
            return path + [start]
        nxt = next((s for s in succs if s not in seen), None)
        if nxt is None:
            # Every successor was visited already; close on the first repeated node
            repeat = succs[0]
            return path[path.index(repeat):] + [repeat]
        path.append(nxt)
        seen.add(nxt)
        node = nxt


def find_cycles(datasets: Iterable[Dataset]) -> list[CycleDetectedError]:
    """Return one error per cyclic component (self-loops included)."""
    dataset_map = _dataset_map(datasets)
    graph = {
        name: [dep for dep in d.dependencies if dep in dataset_map]
        for name, d in dataset_map.items()
    }
    errors = []
    for component in strongly_connected_components(graph):
        if len(component) > 1 or component[0] in graph[component[0]]:
            errors.append(CycleDetectedError(_cycle_path(graph, component), members=component))
    return errors


def resolve(datasets: Iterable[Dataset]) -> list[list[Dataset]]:
    """Group datasets into execution layers.

    Layer k holds every dataset whose dependencies all lie in layers < k.
    Datasets within a layer are sorted by name and may run in parallel.

    Raises:
        UnknownDependencyError: a query references an unregistered name.
        CycleDetectedError: the graph is not acyclic.
    """
    datasets = list(datasets)
    check_references(datasets)
    cycles = find_cycles(datasets)
    if cycles:
        raise cycles[0]

    dataset_map = _dataset_map(datasets)
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for d in datasets:
        sorter.add(d.name, *d.dependencies)

    sorter.prepare()
    layers: list[list[Dataset]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        layers.append([dataset_map[name] for name in ready])
        for name in ready:
            sorter.done(name)
    return layers


def build_order(datasets: Iterable[Dataset]) -> list[Dataset]:
    """Flattened execution order (every dependency precedes its dependents)."""
    return [d for layer in resolve(datasets) for d in layer]


def dependency_closure(datasets: Iterable[Dataset], targets: Iterable[str]) -> list[Dataset]:
    """Targets plus everything they transitively read from."""
    dataset_map = _dataset_map(datasets)
    pending = []
    for target in targets:
        name = target.lower()
        if name not in dataset_map:
            raise ConfigurationError(f"Unknown target dataset: {target!r}")
        pending.append(name)

    selected: set[str] = set()
    while pending:
        name = pending.pop()
        if name in selected:
            continue
        selected.add(name)
        for dep in dataset_map[name].dependencies:
            if dep not in dataset_map:
                raise UnknownDependencyError(name, dep)
            pending.append(dep)
    return [dataset_map[n] for n in sorted(selected)]


def downstream_of(datasets: Iterable[Dataset], name: str) -> list[str]:
    """Names of every dataset that transitively reads from ``name``."""
    dependents: dict[str, set[str]] = {}
    for d in datasets:
        for dep in d.dependencies:
            dependents.setdefault(dep, set()).add(d.name)

    found: set[str] = set()
    pending = [name.lower()]
    while pending:
        for child in dependents.get(pending.pop(), ()):
            if child not in found:
                found.add(child)
                pending.append(child)
    return sorted(found)
