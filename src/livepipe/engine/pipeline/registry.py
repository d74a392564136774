"""Dataset registry and definition loading.

Definitions come from ``.sql`` files (``CREATE OR REFRESH ...`` statements) and
``.yml`` files (a ``datasets:`` list). Both are reduced to the same record
shape and validated by :func:`dataset_from_record`, which also derives each
dataset's dependencies from the ``LIVE.<name>`` references in its query.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml

from livepipe.config import expand_env_vars
from livepipe.engine.sql_analysis import (
    SOURCE_RELATION,
    extract_references,
    extract_source,
    normalize_query,
    parse_sql_definitions,
    reads_source,
    validate_predicate,
)
from livepipe.engine.utils import validate_identifier
from livepipe.errors import ConfigurationError, DefinitionError, MalformedConstraintError

from .models import READ_MODES, SOURCE_FORMATS, Constraint, Dataset, DatasetKind, Policy, SourceDescriptor

logger = logging.getLogger("livepipe.registry")

_KIND_ALIASES = {
    "incremental": DatasetKind.INCREMENTAL,
    "streaming": DatasetKind.INCREMENTAL,
    "recomputed": DatasetKind.RECOMPUTED,
    "live": DatasetKind.RECOMPUTED,
    "materialized_view": DatasetKind.RECOMPUTED,
}


class DatasetRegistry:
    """Read-only lookup of dataset definitions by name."""

    def __init__(self, datasets: Iterable[Dataset] = ()) -> None:
        self._datasets: dict[str, Dataset] = {}
        for dataset in datasets:
            self.register(dataset)

    def register(self, dataset: Dataset) -> None:
        key = dataset.name.lower()
        if key in self._datasets:
            other = self._datasets[key].origin or "<unknown>"
            raise DefinitionError(
                f"Dataset {dataset.name!r} is defined more than once (also in {other})",
                dataset.origin or None,
            )
        if dataset.name != key:
            dataset = replace(dataset, name=key)
        self._datasets[key] = dataset

    def get(self, name: str) -> Dataset:
        try:
            return self._datasets[name.lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown dataset: {name!r}") from None

    def names(self) -> list[str]:
        return sorted(self._datasets)

    def datasets(self) -> list[Dataset]:
        return [self._datasets[n] for n in self.names()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._datasets

    def __iter__(self) -> Iterator[Dataset]:
        return iter(self.datasets())

    def __len__(self) -> int:
        return len(self._datasets)


def _parse_policy(raw: Any, constraint_name: str, origin: str) -> Policy:
    value = str(raw or "warn").strip().lower().replace(" ", "_")
    if value in ("drop_row", "drop"):
        return Policy.DROP
    if value in ("fail_update", "fail"):
        return Policy.FAIL
    if value == "warn":
        return Policy.WARN
    raise MalformedConstraintError(f"Unknown policy {raw!r} for constraint {constraint_name!r}", origin)


def _parse_constraints(raw_constraints: list[Any], dataset: str, origin: str) -> tuple[Constraint, ...]:
    constraints: list[Constraint] = []
    seen: set[str] = set()
    for raw in raw_constraints or []:
        if not isinstance(raw, dict):
            raise MalformedConstraintError(f"Constraint on {dataset!r} must be a mapping, got {raw!r}", origin)
        name = str(raw.get("name") or "").strip()
        predicate = str(raw.get("predicate") or raw.get("expect") or "").strip()
        if not name:
            raise MalformedConstraintError(f"Constraint on {dataset!r} is missing a name", origin)
        try:
            validate_identifier(name, "constraint name")
        except ValueError as e:
            raise MalformedConstraintError(str(e), origin) from None
        if name in seen:
            raise MalformedConstraintError(f"Duplicate constraint {name!r} on {dataset!r}", origin)
        try:
            validate_predicate(predicate)
        except ValueError as e:
            raise MalformedConstraintError(
                f"Invalid predicate for constraint {name!r} on {dataset!r}: {e}", origin
            ) from None
        seen.add(name)
        constraints.append(Constraint(name=name, predicate=predicate, policy=_parse_policy(raw.get("policy"), name, origin)))
    return tuple(constraints)


def _parse_source(raw: dict[str, Any], base_dir: Path | None, origin: str) -> SourceDescriptor:
    if not isinstance(raw, dict) or not raw.get("path"):
        raise DefinitionError("source needs a path", origin)
    path = str(raw["path"])
    if base_dir is not None and not Path(path).is_absolute():
        path = str(base_dir / path)
    fmt = str(raw.get("format", "csv")).lower()
    if fmt not in SOURCE_FORMATS:
        raise DefinitionError(f"Unsupported source format {fmt!r} (expected one of {', '.join(SOURCE_FORMATS)})", origin)
    read_mode = str(raw.get("read_mode", "PERMISSIVE")).upper()
    if read_mode not in READ_MODES:
        raise DefinitionError(f"Unsupported read_mode {read_mode!r} (expected one of {', '.join(READ_MODES)})", origin)
    raw_options = raw.get("options") or {}
    if not isinstance(raw_options, dict):
        raise DefinitionError("source options must be a mapping", origin)
    options = tuple(sorted((str(k).lower(), str(v)) for k, v in raw_options.items()))
    return SourceDescriptor(path=path, format=fmt, read_mode=read_mode, options=options)


def dataset_from_record(
    record: dict[str, Any],
    origin: str = "",
    base_dir: Path | None = None,
) -> Dataset:
    """Validate a definition record and build a :class:`Dataset`.

    Record fields: ``name``, ``kind``, ``query``, ``constraints``, ``source``,
    ``comment``. Dependencies are derived from the query, never declared.
    """
    if not isinstance(record, dict):
        raise DefinitionError(f"Dataset definition must be a mapping, got {type(record).__name__}", origin)
    name = str(record.get("name") or "").strip().lower()
    if not name:
        raise DefinitionError("Dataset definition is missing a name", origin)
    try:
        validate_identifier(name, "dataset name")
    except ValueError as e:
        raise DefinitionError(str(e), origin) from None
    if name.startswith("_"):
        raise DefinitionError(f"Dataset names may not start with '_': {name!r}", origin)

    raw_kind = str(record.get("kind") or "recomputed").strip().lower()
    if raw_kind not in _KIND_ALIASES:
        raise DefinitionError(f"Unknown kind {raw_kind!r} for dataset {name!r}", origin)
    kind = _KIND_ALIASES[raw_kind]

    query = str(record.get("query") or "").strip()
    if not query:
        raise DefinitionError(f"Dataset {name!r} has an empty query", origin)

    query, inline_source = extract_source(query, origin)
    raw_source = record.get("source")
    if inline_source and raw_source:
        raise DefinitionError(f"Dataset {name!r} declares a source and also calls read_files()", origin)
    raw_source = raw_source or inline_source
    source = _parse_source(raw_source, base_dir, origin) if raw_source else None

    query = normalize_query(query)
    if source and not reads_source(query):
        raise DefinitionError(f"Dataset {name!r} declares a source but its query never reads {SOURCE_RELATION}", origin)
    if reads_source(query) and not source:
        raise DefinitionError(f"Dataset {name!r} reads {SOURCE_RELATION} but declares no source", origin)

    dependencies = tuple(extract_references(query))
    if kind == DatasetKind.INCREMENTAL:
        if source is None:
            raise DefinitionError(f"Incremental dataset {name!r} must read a raw source", origin)
        if dependencies:
            raise DefinitionError(
                f"Incremental dataset {name!r} may not read other datasets "
                f"({', '.join(dependencies)}); make it recomputed instead",
                origin,
            )

    return Dataset(
        name=name,
        kind=kind,
        query=query,
        dependencies=dependencies,
        constraints=_parse_constraints(record.get("constraints") or [], name, origin),
        source=source,
        comment=str(record.get("comment") or ""),
        origin=origin,
    )


def _records_from_yaml(path: Path) -> list[dict[str, Any]]:
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", str(path)) from e
    raw = expand_env_vars(raw)
    records = raw.get("datasets", []) if isinstance(raw, dict) else raw
    if not isinstance(records, list):
        raise DefinitionError("Expected a 'datasets' list", str(path))
    for i, record in enumerate(records):
        if not isinstance(record, dict):
            raise DefinitionError(f"datasets[{i}] must be a mapping, got {type(record).__name__}", str(path))
    return records


def load_definitions(definitions_dir: Path, base_dir: Path | None = None) -> DatasetRegistry:
    """Load every ``.sql`` and ``.yml``/``.yaml`` definition under a directory.

    Relative source paths resolve against ``base_dir`` (the project directory).
    """
    registry = DatasetRegistry()
    if not definitions_dir.exists():
        return registry

    for path in sorted(definitions_dir.rglob("*")):
        suffix = path.suffix.lower()
        if suffix == ".sql":
            records = parse_sql_definitions(path.read_text(), str(path))
        elif suffix in (".yml", ".yaml"):
            records = _records_from_yaml(path)
        else:
            continue
        for record in records:
            registry.register(dataset_from_record(record, origin=str(path), base_dir=base_dir))
        logger.debug("Loaded %d definition(s) from %s", len(records), path)

    return registry
