"""Data classes for the pipeline engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union


class DatasetKind(str, Enum):
    INCREMENTAL = "incremental"
    RECOMPUTED = "recomputed"


class Policy(str, Enum):
    WARN = "warn"  # log, keep row
    DROP = "drop"  # discard row, continue
    FAIL = "fail"  # abort the dataset


class DatasetStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


SOURCE_FORMATS = ("csv", "json", "parquet")
READ_MODES = ("PERMISSIVE", "DROPMALFORMED", "FAILFAST")


@dataclass(frozen=True)
class Constraint:
    """A named row predicate with a violation policy."""

    name: str
    predicate: str  # SQL boolean expression over the output columns
    policy: Policy = Policy.WARN


@dataclass(frozen=True)
class SourceDescriptor:
    """Raw external input of a leaf dataset."""

    path: str
    format: str = "csv"
    read_mode: str = "PERMISSIVE"
    options: tuple[tuple[str, str], ...] = ()

    def option(self, key: str, default: str | None = None) -> str | None:
        for k, v in self.options:
            if k == key:
                return v
        return default


@dataclass(frozen=True)
class Dataset:
    """A registered dataset definition. Immutable for the duration of a run."""

    name: str
    kind: DatasetKind
    query: str  # normalized: dataset refs as LIVE.<name>, raw input as _source
    dependencies: tuple[str, ...] = ()
    constraints: tuple[Constraint, ...] = ()
    source: SourceDescriptor | None = None
    comment: str = ""
    origin: str = ""  # file the definition was loaded from

    @property
    def is_incremental(self) -> bool:
        return self.kind == DatasetKind.INCREMENTAL


@dataclass(frozen=True)
class SourceUnit:
    """Smallest trackable piece of raw input (one file)."""

    unit_id: str
    fingerprint: str = ""


@dataclass(frozen=True)
class IncrementalUnits:
    """Inputs for an append run: only units not yet consumed."""

    units: tuple[SourceUnit, ...]


@dataclass(frozen=True)
class FullSnapshot:
    """Inputs for a replace run: committed output version of every dependency."""

    versions: tuple[tuple[str, int], ...]
    units: tuple[SourceUnit, ...] = ()  # every unit of the source, if the dataset reads raw files


MaterializationInputs = Union[IncrementalUnits, FullSnapshot]


@dataclass
class IncrementalState:
    """Persisted consumption record of one incremental dataset."""

    dataset: str
    output_version: int = 0
    consumed: dict[str, str] = field(default_factory=dict)  # unit_id -> fingerprint
    updated_at: datetime | None = None


@dataclass
class ConstraintOutcome:
    """Violation count of one constraint in one materialization."""

    name: str
    policy: str
    predicate: str
    violations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "policy": self.policy,
            "predicate": self.predicate,
            "violations": self.violations,
        }


@dataclass
class ConstraintReport:
    input_rows: int = 0
    kept_rows: int = 0
    outcomes: list[ConstraintOutcome] = field(default_factory=list)

    @property
    def dropped_rows(self) -> int:
        return self.input_rows - self.kept_rows

    @property
    def total_violations(self) -> int:
        return sum(o.violations for o in self.outcomes)


@dataclass
class MaterializationResult:
    """What a successful materialization wrote."""

    rows_written: int = 0
    output_version: int | None = None
    units_consumed: int = 0
    report: ConstraintReport = field(default_factory=ConstraintReport)
    duration_ms: int = 0


@dataclass
class DatasetResult:
    """Terminal outcome of one dataset in a run."""

    name: str
    kind: str
    status: str
    rows_written: int = 0
    output_version: int | None = None
    violations: list[ConstraintOutcome] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "kind": self.kind,
            "rows_written": self.rows_written,
            "output_version": self.output_version,
            "violations": [v.to_dict() for v in self.violations],
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RunReport:
    """Result of one pipeline run. Enumerates every dataset's terminal status."""

    run_id: str
    targets: list[str] | None = None  # None means the full graph
    status: RunStatus = RunStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    layers: list[list[str]] = field(default_factory=list)
    per_dataset: dict[str, DatasetResult] = field(default_factory=dict)

    @property
    def overall_status(self) -> str:
        return self.status.value

    @property
    def duration_ms(self) -> int:
        if not self.started_at or not self.finished_at:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def order(self) -> list[str]:
        return [name for layer in self.layers for name in layer]

    def status_of(self, name: str) -> str:
        return self.per_dataset[name].status

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.per_dataset.values():
            counts[result.status] = counts.get(result.status, 0) + 1
        return counts

    def total_violations(self) -> int:
        return sum(v.violations for r in self.per_dataset.values() for v in r.violations)

    def violation_counts(self) -> dict[str, int]:
        """Aggregate violations per policy across the run."""
        counts = {p.value: 0 for p in Policy}
        for result in self.per_dataset.values():
            for v in result.violations:
                counts[v.policy] = counts.get(v.policy, 0) + v.violations
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "targets": self.targets or "all",
            "overall_status": self.overall_status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "layers": self.layers,
            "violations": self.violation_counts(),
            "per_dataset": {name: r.to_dict() for name, r in self.per_dataset.items()},
        }
