"""Declarative dataset pipeline engine.

Loads dataset definitions, resolves the dependency graph into layers, and
materializes each dataset in order: incremental datasets append only what
their source has not delivered before, recomputed datasets replace their
output from the current upstream state. Row constraints run before commit.

This package re-exports the public symbols:
    from livepipe.engine.pipeline import load_definitions, resolve, run_pipeline, ...
"""

from __future__ import annotations

# Data models
from .models import (
    Constraint,
    ConstraintOutcome,
    ConstraintReport,
    Dataset,
    DatasetKind,
    DatasetResult,
    DatasetStatus,
    FullSnapshot,
    IncrementalState,
    IncrementalUnits,
    MaterializationResult,
    Policy,
    RunReport,
    RunStatus,
    SourceDescriptor,
    SourceUnit,
)

# Registry and graph
from .registry import DatasetRegistry, dataset_from_record, load_definitions
from .resolver import build_order, dependency_closure, downstream_of, find_cycles, resolve

# Collaborators
from .compute import Compute, DuckDBCompute
from .sources import FileSourceLister, SourceLister

# State, quality, execution
from .quality import evaluate_constraints
from .execution import materialize, plan_inputs
from .state import commit, get_state, list_states, pending, reset

# Orchestration
from .orchestration import run_pipeline

__all__ = [
    # Models
    "Constraint",
    "ConstraintOutcome",
    "ConstraintReport",
    "Dataset",
    "DatasetKind",
    "DatasetResult",
    "DatasetStatus",
    "FullSnapshot",
    "IncrementalState",
    "IncrementalUnits",
    "MaterializationResult",
    "Policy",
    "RunReport",
    "RunStatus",
    "SourceDescriptor",
    "SourceUnit",
    # Registry and graph
    "DatasetRegistry",
    "build_order",
    "dataset_from_record",
    "dependency_closure",
    "downstream_of",
    "find_cycles",
    "load_definitions",
    "resolve",
    # Collaborators
    "Compute",
    "DuckDBCompute",
    "FileSourceLister",
    "SourceLister",
    # State, quality, execution
    "commit",
    "evaluate_constraints",
    "get_state",
    "list_states",
    "materialize",
    "pending",
    "plan_inputs",
    "reset",
    # Orchestration
    "run_pipeline",
]
