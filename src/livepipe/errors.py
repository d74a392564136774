"""Error taxonomy for the pipeline engine.

Configuration errors are raised while loading or resolving definitions and are
never retried. Materialization failures are raised per dataset and turned into
a ``failed`` status by the orchestrator.
"""

from __future__ import annotations

from typing import Any


class LivepipeError(Exception):
    """Base class for all livepipe errors."""


class ConfigurationError(LivepipeError, ValueError):
    """Invalid pipeline definition. Fatal at load time."""


class DefinitionError(ConfigurationError):
    """A dataset definition could not be parsed or is inconsistent."""

    def __init__(self, message: str, origin: str | None = None) -> None:
        self.origin = origin
        if origin:
            message = f"{origin}: {message}"
        super().__init__(message)


class MalformedConstraintError(DefinitionError):
    """A constraint is missing a name or predicate, or has an unknown policy."""


class UnknownDependencyError(ConfigurationError):
    """A dataset references a name that is not registered."""

    def __init__(self, dataset: str, reference: str) -> None:
        self.dataset = dataset
        self.reference = reference
        super().__init__(f"Dataset {dataset!r} references unknown dataset {reference!r}")


class CycleDetectedError(ConfigurationError):
    """The dependency graph contains a cycle.

    ``members`` holds every dataset of the offending strongly connected
    component; ``cycle`` is one concrete chain that closes on its first element.
    """

    def __init__(self, cycle: list[str], members: list[str] | None = None) -> None:
        self.cycle = cycle
        self.members = members or sorted(set(cycle))
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))


class MaterializationFailure(LivepipeError):
    """A single dataset could not be materialized. Nothing was committed."""

    def __init__(self, dataset: str, reason: str) -> None:
        self.dataset = dataset
        self.reason = reason
        super().__init__(f"{dataset}: {reason}")


class SourceUnavailable(MaterializationFailure):
    """Listing or reading the raw input of a dataset failed."""


class ConstraintFailure(MaterializationFailure):
    """A fail-policy constraint had at least one violating row."""

    def __init__(self, dataset: str, report: Any) -> None:
        self.report = report
        failed = [
            f"{o.name} ({o.violations} rows)"
            for o in report.outcomes
            if o.policy == "fail" and o.violations
        ]
        super().__init__(dataset, "constraint violated: " + ", ".join(failed))
