"""Exception taxonomy for the task engine.

Planning errors are fatal to the attempted mutation and leave the graph
unchanged.  Contract errors indicate a caller bug.  Task outcomes such as
``issues_found`` are *not* exceptions; only an exhausted retry budget
surfaces as :class:`EscalationRequired`.
"""

from __future__ import annotations

from typing import Iterable, Optional


class EngineError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Planning errors
# ---------------------------------------------------------------------------

class PlanningError(EngineError):
    """The requested plan or plan mutation is not valid."""


class UnknownDependencyError(PlanningError):
    def __init__(self, task_id: str, missing: Iterable[str]) -> None:
        self.task_id = task_id
        self.missing = sorted(missing)
        super().__init__(f"Task {task_id} depends on unknown task(s): {', '.join(self.missing)}")


class CyclicDependencyError(PlanningError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class DuplicateTaskError(PlanningError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} already exists")


class SchedulerStallError(PlanningError):
    """Nothing is ready but unresolved tasks remain and no escalation explains it."""

    def __init__(self, unresolved: Iterable[str]) -> None:
        self.unresolved = sorted(unresolved)
        super().__init__(
            "Scheduler stalled: no ready tasks while unresolved tasks remain "
            f"({', '.join(self.unresolved)}); check for cancelled or unsatisfiable dependencies"
        )


class PlanFileError(PlanningError):
    """A plan file could not be read or failed validation."""


# ---------------------------------------------------------------------------
# Contract violations
# ---------------------------------------------------------------------------

class UnknownTaskError(EngineError, KeyError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"Unknown task: {self.task_id}"


class InvalidTransitionError(EngineError):
    def __init__(self, task_id: str, current: str, target: str, valid: Iterable[str]) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        self.valid = sorted(valid)
        super().__init__(
            f"Cannot transition {task_id} from {current} to {target}. Valid targets: {self.valid}"
        )


class GraphFrozenError(EngineError):
    """The graph was frozen by an abort and accepts no further mutation."""


class StepBarrierError(EngineError):
    """A new step was requested while the previous one is still in flight."""


class InvariantViolationError(EngineError):
    """A loaded or mutated graph violates one of the structural invariants."""


class ConfigError(EngineError):
    """An engine configuration value is invalid."""


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class EscalationRequired(EngineError):
    """The retry budget for a root task is exhausted; human intervention needed."""

    def __init__(
        self,
        root_id: str,
        task_id: str,
        attempts: int,
        budget: int,
        summary: Optional[str] = None,
    ) -> None:
        self.root_id = root_id
        self.task_id = task_id
        self.attempts = attempts
        self.budget = budget
        self.summary = summary
        super().__init__(
            f"Task {task_id} (root {root_id}) failed after {attempts} remediation chain(s); "
            f"retry budget {budget} exhausted"
        )
