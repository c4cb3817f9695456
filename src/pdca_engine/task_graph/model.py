"""Task model for the dependency graph.

Tasks are created by the planning collaborator (from a :class:`TaskSpec`) or
by the repair engine (corrective chains).  Their content never changes after
creation; the graph owns every status change and edge update.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task in the graph."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ISSUES_FOUND = "issues_found"
    EXECUTION_FAILED = "execution_failed"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in (TaskStatus.ISSUES_FOUND, TaskStatus.EXECUTION_FAILED)


_TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.CANCELLED, TaskStatus.SUPERSEDED})


class Outcome(str, Enum):
    """Outcome reported by the executor collaborator."""

    SUCCEEDED = "succeeded"
    ISSUES_FOUND = "issues_found"
    EXECUTION_FAILED = "execution_failed"

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.value)


class CorrectiveRole(str, Enum):
    """Position of a task inside a remediation chain."""

    FIX = "fix"
    REFACTOR = "refactor"
    RETEST = "retest"


class CorrectiveKind(str, Enum):
    """Shape of a remediation chain."""

    FIX = "fix"
    FIX_THEN_REFACTOR = "fix_then_refactor"
    RETEST_AFTER_FIX = "retest_after_fix"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskSpec:
    """Task specification handed over by the planning collaborator.

    ``role`` and ``goal`` are opaque to the engine.  ``verification`` marks
    the test half of a test-then-implement pairing.
    """

    id: str
    role: str = ""
    goal: str = ""
    verification: bool = False
    dependency_ids: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class ExecutionResult:
    """Result reported by the executor for one dispatched task."""

    task_id: str
    outcome: Outcome
    summary: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "outcome": self.outcome.value,
            "summary": self.summary,
            "duration_seconds": round(self.duration_seconds, 3),
        }


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A node of the task graph.

    The dependency list only changes through rewiring; ``dependent_ids`` is
    the inverse edge set and is maintained by the graph.
    """

    id: str
    role: str = ""
    goal: str = ""
    verification: bool = False
    status: TaskStatus = TaskStatus.PENDING
    dependency_ids: list[str] = field(default_factory=list)
    dependent_ids: list[str] = field(default_factory=list)
    superseded_by: Optional[str] = None

    # Corrective provenance (None for planned tasks)
    root_id: Optional[str] = None
    remediates: Optional[str] = None
    attempt: int = 0
    corrective_role: Optional[CorrectiveRole] = None

    summary: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_spec(cls, spec: TaskSpec, dependency_ids: list[str]) -> "Task":
        return cls(
            id=spec.id,
            role=spec.role,
            goal=spec.goal,
            verification=spec.verification,
            dependency_ids=list(dependency_ids),
            metadata=dict(spec.metadata),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_corrective(self) -> bool:
        return self.corrective_role is not None

    @property
    def origin_id(self) -> str:
        """The planned task this task ultimately remediates (itself if planned)."""
        return self.root_id or self.id

    def touch(self) -> None:
        self.updated_at = _now_iso()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        return {
            "id": self.id,
            "role": self.role,
            "goal": self.goal,
            "verification": self.verification,
            "status": self.status.value,
            "dependency_ids": list(self.dependency_ids),
            "dependent_ids": list(self.dependent_ids),
            "superseded_by": self.superseded_by,
            "root_id": self.root_id,
            "remediates": self.remediates,
            "attempt": self.attempt,
            "corrective_role": self.corrective_role.value if self.corrective_role else None,
            "summary": self.summary,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict.

        Unlike the dependency list, ``dependent_ids`` is not trusted; the graph
        rebuilds inverse edges when it loads a snapshot.
        """
        d = dict(data)
        raw_role = d.get("corrective_role")
        return cls(
            id=str(d["id"]),
            role=str(d.get("role") or ""),
            goal=str(d.get("goal") or ""),
            verification=bool(d.get("verification", False)),
            status=TaskStatus(str(d.get("status") or TaskStatus.PENDING.value)),
            dependency_ids=[str(x) for x in d.get("dependency_ids") or []],
            superseded_by=d.get("superseded_by"),
            root_id=d.get("root_id"),
            remediates=d.get("remediates"),
            attempt=int(d.get("attempt", 0) or 0),
            corrective_role=CorrectiveRole(raw_role) if raw_role else None,
            summary=d.get("summary"),
            metadata=dict(d.get("metadata") or {}),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
        )


@dataclass(frozen=True)
class Step:
    """Ordered, immutable frontier of task ids dispatched together."""

    number: int
    task_ids: tuple[str, ...] = ()
    stalled: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.task_ids

    def __len__(self) -> int:
        return len(self.task_ids)

    def __iter__(self):
        return iter(self.task_ids)


@dataclass(frozen=True)
class CorrectiveAction:
    """A remediation chain spliced into the graph for one failed task."""

    failed_task_id: str
    root_id: str
    kind: CorrectiveKind
    created_task_ids: tuple[str, ...]
    attempt: int

    @property
    def terminal_id(self) -> str:
        return self.created_task_ids[-1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "failed_task_id": self.failed_task_id,
            "root_id": self.root_id,
            "kind": self.kind.value,
            "created_task_ids": list(self.created_task_ids),
            "attempt": self.attempt,
        }
