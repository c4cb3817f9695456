"""Provide the public `pdca_engine` package exports."""

from __future__ import annotations

from .errors import (
    CyclicDependencyError,
    EngineError,
    EscalationRequired,
    InvalidTransitionError,
    PlanningError,
    SchedulerStallError,
    UnknownDependencyError,
)
from .orchestrator import Orchestrator, RunReport, RunStatus
from .task_graph.graph import TaskGraph
from .task_graph.model import ExecutionResult, Outcome, TaskSpec, TaskStatus

__all__ = [
    "CyclicDependencyError",
    "EngineError",
    "EscalationRequired",
    "ExecutionResult",
    "InvalidTransitionError",
    "Orchestrator",
    "Outcome",
    "PlanningError",
    "RunReport",
    "RunStatus",
    "SchedulerStallError",
    "TaskGraph",
    "TaskSpec",
    "TaskStatus",
    "UnknownDependencyError",
]
