"""Implement the plan/do/check/act loop over a task graph.

Each cycle asks the scheduler for the next step, passes it through the
approval gate, dispatches it, and hands failing outcomes to the repair
engine.  The graph (and its version) is the only state carried between
cycles; when a snapshot store is configured it is saved after every cycle so
a crashed run can be resumed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from .approval_gates import StepApprovalGate
from .config import EngineConfig
from .constants import INTERRUPTED_SUMMARY
from .errors import EngineError, EscalationRequired, GraphFrozenError, SchedulerStallError
from .executors import TaskExecutor
from .logging_utils import pretty, summarize_action, summarize_escalation, summarize_results
from .repair import RepairEngine
from .scheduler import Scheduler
from .task_graph.graph import TaskGraph
from .task_graph.model import CorrectiveAction, ExecutionResult, Outcome
from .task_graph.store import SnapshotStore


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ESCALATED = "escalated"
    ABORTED = "aborted"
    REJECTED = "rejected"


@dataclass
class RunReport:
    """What a call to :meth:`Orchestrator.run` did."""

    status: RunStatus = RunStatus.COMPLETED
    steps: int = 0
    results: list[ExecutionResult] = field(default_factory=list)
    actions: list[CorrectiveAction] = field(default_factory=list)
    escalations: list[EscalationRequired] = field(default_factory=list)
    graph_version: int = 0
    rejection_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "steps": self.steps,
            "results": [r.to_dict() for r in self.results],
            "actions": [a.to_dict() for a in self.actions],
            "escalations": [summarize_escalation(e) for e in self.escalations],
            "graph_version": self.graph_version,
            "rejection_reason": self.rejection_reason,
        }


EscalationCallback = Callable[[EscalationRequired], None]


class Orchestrator:
    """Drive a task graph to resolution."""

    def __init__(
        self,
        graph: TaskGraph,
        executor: TaskExecutor,
        config: Optional[EngineConfig] = None,
        gate: Optional[StepApprovalGate] = None,
        store: Optional[SnapshotStore] = None,
        on_escalation: Optional[EscalationCallback] = None,
    ):
        """Initialize the orchestrator.

        Args:
            graph: Graph to drive; it is mutated in place.
            executor: Executor collaborator that runs each task.
            config: Engine settings (defaults when omitted).
            gate: Approval gate. When omitted, one is created only if
                ``config.approval.enabled`` is set.
            store: Snapshot store saved after every cycle.
            on_escalation: Called once per escalation as it happens.
        """
        self.graph = graph
        self.executor = executor
        self.config = config or EngineConfig()
        self.scheduler = Scheduler(max_workers=self.config.max_workers, task_timeout=self.config.task_timeout)
        self.repair_engine = RepairEngine(
            retry_budget=self.config.retry_budget,
            refactor_after_fix=self.config.refactor_after_fix,
        )
        if gate is None and self.config.approval.enabled:
            gate = StepApprovalGate(self.config.approval)
        self.gate = gate
        self.store = store
        self.on_escalation = on_escalation
        self._aborted = threading.Event()

    @classmethod
    def resume(
        cls,
        store: SnapshotStore,
        executor: TaskExecutor,
        config: Optional[EngineConfig] = None,
        **kwargs: Any,
    ) -> "Orchestrator":
        """Rebuild an orchestrator from the saved snapshot.

        Tasks that were running when the previous process died are resolved as
        ``execution_failed`` (and repaired by the next run); queued tasks go
        back to ``pending``.
        """
        graph = store.load()
        if graph is None:
            raise EngineError(f"No snapshot to resume at {store.path}")
        if graph.frozen:
            logger.warning("Snapshot at {} belongs to an aborted run; nothing will be scheduled", store.path)
        else:
            recovered = graph.recover_interrupted(INTERRUPTED_SUMMARY)
            if recovered:
                logger.info("Recovered {} interrupted task(s): {}", len(recovered), ", ".join(recovered))
        return cls(graph, executor, config=config, store=store, **kwargs)

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def abort(self) -> list[str]:
        """Cancel queued and running tasks and freeze the graph.

        Safe to call from another thread while :meth:`run` is dispatching.
        Returns the ids of the cancelled tasks.
        """
        self._aborted.set()
        self.scheduler.cancel()
        cancelled = self.graph.cancel_active()
        logger.warning("Run aborted; cancelled {} task(s)", len(cancelled))
        return cancelled

    def run(self) -> RunReport:
        """Loop until the graph is resolved, escalated, rejected or aborted.

        Raises:
            SchedulerStallError: If nothing is ready while unresolved tasks
                remain that no escalation accounts for.
        """
        report = RunReport()
        logger.info("Starting run: {} task(s), graph v{}", len(self.graph), self.graph.version)

        try:
            if not self._stopped():
                self._repair(self._outstanding_failures(), report)

            while not self._stopped():
                if not self._cycle(report):
                    break
        except GraphFrozenError:
            # abort() raced with a repair
            if not self._stopped():
                raise

        report.status = self._final_status(report)
        report.graph_version = self.graph.version
        self._save(report)
        logger.info(
            "Run finished: {} after {} step(s) ({} corrective action(s), {} escalation(s))",
            report.status.value,
            report.steps,
            len(report.actions),
            len(report.escalations),
        )
        return report

    def _cycle(self, report: RunReport) -> bool:
        """Run one plan/do/check/act cycle; False when the run is over."""
        step = self.scheduler.next_step(self.graph)
        if step.is_empty:
            stalled = self.graph.stalled_tasks()
            if stalled and not self._stopped():
                raise SchedulerStallError(stalled)
            return False

        if self.gate is not None:
            response = self.gate.request_approval(self.graph, step)
            if not response.approved:
                report.status = RunStatus.REJECTED
                report.rejection_reason = response.feedback
                logger.warning("Step {} rejected: {}", step.number, response.feedback or "no reason given")
                return False

        results = self.scheduler.dispatch(self.graph, step, self.executor)
        report.steps += 1
        report.results.extend(results)
        logger.debug("Step {} results: {}", step.number, pretty(summarize_results(results)))
        if self._stopped():
            return False

        self._repair([r for r in results if not r.succeeded], report)
        report.graph_version = self.graph.version
        self._save(report, status="running")
        return True

    def _repair(self, failures: list[ExecutionResult], report: RunReport) -> None:
        if not failures:
            return
        repaired = self.repair_engine.repair(self.graph, failures)
        report.actions.extend(repaired.actions)
        for action in repaired.actions:
            logger.info("Corrective chain: {}", summarize_action(action))
        for escalation in repaired.escalations:
            report.escalations.append(escalation)
            if self.on_escalation is not None:
                self.on_escalation(escalation)

    def _outstanding_failures(self) -> list[ExecutionResult]:
        """Failed tasks left unrepaired, e.g. by a crash or a resume."""
        failures = []
        for task_id in self.graph.unrepaired_failures():
            task = self.graph.get(task_id)
            failures.append(
                ExecutionResult(task_id=task.id, outcome=Outcome(task.status.value), summary=task.summary or "")
            )
        return failures

    def _stopped(self) -> bool:
        return self._aborted.is_set() or self.graph.frozen

    def _final_status(self, report: RunReport) -> RunStatus:
        if self._stopped():
            return RunStatus.ABORTED
        if report.status == RunStatus.REJECTED:
            return RunStatus.REJECTED
        if self.graph.escalations:
            return RunStatus.ESCALATED
        return RunStatus.COMPLETED

    def _save(self, report: RunReport, status: Optional[str] = None) -> None:
        if self.store is None:
            return
        self.store.save(self.graph, status=status or report.status.value, steps=report.steps)
