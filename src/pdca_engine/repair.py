"""Corrective work synthesis: splice remediation chains into the graph.

When a task does not succeed, the repair engine builds a short linear chain
of corrective tasks after it and moves the failed task's dependents onto the
chain's last task:

* ``issues_found`` on a verification task: ``fix`` -> ``retest``;
* anything else: ``fix`` -> ``refactor`` (or a lone ``fix`` when
  ``refactor_after_fix`` is off).

Each planned task has a retry budget counted in chains.  Once a new chain
would exceed it the engine raises :class:`EscalationRequired` for that task
and leaves the rest of the graph schedulable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from .constants import DEFAULT_RETRY_BUDGET
from .errors import EscalationRequired
from .task_graph.graph import TaskGraph
from .task_graph.model import (
    CorrectiveAction,
    CorrectiveKind,
    CorrectiveRole,
    ExecutionResult,
    Task,
    TaskStatus,
)


@dataclass
class RepairReport:
    """Outcome of one :meth:`RepairEngine.repair` call."""

    graph: TaskGraph
    actions: list[CorrectiveAction] = field(default_factory=list)
    escalations: list[EscalationRequired] = field(default_factory=list)

    @property
    def created_task_ids(self) -> list[str]:
        return [tid for action in self.actions for tid in action.created_task_ids]

    @property
    def changed(self) -> bool:
        return bool(self.actions or self.escalations)


class RepairEngine:
    """Build remediation chains for failed tasks."""

    def __init__(self, retry_budget: int = DEFAULT_RETRY_BUDGET, refactor_after_fix: bool = True) -> None:
        self.retry_budget = retry_budget
        self.refactor_after_fix = refactor_after_fix

    def repair(self, graph: TaskGraph, failed_outcomes: Iterable[ExecutionResult]) -> RepairReport:
        """Repair every non-successful outcome.

        Escalations are collected rather than raised so one exhausted branch
        does not stop repairs of the others.  Successful outcomes and tasks that
        were already repaired are ignored, which makes the call idempotent.
        """
        report = RepairReport(graph=graph)
        for result in failed_outcomes:
            if result.succeeded:
                continue
            try:
                action = self.repair_task(graph, result)
            except EscalationRequired as exc:
                logger.warning("Escalation required: {}", exc)
                report.escalations.append(exc)
                continue
            if action is not None:
                report.actions.append(action)
        return report

    def repair_task(self, graph: TaskGraph, result: ExecutionResult) -> Optional[CorrectiveAction]:
        """Splice one remediation chain after the failed task.

        Returns:
            The corrective action, or None when there is nothing to repair.

        Raises:
            EscalationRequired: If the retry budget of the task's root is exhausted.
        """
        with graph.transaction():
            failed = graph.get(result.task_id)
            if not failed.status.is_failure:
                return None
            root_id = failed.origin_id
            if root_id in graph.escalations:
                return None

            attempts = graph.attempts_for(root_id)
            exhausted = attempts + 1 > self.retry_budget
            if exhausted:
                graph.record_escalation(root_id, failed.id)
            else:
                attempt = attempts + 1
                kind = self._kind_for(failed)
                chain = self._build_chain(graph, graph.get(root_id), failed, kind, attempt)
                tail = graph.chain_successors(failed.id)

                for task in chain:
                    graph.add_record(task)
                terminal_id = chain[-1].id

                # Unstarted remainder of a failed chain is replaced by the new chain.
                for stale_id in reversed(tail):
                    if graph.status(stale_id) == TaskStatus.PENDING:
                        graph.rewire_dependents(stale_id, terminal_id)
                rewired = graph.rewire_dependents(failed.id, terminal_id)

        if exhausted:
            raise EscalationRequired(
                root_id=root_id,
                task_id=failed.id,
                attempts=attempts,
                budget=self.retry_budget,
                summary=failed.summary,
            )

        action = CorrectiveAction(
            failed_task_id=failed.id,
            root_id=root_id,
            kind=kind,
            created_task_ids=tuple(t.id for t in chain),
            attempt=attempt,
        )
        logger.info(
            "Repaired {} ({}) with {} chain {} (attempt {}/{}); rewired {}",
            failed.id,
            failed.status.value,
            kind.value,
            " -> ".join(action.created_task_ids),
            attempt,
            self.retry_budget,
            ", ".join(rewired) or "no dependents",
        )
        return action

    def _kind_for(self, failed: Task) -> CorrectiveKind:
        if failed.status == TaskStatus.ISSUES_FOUND and failed.verification:
            return CorrectiveKind.RETEST_AFTER_FIX
        if self.refactor_after_fix:
            return CorrectiveKind.FIX_THEN_REFACTOR
        return CorrectiveKind.FIX

    @staticmethod
    def _build_chain(
        graph: TaskGraph, root: Task, failed: Task, kind: CorrectiveKind, attempt: int
    ) -> list[Task]:
        metadata = {
            "failed_task_id": failed.id,
            "failure_outcome": failed.status.value,
            "failure_summary": failed.summary,
            "corrective_kind": kind.value,
        }
        fix = Task(
            id=_free_id(graph, f"{root.id}.fix{attempt}"),
            role=failed.role,
            goal=f"Fix the problems reported by {failed.id}: {root.goal}",
            dependency_ids=[failed.id],
            root_id=root.id,
            remediates=failed.id,
            attempt=attempt,
            corrective_role=CorrectiveRole.FIX,
            metadata=dict(metadata),
        )
        chain = [fix]
        if kind == CorrectiveKind.FIX_THEN_REFACTOR:
            chain.append(
                Task(
                    id=_free_id(graph, f"{root.id}.refactor{attempt}"),
                    role=failed.role,
                    goal=f"Refactor after fixing {failed.id}: {root.goal}",
                    dependency_ids=[fix.id],
                    root_id=root.id,
                    attempt=attempt,
                    corrective_role=CorrectiveRole.REFACTOR,
                    metadata=dict(metadata),
                )
            )
        elif kind == CorrectiveKind.RETEST_AFTER_FIX:
            chain.append(
                Task(
                    id=_free_id(graph, f"{root.id}.retest{attempt}"),
                    role=failed.role,
                    goal=f"Re-run verification of {failed.id}: {root.goal}",
                    verification=True,
                    dependency_ids=[fix.id],
                    root_id=root.id,
                    attempt=attempt,
                    corrective_role=CorrectiveRole.RETEST,
                    metadata=dict(metadata),
                )
            )
        return chain


def _free_id(graph: TaskGraph, base: str) -> str:
    """Return *base*, or ``base-2``, ``base-3``... when a planned task already uses it."""
    candidate = base
    n = 2
    while candidate in graph:
        candidate = f"{base}-{n}"
        n += 1
    return candidate
