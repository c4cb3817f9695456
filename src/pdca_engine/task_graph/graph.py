"""Dependency graph of tasks: invariants, readiness and rewiring.

:class:`TaskGraph` is the only shared mutable resource of a run.  Every
mutation goes through one re-entrant lock (single writer), and every read
returns copies so callers can never bypass the invariants:

(a) the graph is acyclic;
(b) every dependency id exists;
(c) edges are symmetric (``X.dependent_ids`` contains ``Y`` iff
    ``Y.dependency_ids`` contains ``X``);
(d) a superseded task has no live dependents.

A *live* dependent is one that is neither superseded nor cancelled and is not
the ``fix`` task remediating it; that remediation edge is kept for the audit
trail and is satisfied once the failed task is superseded.
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from loguru import logger

from ..errors import (
    CyclicDependencyError,
    DuplicateTaskError,
    GraphFrozenError,
    InvalidTransitionError,
    InvariantViolationError,
    PlanningError,
    UnknownDependencyError,
    UnknownTaskError,
)
from .model import ExecutionResult, Task, TaskSpec, TaskStatus


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.READY, TaskStatus.CANCELLED, TaskStatus.SUPERSEDED},
    # ready -> pending releases a queued task after a restart
    TaskStatus.READY: {TaskStatus.RUNNING, TaskStatus.PENDING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {
        TaskStatus.SUCCEEDED,
        TaskStatus.ISSUES_FOUND,
        TaskStatus.EXECUTION_FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.ISSUES_FOUND: {TaskStatus.SUPERSEDED, TaskStatus.CANCELLED},
    TaskStatus.EXECUTION_FAILED: {TaskStatus.SUPERSEDED, TaskStatus.CANCELLED},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.SUPERSEDED: set(),
    TaskStatus.CANCELLED: set(),
}

# Superseding only happens through rewire_dependents().
_REWIRE_ONLY = {TaskStatus.SUPERSEDED}


class TaskGraph:
    """Thread-safe dependency DAG owning every task record."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.RLock()
        self._frozen = False
        self.version = 0
        self.escalations: dict[str, str] = {}  # root id -> escalated task id

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, task_id: str) -> Task:
        """Return a copy of the task record."""
        with self._lock:
            return copy.deepcopy(self._require(task_id))

    def status(self, task_id: str) -> TaskStatus:
        with self._lock:
            return self._require(task_id).status

    def tasks(self) -> list[Task]:
        """Return copies of every task in insertion order."""
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values()]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def live_dependents(self, task_id: str) -> list[str]:
        with self._lock:
            return self._live_dependents(self._require(task_id))

    def resolve_terminal(self, task_id: str) -> str:
        """Follow ``superseded_by`` pointers to the task currently standing in."""
        with self._lock:
            return self._chase(task_id).id

    @contextmanager
    def transaction(self) -> Iterator["TaskGraph"]:
        """Hold the writer lock across a compound mutation.

        If the block raises, every task record and the graph metadata are
        restored to their state on entry.

        Usage::

            with graph.transaction():
                graph.add_record(fix)
                graph.rewire_dependents(failed_id, fix.id)
        """
        with self._lock:
            backup = (copy.deepcopy(self._tasks), dict(self.escalations), self.version, self._frozen)
            try:
                yield self
            except BaseException:
                self._tasks, self.escalations, self.version, self._frozen = backup
                raise

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def add_task(self, spec: TaskSpec, dependency_ids: Optional[Iterable[str]] = None) -> Task:
        """Insert a planned task as ``pending``.

        ``dependency_ids`` defaults to ``spec.dependency_ids``.  The insertion
        is all-or-nothing: on any planning error the graph is left untouched.
        """
        deps = spec.dependency_ids if dependency_ids is None else tuple(dependency_ids)
        return self.add_record(Task.from_spec(spec, _dedupe(deps)))

    def add_record(self, task: Task) -> Task:
        """Insert a fully built task record (used for corrective tasks)."""
        with self._lock:
            self._ensure_mutable()
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            task = copy.deepcopy(task)
            task.dependency_ids = _dedupe(task.dependency_ids)
            missing = [d for d in task.dependency_ids if d not in self._tasks and d != task.id]
            if missing:
                raise UnknownDependencyError(task.id, missing)
            for dep_id in task.dependency_ids:
                if dep_id == task.id or self._reaches(dep_id, task.id):
                    raise CyclicDependencyError([task.id, dep_id, task.id])

            task.status = TaskStatus.PENDING
            task.dependent_ids = []
            task.superseded_by = None
            self._tasks[task.id] = task
            for dep_id in task.dependency_ids:
                self._tasks[dep_id].dependent_ids.append(task.id)
            self._bump()
            logger.debug("Added task {} (deps: {})", task.id, task.dependency_ids or "-")
            return copy.deepcopy(task)

    def add_tasks(self, specs: Iterable[TaskSpec]) -> list[Task]:
        """Insert a whole plan atomically.

        Specs may reference each other in any order; they are inserted in
        dependency order.  Unknown dependencies and cycles within the batch are
        reported before anything is inserted.
        """
        specs = list(specs)
        with self._lock:
            self._ensure_mutable()
            batch: dict[str, TaskSpec] = {}
            for spec in specs:
                if spec.id in self._tasks or spec.id in batch:
                    raise DuplicateTaskError(spec.id)
                batch[spec.id] = spec

            for spec in specs:
                missing = [d for d in spec.dependency_ids if d not in self._tasks and d not in batch]
                if missing:
                    raise UnknownDependencyError(spec.id, missing)

            cycle = _find_cycle({sid: [d for d in s.dependency_ids if d in batch] for sid, s in batch.items()})
            if cycle:
                raise CyclicDependencyError(cycle)

            created: list[Task] = []
            for spec_id in _topological_order({sid: list(s.dependency_ids) for sid, s in batch.items()}):
                created.append(self.add_task(batch[spec_id]))
            return created

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def ready_set(self) -> list[Task]:
        """Return pending tasks whose every dependency is satisfied."""
        with self._lock:
            if self._frozen:
                return []
            return [
                copy.deepcopy(t)
                for t in self._tasks.values()
                if t.status == TaskStatus.PENDING and all(self._satisfied(t, d) for d in t.dependency_ids)
            ]

    def unresolved(self) -> list[str]:
        """Ids of tasks not yet in a terminal status."""
        with self._lock:
            return [t.id for t in self._tasks.values() if not t.is_terminal]

    def is_resolved(self) -> bool:
        return not self.unresolved()

    def active(self) -> list[str]:
        """Ids of tasks currently queued or running."""
        with self._lock:
            return [t.id for t in self._tasks.values() if t.status in (TaskStatus.READY, TaskStatus.RUNNING)]

    def unrepaired_failures(self) -> list[str]:
        """Failed tasks that have neither been repaired nor escalated."""
        with self._lock:
            escalated = set(self.escalations.values())
            return [t.id for t in self._tasks.values() if t.status.is_failure and t.id not in escalated]

    def blocked_by_escalation(self) -> set[str]:
        """Escalated tasks plus every unresolved task downstream of them."""
        with self._lock:
            blocked: set[str] = set()
            queue: deque[str] = deque(self.escalations.values())
            while queue:
                current = queue.popleft()
                if current in blocked or current not in self._tasks:
                    continue
                task = self._tasks[current]
                if task.is_terminal and current not in self.escalations.values():
                    continue
                blocked.add(current)
                queue.extend(task.dependent_ids)
            return blocked

    def stalled_tasks(self) -> list[str]:
        """Unresolved tasks that can never become ready and are not escalated."""
        with self._lock:
            blocked = self.blocked_by_escalation()
            ready = {t.id for t in self.ready_set()}
            active = set(self.active())
            return [tid for tid in self.unresolved() if tid not in blocked | ready | active]

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def set_status(self, task_id: str, status: TaskStatus | str, summary: Optional[str] = None) -> Task:
        """Move a task to *status*, enforcing the state machine."""
        target = TaskStatus(status)
        with self._lock:
            self._ensure_mutable()
            task = self._require(task_id)
            valid = _VALID_TRANSITIONS[task.status] - _REWIRE_ONLY
            if target not in valid:
                raise InvalidTransitionError(task.id, task.status.value, target.value, [s.value for s in valid])
            self._transition(task, target)
            if summary is not None:
                task.summary = summary
            return copy.deepcopy(task)

    def start_task(self, task_id: str) -> bool:
        """Move a queued task to ``running``; False if it was cancelled meanwhile."""
        with self._lock:
            task = self._require(task_id)
            if self._frozen or task.status != TaskStatus.READY:
                return False
            self._transition(task, TaskStatus.RUNNING)
            return True

    def record_outcome(self, result: ExecutionResult) -> bool:
        """Apply an executor result to a running task.

        Returns False (and leaves the graph untouched) when the task is no
        longer running, e.g. because the run was aborted.
        """
        with self._lock:
            task = self._require(result.task_id)
            if self._frozen or task.status != TaskStatus.RUNNING:
                logger.debug("Discarding late outcome {} for {} ({})", result.outcome.value, task.id, task.status.value)
                return False
            self._transition(task, result.outcome.status)
            task.summary = result.summary
            return True

    def cancel_active(self) -> list[str]:
        """Cancel queued and running tasks, then freeze the graph."""
        with self._lock:
            cancelled: list[str] = []
            for task in self._tasks.values():
                if task.status in (TaskStatus.READY, TaskStatus.RUNNING):
                    self._transition(task, TaskStatus.CANCELLED)
                    cancelled.append(task.id)
            self._frozen = True
            self._bump()
            return cancelled

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def recover_interrupted(self, summary: str) -> list[str]:
        """Resolve tasks left in flight by a crashed run.

        Running tasks become ``execution_failed`` (and will be repaired);
        queued tasks are released back to ``pending``.
        """
        with self._lock:
            self._ensure_mutable()
            touched: list[str] = []
            for task in self._tasks.values():
                if task.status == TaskStatus.RUNNING:
                    self._transition(task, TaskStatus.EXECUTION_FAILED)
                    task.summary = summary
                    touched.append(task.id)
                elif task.status == TaskStatus.READY:
                    self._transition(task, TaskStatus.PENDING)
                    touched.append(task.id)
            return touched

    def record_escalation(self, root_id: str, task_id: str) -> None:
        with self._lock:
            self._require(task_id)
            self.escalations[root_id] = task_id
            self._bump()

    # ------------------------------------------------------------------
    # Rewiring
    # ------------------------------------------------------------------

    def rewire_dependents(self, old_id: str, new_terminal_id: str) -> list[str]:
        """Point every live dependent of *old_id* at *new_terminal_id*.

        Both ids are first chased along ``superseded_by`` to the task
        currently standing in for them, so rewiring an already replaced task
        never leaves a dangling chain.  The source task ends ``superseded``.
        Returns the ids of the rewired dependents.
        """
        with self._lock:
            self._ensure_mutable()
            source = self._chase(old_id)
            target = self._chase(new_terminal_id)
            if source.id == target.id:
                raise PlanningError(f"Cannot rewire {source.id} onto itself")
            if TaskStatus.SUPERSEDED not in _VALID_TRANSITIONS[source.status]:
                raise InvalidTransitionError(
                    source.id,
                    source.status.value,
                    TaskStatus.SUPERSEDED.value,
                    [s.value for s in _VALID_TRANSITIONS[source.status]],
                )

            dependents = self._live_dependents(source)
            for dep_id in dependents:
                if dep_id == target.id or self._reaches(target.id, dep_id):
                    raise CyclicDependencyError([dep_id, target.id, dep_id])

            for dep_id in dependents:
                dependent = self._tasks[dep_id]
                if target.id in dependent.dependency_ids:
                    dependent.dependency_ids.remove(source.id)
                else:
                    idx = dependent.dependency_ids.index(source.id)
                    dependent.dependency_ids[idx] = target.id
                source.dependent_ids.remove(dep_id)
                if dep_id not in target.dependent_ids:
                    target.dependent_ids.append(dep_id)
                dependent.touch()

            self._transition(source, TaskStatus.SUPERSEDED)
            source.superseded_by = target.id
            logger.debug("Rewired {} -> {} ({} dependent(s))", source.id, target.id, len(dependents))
            return dependents

    # ------------------------------------------------------------------
    # Corrective chain helpers
    # ------------------------------------------------------------------

    def attempts_for(self, root_id: str) -> int:
        """Number of remediation chains already built for *root_id*."""
        with self._lock:
            return max((t.attempt for t in self._tasks.values() if t.root_id == root_id), default=0)

    def chain_successors(self, task_id: str) -> list[str]:
        """Tasks of the same remediation chain that come after *task_id*."""
        with self._lock:
            task = self._require(task_id)
            if not task.is_corrective:
                return []
            chain = [
                t for t in self._tasks.values()
                if t.root_id == task.root_id and t.attempt == task.attempt
            ]
            ids = [t.id for t in chain]
            return ids[ids.index(task.id) + 1:]

    # ------------------------------------------------------------------
    # Preview / validation
    # ------------------------------------------------------------------

    def execution_order(self) -> list[list[str]]:
        """Topological sort of unresolved tasks into batches (Kahn's algorithm)."""
        with self._lock:
            live = {t.id: t for t in self._tasks.values() if not t.is_terminal}
            in_degree: dict[str, int] = {tid: 0 for tid in live}
            adj: dict[str, list[str]] = defaultdict(list)
            for task in live.values():
                for dep_id in task.dependency_ids:
                    if dep_id in live and task.remediates != dep_id:
                        adj[dep_id].append(task.id)
                        in_degree[task.id] += 1

            batches: list[list[str]] = []
            queue = [tid for tid, deg in in_degree.items() if deg == 0]
            while queue:
                batches.append(list(queue))
                next_queue: list[str] = []
                for tid in queue:
                    for neighbor in adj.get(tid, []):
                        in_degree[neighbor] -= 1
                        if in_degree[neighbor] == 0:
                            next_queue.append(neighbor)
                queue = next_queue
            return batches

    def check_invariants(self) -> None:
        """Raise :class:`InvariantViolationError` if any structural invariant fails."""
        with self._lock:
            for task in self._tasks.values():
                for dep_id in task.dependency_ids:
                    if dep_id not in self._tasks:
                        raise InvariantViolationError(f"{task.id} depends on missing task {dep_id}")
                    if task.id not in self._tasks[dep_id].dependent_ids:
                        raise InvariantViolationError(f"Edge {dep_id} -> {task.id} is not symmetric")
                for dependent_id in task.dependent_ids:
                    if dependent_id not in self._tasks or task.id not in self._tasks[dependent_id].dependency_ids:
                        raise InvariantViolationError(f"Edge {task.id} -> {dependent_id} is not symmetric")
                if task.status == TaskStatus.SUPERSEDED and self._live_dependents(task):
                    raise InvariantViolationError(
                        f"Superseded task {task.id} still has live dependents {self._live_dependents(task)}"
                    )
            cycle = _find_cycle({t.id: list(t.dependency_ids) for t in self._tasks.values()})
            if cycle:
                raise InvariantViolationError(f"Cycle detected: {' -> '.join(cycle)}")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": self.version,
                "frozen": self._frozen,
                "escalations": dict(self.escalations),
                "tasks": [t.to_dict() for t in self._tasks.values()],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskGraph":
        """Rebuild a graph from :meth:`to_dict` output, validating invariants."""
        graph = cls()
        for raw in data.get("tasks") or []:
            try:
                task = Task.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                raise InvariantViolationError(f"Malformed task record {raw!r}: {exc}") from exc
            if task.id in graph._tasks:
                raise DuplicateTaskError(task.id)
            task.dependent_ids = []
            graph._tasks[task.id] = task
        for task in graph._tasks.values():
            missing = [d for d in task.dependency_ids if d not in graph._tasks]
            if missing:
                raise UnknownDependencyError(task.id, missing)
            for dep_id in task.dependency_ids:
                graph._tasks[dep_id].dependent_ids.append(task.id)
        graph.check_invariants()
        graph.escalations = {str(k): str(v) for k, v in (data.get("escalations") or {}).items()}
        graph._frozen = bool(data.get("frozen", False))
        graph.version = int(data.get("version", 0) or 0)
        return graph

    def copy(self) -> "TaskGraph":
        return TaskGraph.from_dict(self.to_dict())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise GraphFrozenError("Graph is frozen after abort; no further mutation allowed")

    def _bump(self) -> None:
        self.version += 1

    def _transition(self, task: Task, target: TaskStatus) -> None:
        task.status = target
        task.touch()
        self._bump()

    def _chase(self, task_id: str) -> Task:
        task = self._require(task_id)
        seen = {task.id}
        while task.superseded_by:
            task = self._require(task.superseded_by)
            if task.id in seen:
                raise InvariantViolationError(f"superseded_by loop through {task.id}")
            seen.add(task.id)
        return task

    def _satisfied(self, task: Task, dep_id: str) -> bool:
        dep = self._tasks[dep_id]
        if dep.status == TaskStatus.SUCCEEDED:
            return True
        return task.remediates == dep_id and dep.status == TaskStatus.SUPERSEDED

    def _live_dependents(self, task: Task) -> list[str]:
        live: list[str] = []
        for dep_id in task.dependent_ids:
            dependent = self._tasks[dep_id]
            if dependent.status in (TaskStatus.SUPERSEDED, TaskStatus.CANCELLED):
                continue
            if dependent.remediates == task.id:
                continue
            live.append(dep_id)
        return live

    def _reaches(self, start_id: str, goal_id: str) -> bool:
        """True if *goal_id* is reachable from *start_id* along dependency edges."""
        visited: set[str] = set()
        queue: deque[str] = deque([start_id])
        while queue:
            current = queue.popleft()
            if current == goal_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            node = self._tasks.get(current)
            if node:
                queue.extend(node.dependency_ids)
        return False


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------

def _dedupe(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _find_cycle(deps: dict[str, list[str]]) -> Optional[list[str]]:
    """Return one dependency cycle as a path, or None."""
    # 0 = unvisited, 1 = visiting, 2 = visited
    state: dict[str, int] = {node: 0 for node in deps}

    def dfs(node: str, path: list[str]) -> Optional[list[str]]:
        if state.get(node) == 1:
            start = path.index(node)
            return path[start:] + [node]
        if state.get(node, 2) == 2:
            return None
        state[node] = 1
        path.append(node)
        for neighbor in deps.get(node, []):
            cycle = dfs(neighbor, path)
            if cycle:
                return cycle
        path.pop()
        state[node] = 2
        return None

    for node in deps:
        if state[node] == 0:
            cycle = dfs(node, [])
            if cycle:
                return cycle
    return None


def _topological_order(deps: dict[str, list[str]]) -> list[str]:
    """Order *deps* keys so every key follows its in-batch dependencies."""
    in_degree = {node: 0 for node in deps}
    adj: dict[str, list[str]] = defaultdict(list)
    for node, node_deps in deps.items():
        for dep in node_deps:
            if dep in deps:
                adj[dep].append(node)
                in_degree[node] += 1
    queue = deque(node for node, deg in in_degree.items() if deg == 0)
    order: list[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for neighbor in adj.get(node, []):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)
    return order
