"""Tests for the task graph (task_graph/graph.py)."""

from __future__ import annotations

import threading

import pytest

from pdca_engine.errors import (
    CyclicDependencyError,
    DuplicateTaskError,
    GraphFrozenError,
    InvalidTransitionError,
    PlanningError,
    UnknownDependencyError,
    UnknownTaskError,
)
from pdca_engine.task_graph.graph import TaskGraph
from pdca_engine.task_graph.model import (
    CorrectiveRole,
    ExecutionResult,
    Outcome,
    Task,
    TaskSpec,
    TaskStatus,
)


def _finish(graph: TaskGraph, task_id: str, outcome: Outcome = Outcome.SUCCEEDED, summary: str = "") -> None:
    graph.set_status(task_id, TaskStatus.READY)
    assert graph.start_task(task_id)
    assert graph.record_outcome(ExecutionResult(task_id=task_id, outcome=outcome, summary=summary))


def _ready_ids(graph: TaskGraph) -> list[str]:
    return [t.id for t in graph.ready_set()]


@pytest.fixture
def graph() -> TaskGraph:
    g = TaskGraph()
    g.add_tasks(
        [
            TaskSpec(id="A", role="dev", goal="Build the base"),
            TaskSpec(id="B", role="dev", goal="Use the base", dependency_ids=("A",)),
            TaskSpec(id="C", role="qa", goal="Test the base", dependency_ids=("A",)),
        ]
    )
    return g


# ---------------------------------------------------------------------------
# Insertion
# ---------------------------------------------------------------------------

class TestInsertion:
    def test_add_task_starts_pending(self, graph: TaskGraph) -> None:
        task = graph.get("A")
        assert task.status == TaskStatus.PENDING
        assert task.role == "dev"
        assert task.goal == "Build the base"

    def test_dependents_are_symmetric(self, graph: TaskGraph) -> None:
        assert graph.get("A").dependent_ids == ["B", "C"]
        assert graph.get("B").dependency_ids == ["A"]
        graph.check_invariants()

    def test_add_tasks_accepts_any_order(self) -> None:
        g = TaskGraph()
        g.add_tasks([TaskSpec(id="B", dependency_ids=("A",)), TaskSpec(id="A")])
        assert g.ids() == ["A", "B"]

    def test_duplicate_dependencies_collapse(self) -> None:
        g = TaskGraph()
        g.add_task(TaskSpec(id="A"))
        g.add_task(TaskSpec(id="B", dependency_ids=("A", "A")))
        assert g.get("B").dependency_ids == ["A"]
        assert g.get("A").dependent_ids == ["B"]

    def test_duplicate_id_rejected(self, graph: TaskGraph) -> None:
        with pytest.raises(DuplicateTaskError):
            graph.add_task(TaskSpec(id="A"))

    def test_unknown_dependency_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        before = graph.to_dict()
        with pytest.raises(UnknownDependencyError, match="missing"):
            graph.add_task(TaskSpec(id="D", dependency_ids=("A", "missing")))
        assert graph.to_dict() == before

    def test_self_cycle_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        before = graph.to_dict()
        with pytest.raises(CyclicDependencyError):
            graph.add_task(TaskSpec(id="D", dependency_ids=("D",)))
        assert graph.to_dict() == before

    def test_batch_cycle_inserts_nothing(self, graph: TaskGraph) -> None:
        before = graph.to_dict()
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.add_tasks(
                [
                    TaskSpec(id="X", dependency_ids=("Y",)),
                    TaskSpec(id="Y", dependency_ids=("X",)),
                ]
            )
        assert set(exc_info.value.cycle) == {"X", "Y"}
        assert graph.to_dict() == before

    def test_planning_errors_share_a_base(self, graph: TaskGraph) -> None:
        with pytest.raises(PlanningError):
            graph.add_task(TaskSpec(id="A"))

    def test_unknown_task_lookup(self, graph: TaskGraph) -> None:
        with pytest.raises(UnknownTaskError):
            graph.get("nope")

    def test_get_returns_copy(self, graph: TaskGraph) -> None:
        task = graph.get("B")
        task.dependency_ids.append("C")
        task.status = TaskStatus.SUCCEEDED
        assert graph.get("B").dependency_ids == ["A"]
        assert graph.status("B") == TaskStatus.PENDING

    def test_concurrent_inserts_are_serialized(self) -> None:
        g = TaskGraph()
        g.add_task(TaskSpec(id="root"))

        def add(i: int) -> None:
            g.add_task(TaskSpec(id=f"t{i}", dependency_ids=("root",)))

        threads = [threading.Thread(target=add, args=(i,)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(g) == 51
        assert len(g.get("root").dependent_ids) == 50
        g.check_invariants()


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class TestReadiness:
    def test_only_roots_ready_initially(self, graph: TaskGraph) -> None:
        assert _ready_ids(graph) == ["A"]

    def test_dependents_ready_after_success(self, graph: TaskGraph) -> None:
        _finish(graph, "A")
        assert set(_ready_ids(graph)) == {"B", "C"}

    def test_failed_dependency_blocks(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        assert _ready_ids(graph) == []
        assert graph.unrepaired_failures() == ["A"]

    def test_running_task_not_ready(self, graph: TaskGraph) -> None:
        graph.set_status("A", TaskStatus.READY)
        assert _ready_ids(graph) == []
        assert graph.active() == ["A"]

    def test_unresolved_until_all_succeed(self, graph: TaskGraph) -> None:
        assert graph.unresolved() == ["A", "B", "C"]
        for task_id in ("A", "B", "C"):
            _finish(graph, task_id)
        assert graph.is_resolved()

    def test_execution_order_batches(self) -> None:
        g = TaskGraph()
        g.add_tasks(
            [
                TaskSpec(id="A"),
                TaskSpec(id="B", dependency_ids=("A",)),
                TaskSpec(id="C", dependency_ids=("A",)),
                TaskSpec(id="D", dependency_ids=("B", "C")),
            ]
        )
        assert g.execution_order() == [["A"], ["B", "C"], ["D"]]

    def test_stalled_tasks_after_cancelled_dependency(self, graph: TaskGraph) -> None:
        graph.set_status("A", TaskStatus.CANCELLED)
        assert _ready_ids(graph) == []
        assert graph.stalled_tasks() == ["B", "C"]


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_invalid_transition(self, graph: TaskGraph) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            graph.set_status("A", TaskStatus.SUCCEEDED)
        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "succeeded"

    def test_superseded_only_through_rewiring(self, graph: TaskGraph) -> None:
        with pytest.raises(InvalidTransitionError):
            graph.set_status("A", TaskStatus.SUPERSEDED)

    def test_terminal_status_is_final(self, graph: TaskGraph) -> None:
        _finish(graph, "A")
        with pytest.raises(InvalidTransitionError):
            graph.set_status("A", TaskStatus.PENDING)

    def test_record_outcome_requires_running(self, graph: TaskGraph) -> None:
        assert not graph.record_outcome(ExecutionResult(task_id="A", outcome=Outcome.SUCCEEDED))
        assert graph.status("A") == TaskStatus.PENDING

    def test_record_outcome_keeps_summary(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.ISSUES_FOUND, summary="2 tests failing")
        task = graph.get("A")
        assert task.status == TaskStatus.ISSUES_FOUND
        assert task.summary == "2 tests failing"

    def test_version_bumps_on_mutation(self, graph: TaskGraph) -> None:
        before = graph.version
        graph.set_status("A", TaskStatus.READY)
        assert graph.version > before


# ---------------------------------------------------------------------------
# Cancellation and recovery
# ---------------------------------------------------------------------------

class TestCancellation:
    def test_cancel_marks_running_and_ready(self, graph: TaskGraph) -> None:
        _finish(graph, "A")
        graph.set_status("B", TaskStatus.READY)
        assert graph.start_task("B")
        graph.set_status("C", TaskStatus.READY)

        cancelled = graph.cancel_active()

        assert cancelled == ["B", "C"]
        assert graph.status("A") == TaskStatus.SUCCEEDED
        assert graph.status("B") == TaskStatus.CANCELLED
        assert graph.status("C") == TaskStatus.CANCELLED

    def test_ready_set_empty_after_cancel(self, graph: TaskGraph) -> None:
        graph.add_task(TaskSpec(id="D", dependency_ids=("A",)))
        _finish(graph, "A")
        graph.set_status("B", TaskStatus.READY)
        assert graph.start_task("B")

        graph.cancel_active()

        # C and D would otherwise qualify.
        assert _ready_ids(graph) == []
        assert graph.frozen

    def test_frozen_graph_rejects_mutation(self, graph: TaskGraph) -> None:
        graph.cancel_active()
        with pytest.raises(GraphFrozenError):
            graph.set_status("A", TaskStatus.READY)
        with pytest.raises(GraphFrozenError):
            graph.add_task(TaskSpec(id="D"))

    def test_late_outcome_discarded(self, graph: TaskGraph) -> None:
        graph.set_status("A", TaskStatus.READY)
        assert graph.start_task("A")
        graph.cancel_active()
        assert not graph.record_outcome(ExecutionResult(task_id="A", outcome=Outcome.SUCCEEDED))
        assert graph.status("A") == TaskStatus.CANCELLED

    def test_recover_interrupted(self, graph: TaskGraph) -> None:
        _finish(graph, "A")
        graph.set_status("B", TaskStatus.READY)
        assert graph.start_task("B")
        graph.set_status("C", TaskStatus.READY)

        touched = graph.recover_interrupted("restarted")

        assert touched == ["B", "C"]
        assert graph.status("B") == TaskStatus.EXECUTION_FAILED
        assert graph.get("B").summary == "restarted"
        assert graph.status("C") == TaskStatus.PENDING


# ---------------------------------------------------------------------------
# Rewiring
# ---------------------------------------------------------------------------

def _splice_fix_refactor(graph: TaskGraph, failed_id: str) -> None:
    graph.add_record(
        Task(
            id=f"{failed_id}.fix1",
            dependency_ids=[failed_id],
            root_id=failed_id,
            remediates=failed_id,
            attempt=1,
            corrective_role=CorrectiveRole.FIX,
        )
    )
    graph.add_record(
        Task(
            id=f"{failed_id}.refactor1",
            dependency_ids=[f"{failed_id}.fix1"],
            root_id=failed_id,
            attempt=1,
            corrective_role=CorrectiveRole.REFACTOR,
        )
    )


class TestRewiring:
    def test_rewire_moves_dependents(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        _splice_fix_refactor(graph, "A")

        rewired = graph.rewire_dependents("A", "A.refactor1")

        assert rewired == ["B", "C"]
        assert graph.get("B").dependency_ids == ["A.refactor1"]
        assert graph.get("C").dependency_ids == ["A.refactor1"]
        assert graph.status("A") == TaskStatus.SUPERSEDED
        assert graph.get("A").superseded_by == "A.refactor1"
        assert graph.live_dependents("A") == []
        graph.check_invariants()

    def test_no_live_task_depends_on_superseded(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        _splice_fix_refactor(graph, "A")
        graph.rewire_dependents("A", "A.refactor1")

        for task in graph.tasks():
            if task.status not in (TaskStatus.SUPERSEDED, TaskStatus.CANCELLED) and task.remediates != "A":
                assert "A" not in task.dependency_ids

    def test_fix_becomes_ready_once_failed_task_superseded(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        _splice_fix_refactor(graph, "A")
        assert _ready_ids(graph) == []

        graph.rewire_dependents("A", "A.refactor1")

        assert _ready_ids(graph) == ["A.fix1"]

    def test_rewire_onto_itself_rejected(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        with pytest.raises(PlanningError):
            graph.rewire_dependents("A", "A")

    def test_rewire_chases_superseded_target(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        _splice_fix_refactor(graph, "A")
        graph.rewire_dependents("A", "A.refactor1")

        graph.add_task(TaskSpec(id="R2", dependency_ids=("A.fix1",)))
        graph.rewire_dependents("A.refactor1", "R2")

        assert graph.resolve_terminal("A") == "R2"

    def test_rewire_succeeded_task_rejected(self, graph: TaskGraph) -> None:
        _finish(graph, "A")
        graph.add_task(TaskSpec(id="D"))
        with pytest.raises(InvalidTransitionError):
            graph.rewire_dependents("A", "D")

    def test_rewire_cycle_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED)
        # D depends on B, so B cannot be pointed at D.
        graph.add_task(TaskSpec(id="D", dependency_ids=("B",)))
        before = graph.to_dict()
        with pytest.raises(CyclicDependencyError):
            graph.rewire_dependents("A", "D")
        assert graph.to_dict() == before

    def test_transaction_rolls_back(self, graph: TaskGraph) -> None:
        before = graph.to_dict()
        with pytest.raises(RuntimeError):
            with graph.transaction():
                graph.add_task(TaskSpec(id="D", dependency_ids=("A",)))
                raise RuntimeError("boom")
        assert "D" not in graph
        assert graph.to_dict() == before


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

class TestSerialization:
    def test_round_trip_preserves_state(self, graph: TaskGraph) -> None:
        _finish(graph, "A", Outcome.EXECUTION_FAILED, summary="crashed")
        _splice_fix_refactor(graph, "A")
        graph.rewire_dependents("A", "A.refactor1")
        graph.record_escalation("C", "C")

        restored = TaskGraph.from_dict(graph.to_dict())

        assert restored.ids() == graph.ids()
        assert restored.version == graph.version
        assert restored.escalations == {"C": "C"}
        for task in graph.tasks():
            other = restored.get(task.id)
            assert other.status == task.status
            assert other.dependency_ids == task.dependency_ids
            assert sorted(other.dependent_ids) == sorted(task.dependent_ids)
            assert other.superseded_by == task.superseded_by
            assert other.corrective_role == task.corrective_role
        assert restored.get("A").summary == "crashed"
        assert [t.id for t in restored.ready_set()] == ["A.fix1"]

    def test_from_dict_rejects_dangling_dependency(self) -> None:
        data = {"tasks": [{"id": "A", "dependency_ids": ["ghost"]}]}
        with pytest.raises(UnknownDependencyError):
            TaskGraph.from_dict(data)

    def test_copy_is_independent(self, graph: TaskGraph) -> None:
        clone = graph.copy()
        _finish(clone, "A")
        assert graph.status("A") == TaskStatus.PENDING
