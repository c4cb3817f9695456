"""Tests for the step approval gate (approval_gates.py)."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from pdca_engine.approval_gates import StepApprovalGate, StepProposal, console_reviewer
from pdca_engine.config import ApprovalConfig
from pdca_engine.task_graph.graph import TaskGraph
from pdca_engine.task_graph.model import Step, TaskSpec


@pytest.fixture
def graph() -> TaskGraph:
    g = TaskGraph()
    g.add_tasks(
        [
            TaskSpec(id="A", role="tester", goal="Write tests", verification=True),
            TaskSpec(id="B", role="developer", goal="Implement", dependency_ids=("A",)),
            TaskSpec(id="C", role="writer", goal="Document"),
        ]
    )
    return g


@pytest.fixture
def gate() -> StepApprovalGate:
    return StepApprovalGate(ApprovalConfig(enabled=True, timeout=60))


class TestProposal:
    def test_propose_step_lists_tasks_in_order(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        items = gate.propose_step(graph, Step(number=1, task_ids=("C", "A")))

        assert [i.task_id for i in items] == ["C", "A"]
        assert items[1].role == "tester"
        assert items[1].goal == "Write tests"
        assert gate.pending is not None
        assert gate.pending.step_number == 1

    def test_items_carry_dependencies(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        items = gate.propose_step(graph, Step(number=2, task_ids=("B",)))
        assert items[0].to_dict() == {
            "task_id": "B",
            "role": "developer",
            "goal": "Implement",
            "dependency_ids": ["A"],
        }

    def test_second_proposal_while_pending_rejected(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.propose_step(graph, Step(number=1, task_ids=("A",)))
        with pytest.raises(ValueError, match="awaiting a decision"):
            gate.propose_step(graph, Step(number=2, task_ids=("C",)))


class TestDecision:
    def test_accept(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.propose_step(graph, Step(number=1, task_ids=("A",)))
        gate.accept_step("looks good")

        response = gate.await_decision()

        assert response.approved
        assert response.feedback == "looks good"
        assert gate.pending is None

    def test_reject(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.propose_step(graph, Step(number=1, task_ids=("A",)))
        gate.reject_step("wrong order")

        response = gate.await_decision()

        assert not response.approved
        assert response.feedback == "wrong order"

    def test_decision_without_proposal(self, gate: StepApprovalGate) -> None:
        with pytest.raises(ValueError, match="No step proposal"):
            gate.accept_step()
        with pytest.raises(ValueError, match="No step proposal"):
            gate.await_decision()

    def test_timeout_auto_approves(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.propose_step(graph, Step(number=1, task_ids=("A",)))

        response = gate.await_decision(timeout=0.01)

        assert response.approved
        assert response.feedback == "Auto-approved due to timeout"

    def test_required_gate_waits_for_decision(self, graph: TaskGraph) -> None:
        gate = StepApprovalGate(ApprovalConfig(enabled=True, required=True, timeout=0))
        gate.propose_step(graph, Step(number=1, task_ids=("A",)))
        timer = threading.Timer(0.05, gate.reject_step, args=("late no",))
        timer.start()

        response = gate.await_decision(timeout=0.001)
        timer.join()

        assert not response.approved
        assert response.feedback == "late no"

    def test_decision_from_another_thread(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        def review(g: StepApprovalGate, proposal: StepProposal) -> None:
            threading.Timer(0.02, g.accept_step).start()

        gate.reviewer = review

        response = gate.request_approval(graph, Step(number=1, task_ids=("A", "C")))

        assert response.approved


class TestRequestApproval:
    def test_disabled_gate_approves_without_proposal(self, graph: TaskGraph) -> None:
        gate = StepApprovalGate(ApprovalConfig(enabled=False))

        response = gate.request_approval(graph, Step(number=1, task_ids=("A",)))

        assert response.approved
        assert gate.pending is None

    def test_console_reviewer_accepts(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.reviewer = console_reviewer
        with patch("pdca_engine.approval_gates.Confirm.ask", return_value=True) as ask:
            response = gate.request_approval(graph, Step(number=3, task_ids=("A",)))

        assert response.approved
        assert "step 3" in ask.call_args[0][0]

    def test_console_reviewer_rejects(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        gate.reviewer = console_reviewer
        with patch("pdca_engine.approval_gates.Confirm.ask", return_value=False):
            response = gate.request_approval(graph, Step(number=1, task_ids=("A",)))

        assert not response.approved
        assert response.feedback == "Rejected at console"

    def test_reviewer_sees_pending_proposal(self, gate: StepApprovalGate, graph: TaskGraph) -> None:
        seen: list[StepProposal] = []

        def review(g: StepApprovalGate, proposal: StepProposal) -> None:
            assert g.pending is proposal
            seen.append(proposal)
            g.accept_step()

        gate.reviewer = review

        response = gate.request_approval(graph, Step(number=2, task_ids=("A", "C")))

        assert [item.task_id for item in seen[0].items] == ["A", "C"]
        assert response.proposal_id == seen[0].id
        assert gate.pending is None
