"""Test result summarization helpers."""

from __future__ import annotations

import json

from pdca_engine.errors import EscalationRequired
from pdca_engine.logging_utils import pretty, summarize_action, summarize_escalation, summarize_results
from pdca_engine.task_graph.model import CorrectiveAction, CorrectiveKind, ExecutionResult, Outcome


def test_summarize_results_counts_outcomes() -> None:
    results = [
        ExecutionResult(task_id="a", outcome=Outcome.SUCCEEDED),
        ExecutionResult(task_id="b", outcome=Outcome.ISSUES_FOUND, summary="2 failing"),
        ExecutionResult(task_id="c", outcome=Outcome.EXECUTION_FAILED),
    ]

    summary = summarize_results(results)

    assert summary["total"] == 3
    assert summary["outcomes"] == {"succeeded": 1, "issues_found": 1, "execution_failed": 1}
    assert summary["failed"] == ["b", "c"]
    assert summary["first_failure"] == "b: 2 failing"


def test_summarize_results_empty() -> None:
    assert summarize_results([]) == {"total": 0, "outcomes": {}, "failed": [], "first_failure": None}


def test_summarize_results_caps_failures() -> None:
    results = [ExecutionResult(task_id=f"t{i}", outcome=Outcome.EXECUTION_FAILED) for i in range(8)]
    assert len(summarize_results(results, max_failed=5)["failed"]) == 5


def test_summarize_action() -> None:
    action = CorrectiveAction(
        failed_task_id="E",
        root_id="E",
        kind=CorrectiveKind.FIX_THEN_REFACTOR,
        created_task_ids=("E.fix1", "E.refactor1"),
        attempt=1,
    )
    assert summarize_action(action) == "E [fix_then_refactor, attempt 1]: E.fix1 -> E.refactor1"


def test_summarize_escalation() -> None:
    exc = EscalationRequired(root_id="T", task_id="T.fix3", attempts=3, budget=3, summary="still broken")
    assert summarize_escalation(exc) == {
        "root_id": "T",
        "task_id": "T.fix3",
        "attempts": 3,
        "budget": 3,
        "summary": "still broken",
    }


def test_pretty_falls_back_to_str() -> None:
    assert json.loads(pretty({"a": 1})) == {"a": 1}
    circular: list = []
    circular.append(circular)
    assert pretty(circular) == str(circular)
