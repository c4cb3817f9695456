"""Format and summarize step results and corrective actions for logs."""

import json
from collections import Counter
from typing import Any, Iterable

from .errors import EscalationRequired
from .task_graph.model import CorrectiveAction, ExecutionResult


def summarize_results(results: Iterable[ExecutionResult], max_failed: int = 5) -> dict[str, Any]:
    """Summarize the outcomes of one or more steps.

    Args:
        results: Execution results, in dispatch order.
        max_failed: Maximum number of failing tasks to list.

    Returns:
        A dictionary with keys `total`, `outcomes`, `failed`, and `first_failure`.
    """
    results = list(results)
    if not results:
        return {"total": 0, "outcomes": {}, "failed": [], "first_failure": None}

    counts = Counter(r.outcome.value for r in results)
    failed = [r for r in results if not r.succeeded]
    first_failure = None
    if failed:
        first = failed[0]
        first_failure = f"{first.task_id}: {first.summary}" if first.summary else first.task_id

    return {
        "total": len(results),
        "outcomes": dict(counts),
        "failed": [r.task_id for r in failed[:max_failed]],
        "first_failure": first_failure,
    }


def summarize_action(action: CorrectiveAction) -> str:
    """Render a corrective action as a single log line."""
    chain = " -> ".join(action.created_task_ids)
    return f"{action.failed_task_id} [{action.kind.value}, attempt {action.attempt}]: {chain}"


def summarize_escalation(escalation: EscalationRequired) -> dict[str, Any]:
    d: dict[str, Any] = {
        "root_id": escalation.root_id,
        "task_id": escalation.task_id,
        "attempts": escalation.attempts,
        "budget": escalation.budget,
    }
    if escalation.summary:
        d["summary"] = escalation.summary
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
