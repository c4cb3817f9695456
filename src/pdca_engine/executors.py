"""Executor collaborator interface and the built-in executors.

The engine never performs task work itself.  It hands each dispatched task to
a :class:`TaskExecutor` and records the :class:`ExecutionResult` it returns.
"""

from __future__ import annotations

import importlib
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Iterable, Mapping, Protocol, Union

from loguru import logger

from .task_graph.model import ExecutionResult, Outcome, Task


class TaskExecutor(Protocol):
    def execute(self, task: Task) -> ExecutionResult:
        ...


OutcomeLike = Union[Outcome, str, Mapping[str, Any]]


def _coerce_result(task_id: str, raw: OutcomeLike) -> ExecutionResult:
    if isinstance(raw, Mapping):
        return ExecutionResult(
            task_id=task_id,
            outcome=Outcome(str(raw.get("outcome") or Outcome.SUCCEEDED.value)),
            summary=str(raw.get("summary") or ""),
        )
    return ExecutionResult(task_id=task_id, outcome=Outcome(raw))


class ScriptedExecutor:
    """Deterministic executor driven by per-task outcome scripts.

    Each task id maps to a queue of outcomes consumed one per execution; a
    task without a script (or with an exhausted one) succeeds.  Scripts can
    also come from ``task.metadata['scripted_outcomes']``.
    """

    def __init__(self, scripts: Mapping[str, Iterable[OutcomeLike]] | None = None) -> None:
        self._lock = threading.Lock()
        self._scripts: dict[str, deque[OutcomeLike]] = {
            task_id: deque(outcomes) for task_id, outcomes in (scripts or {}).items()
        }
        self.calls: defaultdict[str, int] = defaultdict(int)

    def execute(self, task: Task) -> ExecutionResult:
        with self._lock:
            self.calls[task.id] += 1
            if task.id not in self._scripts:
                scripted = task.metadata.get("scripted_outcomes") if isinstance(task.metadata, dict) else None
                self._scripts[task.id] = deque(scripted if isinstance(scripted, list) else [])
            queue = self._scripts[task.id]
            raw = queue.popleft() if queue else Outcome.SUCCEEDED
        return _coerce_result(task.id, raw)


class CallableExecutor:
    """Adapt a plain ``fn(task) -> ExecutionResult | Outcome | str`` callable."""

    def __init__(self, fn: Callable[[Task], Any]) -> None:
        self._fn = fn

    def execute(self, task: Task) -> ExecutionResult:
        result = self._fn(task)
        if isinstance(result, ExecutionResult):
            return result
        return _coerce_result(task.id, result)


def load_executor(spec: str) -> TaskExecutor:
    """Import an executor from ``"package.module:attribute"``.

    The attribute may be an executor instance, a zero-argument factory/class
    returning one, or a plain callable taking a task.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Executor must look like 'module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    target = getattr(module, attr)
    if hasattr(target, "execute") and not isinstance(target, type):
        return target
    if isinstance(target, type):
        instance = target()
        if not hasattr(instance, "execute"):
            raise TypeError(f"{spec} does not provide an execute(task) method")
        return instance
    if callable(target):
        logger.debug("Wrapping callable {} as executor", spec)
        return CallableExecutor(target)
    raise TypeError(f"{spec} is not an executor")
