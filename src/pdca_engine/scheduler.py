"""Step scheduling and parallel dispatch with barrier synchronization.

A step is the frontier of ready tasks.  Tasks inside a step run concurrently
on a thread pool; the next step is never computed until every task of the
current one has a terminal per-task status.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import replace
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .constants import TIMEOUT_SUMMARY
from .errors import StepBarrierError
from .executors import TaskExecutor
from .task_graph.graph import TaskGraph
from .task_graph.model import ExecutionResult, Outcome, Step, Task, TaskStatus


class Scheduler:
    """Compute steps and dispatch them to the executor collaborator."""

    def __init__(self, max_workers: int = 4, task_timeout: Optional[float] = None):
        """Initialize the scheduler.

        Args:
            max_workers: Maximum number of tasks executing at once within a step.
            task_timeout: Seconds a single task may run before it is resolved as
                ``execution_failed``. None waits indefinitely.
        """
        self.max_workers = max_workers
        self.task_timeout = task_timeout
        self.console = Console()
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._in_flight: Optional[Step] = None
        self._steps_dispatched = 0
        self._task_status: dict[str, str] = {}  # task_id -> status
        self._task_errors: dict[str, str] = {}  # task_id -> summary

    @property
    def steps_dispatched(self) -> int:
        return self._steps_dispatched

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def next_step(self, graph: TaskGraph) -> Step:
        """Return the next step: every ready task, in insertion order.

        An empty step is flagged ``stalled`` when unresolved tasks remain.

        Raises:
            StepBarrierError: If the previous step is still in flight.
        """
        with self._lock:
            if self._in_flight is not None:
                raise StepBarrierError(
                    f"Step {self._in_flight.number} is still running; cannot compute the next step"
                )
            number = self._steps_dispatched + 1

        ready = graph.ready_set()
        if not ready:
            return Step(number=number, task_ids=(), stalled=bool(graph.unresolved()))
        return Step(number=number, task_ids=tuple(t.id for t in ready))

    def dispatch(self, graph: TaskGraph, step: Step, executor: TaskExecutor) -> list[ExecutionResult]:
        """Run every task of *step* concurrently and wait for all of them.

        Args:
            graph: Graph owning the tasks.
            step: Step returned by :meth:`next_step`.
            executor: Executor collaborator.

        Returns:
            Results recorded in the graph, in step order. Tasks cancelled before
            or during execution have no result.
        """
        if step.is_empty:
            return []

        with self._lock:
            if self._in_flight is not None:
                raise StepBarrierError(f"Step {self._in_flight.number} is still running")
            self._in_flight = step
            self._steps_dispatched += 1

        try:
            for task_id in step:
                graph.set_status(task_id, TaskStatus.READY)
            logger.info("Dispatching step {} with {} task(s): {}", step.number, len(step), ", ".join(step))

            if len(step) == 1:
                # Single task - execute directly without thread pool overhead
                result = self._run_task(graph, step.task_ids[0], executor)
                results = [result] if result else []
            else:
                results = self._run_parallel(graph, step, executor)
        finally:
            with self._lock:
                self._in_flight = None

        failures = [r for r in results if not r.succeeded]
        if failures:
            logger.warning("Step {} had {} failure(s)", step.number, len(failures))
            for failure in failures:
                logger.warning("  - Task {} {}: {}", failure.task_id, failure.outcome.value, failure.summary)
        return results

    def cancel(self) -> None:
        """Stop dispatching; queued tasks are skipped and late results discarded."""
        self._cancel.set()

    def _run_parallel(self, graph: TaskGraph, step: Step, executor: TaskExecutor) -> list[ExecutionResult]:
        by_id: dict[str, ExecutionResult] = {}
        workers = min(self.max_workers, len(step))

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pdca-step") as pool:
            futures = {pool.submit(self._run_task, graph, task_id, executor): task_id for task_id in step}

            for future in concurrent.futures.as_completed(futures):
                task_id = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Failed to get result for task {}: {}", task_id, e)
                    result = None
                if result is not None:
                    by_id[task_id] = result
                    logger.info("Task {} completed: {}", task_id, result.outcome.value)

        return [by_id[task_id] for task_id in step if task_id in by_id]

    def _run_task(self, graph: TaskGraph, task_id: str, executor: TaskExecutor) -> Optional[ExecutionResult]:
        """Execute one task and record its outcome in the graph."""
        if self._cancel.is_set() or not graph.start_task(task_id):
            logger.debug("Skipping task {}: run cancelled", task_id)
            return None

        task = graph.get(task_id)
        with self._lock:
            self._task_status[task_id] = "running"

        started = time.monotonic()
        try:
            result = self._execute_with_timeout(executor, task)
        except concurrent.futures.TimeoutError:
            logger.warning("Task {} timed out after {}s", task_id, self.task_timeout)
            result = ExecutionResult(
                task_id=task_id,
                outcome=Outcome.EXECUTION_FAILED,
                summary=TIMEOUT_SUMMARY.format(timeout=self.task_timeout),
            )
        except Exception as e:
            logger.exception("Unexpected error executing task {}: {}", task_id, e)
            result = ExecutionResult(
                task_id=task_id,
                outcome=Outcome.EXECUTION_FAILED,
                summary=f"Unexpected error: {e}",
            )

        if result.task_id != task_id:
            logger.warning("Executor reported task {} for {}; correcting", result.task_id, task_id)
        result = replace(result, task_id=task_id, duration_seconds=time.monotonic() - started)

        recorded = graph.record_outcome(result)
        with self._lock:
            if not recorded:
                self._task_status[task_id] = "cancelled"
            else:
                self._task_status[task_id] = result.outcome.value
                if not result.succeeded:
                    self._task_errors[task_id] = result.summary or "Unknown error"
        return result if recorded else None

    def _execute_with_timeout(self, executor: TaskExecutor, task: Task) -> ExecutionResult:
        if self.task_timeout is None:
            return executor.execute(task)

        # Daemon thread: an abandoned, hung executor must not block interpreter exit.
        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["result"] = executor.execute(task)
            except Exception as e:
                box["error"] = e

        worker = threading.Thread(target=target, name=f"pdca-task-{task.id}", daemon=True)
        worker.start()
        worker.join(self.task_timeout)
        if worker.is_alive():
            raise concurrent.futures.TimeoutError(task.id)
        if "error" in box:
            raise box["error"]
        return box["result"]

    def get_status(self) -> dict[str, str]:
        """Get the last known status of every dispatched task.

        Returns:
            Dictionary mapping task_id to status.
        """
        with self._lock:
            return dict(self._task_status)

    def get_errors(self) -> dict[str, str]:
        """Get summaries for failed tasks.

        Returns:
            Dictionary mapping task_id to failure summary.
        """
        with self._lock:
            return dict(self._task_errors)

    def print_progress(self) -> None:
        """Print current progress to console."""
        status = self.get_status()
        errors = self.get_errors()

        if not status:
            return

        table = Table(title="Step Execution Progress", show_header=True)
        table.add_column("Task ID", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Summary", style="red")

        for task_id, state in status.items():
            error_msg = errors.get(task_id, "")
            if state == "running":
                status_str = "[yellow]Running[/yellow]"
            elif state == Outcome.SUCCEEDED.value:
                status_str = "[green]✓ Succeeded[/green]"
            elif state in (Outcome.ISSUES_FOUND.value, Outcome.EXECUTION_FAILED.value):
                status_str = f"[red]✗ {state}[/red]"
            else:
                status_str = state

            table.add_row(task_id, status_str, error_msg[:50] if error_msg else "")

        self.console.print(table)
