"""Load task plans from YAML or JSON files.

A plan file lists the task specifications produced by the planning
collaborator::

    tasks:
      - id: write-tests
        role: tester
        goal: Write failing tests for the parser
        verification: true
      - id: implement
        role: developer
        goal: Make the parser tests pass
        dependency_ids: [write-tests]
        outcomes: [execution_failed]      # optional, for the scripted executor
    scripted_outcomes:                    # optional, keyed by any task id
      implement.fix1: [succeeded]
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.tree import Tree

from .errors import PlanFileError
from .executors import ScriptedExecutor
from .io_utils import _load_data_with_error
from .task_graph.graph import TaskGraph
from .task_graph.model import Outcome, TaskSpec


class TaskSpecModel(BaseModel):
    id: str = Field(min_length=1)
    role: str = ""
    goal: str = ""
    verification: bool = False
    dependency_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    outcomes: list[Outcome] = Field(default_factory=list)

    def to_spec(self) -> TaskSpec:
        return TaskSpec(
            id=self.id,
            role=self.role,
            goal=self.goal,
            verification=self.verification,
            dependency_ids=tuple(self.dependency_ids),
            metadata=dict(self.metadata),
        )


class PlanFile(BaseModel):
    tasks: list[TaskSpecModel] = Field(default_factory=list)
    scripted_outcomes: dict[str, list[Outcome]] = Field(default_factory=dict)

    def to_specs(self) -> list[TaskSpec]:
        return [task.to_spec() for task in self.tasks]

    def scripts(self) -> dict[str, list[Outcome]]:
        """Scripted outcomes per task id, inline ``outcomes`` first."""
        scripts = {task.id: list(task.outcomes) for task in self.tasks if task.outcomes}
        for task_id, outcomes in self.scripted_outcomes.items():
            scripts.setdefault(task_id, []).extend(outcomes)
        return scripts


def load_plan(path: Path) -> PlanFile:
    """Read and validate a plan file.

    Raises:
        PlanFileError: If the file is missing, unparsable or invalid.
    """
    if not path.exists():
        raise PlanFileError(f"Plan file not found: {path}")
    data, err = _load_data_with_error(path, {})
    if err:
        raise PlanFileError(f"Unable to read plan: {err}")
    try:
        return PlanFile.model_validate(data)
    except ValidationError as exc:
        raise PlanFileError(f"Invalid plan {path.name}: {exc}") from exc


def build_graph(plan: PlanFile, graph: Optional[TaskGraph] = None) -> TaskGraph:
    """Insert every task of *plan* into *graph* (a new one by default)."""
    graph = graph if graph is not None else TaskGraph()
    graph.add_tasks(plan.to_specs())
    return graph


def build_scripted_executor(plan: PlanFile) -> ScriptedExecutor:
    return ScriptedExecutor(plan.scripts())


def visualize_execution_plan(graph: TaskGraph) -> str:
    """Render the unresolved tasks of *graph* as parallel batches.

    Returns:
        The plain-text rendering (also suitable for tests).
    """
    console = Console(record=True, width=100)
    batches = graph.execution_order()

    console.print("\n[bold]Execution Plan[/bold]")
    console.print(f"Total tasks: {sum(len(b) for b in batches)}")
    console.print(f"Batches: {len(batches)}")
    console.print(f"Max parallelism: {max((len(b) for b in batches), default=0)}")
    console.print()

    for batch_idx, batch in enumerate(batches, 1):
        console.print(f"[bold cyan]Batch {batch_idx}:[/bold cyan] ({len(batch)} task(s) in parallel)")
        for task_id in batch:
            task = graph.get(task_id)
            marker = " [magenta](verification)[/magenta]" if task.verification else ""
            if task.dependency_ids:
                console.print(f"  • {task_id}{marker} [dim](depends on: {', '.join(task.dependency_ids)})[/dim]")
            else:
                console.print(f"  • {task_id}{marker}")
            console.print(f"    {(task.goal or 'No goal')[:80]}")
        console.print()

    return console.export_text()


def visualize_as_tree(graph: TaskGraph) -> str:
    """Render task dependencies as a tree rooted at tasks without dependencies."""
    console = Console(record=True, width=100)
    tasks = graph.tasks()
    tree = Tree("[bold]Task Dependency Tree[/bold]")

    def add_dependents(parent_node: Tree, task_id: str, visited: set[str]) -> None:
        if task_id in visited:
            return
        visited.add(task_id)
        for dependent_id in graph.get(task_id).dependent_ids:
            branch = parent_node.add(f"[cyan]{dependent_id}[/cyan]")
            add_dependents(branch, dependent_id, visited)

    visited: set[str] = set()
    for task in tasks:
        if not task.dependency_ids:
            branch = tree.add(f"[green]{task.id}[/green]")
            add_dependents(branch, task.id, visited)

    console.print(tree)
    return console.export_text()
