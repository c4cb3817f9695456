#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for the PDCA task engine.

Runs a task plan through plan/do/check/act cycles, previews plans, and shows
the saved graph snapshot.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .approval_gates import StepApprovalGate, console_reviewer
from .config import load_config
from .constants import STATE_DIR_NAME
from .errors import EngineError, EscalationRequired
from .executors import ScriptedExecutor, TaskExecutor, load_executor
from .orchestrator import Orchestrator, RunReport, RunStatus
from .plan import build_graph, build_scripted_executor, load_plan, visualize_as_tree, visualize_execution_plan
from .task_graph.model import TaskStatus
from .task_graph.store import SnapshotStore

__all__ = ["main"]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INCOMPLETE = 2


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
        colorize=True,
    )


_configure_logging()


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PDCA Task Engine - run a task plan to resolution",
    )
    parser.add_argument(
        "--plan",
        type=Path,
        help="Plan file (YAML or JSON); optional with --resume",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory holding .pdca/ (default: current directory)",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume from the saved graph snapshot",
    )
    parser.add_argument(
        "--executor",
        help="Executor as 'module:attribute' (default: scripted outcomes from the plan)",
    )
    parser.add_argument(
        "--retry-budget",
        type=int,
        help="Remediation chains allowed per planned task before escalating",
    )
    parser.add_argument(
        "--task-timeout",
        type=float,
        help="Seconds a task may run before it counts as execution_failed",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        help="Maximum tasks executing concurrently within a step",
    )
    parser.add_argument(
        "--approve-steps",
        action="store_true",
        help="Ask for approval before dispatching each step",
    )
    parser.add_argument(
        "--no-snapshot",
        action="store_true",
        help="Do not write the resumable graph snapshot",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def _build_plan_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PDCA Task Engine - validate a plan and preview its execution batches",
    )
    parser.add_argument(
        "--plan",
        type=Path,
        required=True,
        help="Plan file (YAML or JSON)",
    )
    parser.add_argument(
        "--tree",
        action="store_true",
        help="Also print the dependency tree",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PDCA Task Engine - show the saved graph snapshot",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _report_escalation(escalation: EscalationRequired) -> None:
    logger.warning(
        "Escalation: {} needs human attention (root {}, {} attempt(s), budget {})",
        escalation.task_id,
        escalation.root_id,
        escalation.attempts,
        escalation.budget,
    )


def _print_report(report: RunReport, console: Console) -> None:
    table = Table(title=f"Run {report.status.value}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="bold")
    table.add_row("Steps", str(report.steps))
    table.add_row("Tasks executed", str(len(report.results)))
    table.add_row("Failures", str(sum(1 for r in report.results if not r.succeeded)))
    table.add_row("Corrective tasks", str(sum(len(a.created_task_ids) for a in report.actions)))
    table.add_row("Escalations", str(len(report.escalations)))
    table.add_row("Graph version", str(report.graph_version))
    console.print(table)

    for escalation in report.escalations:
        console.print(f"[red]✗ Escalated {escalation.task_id}[/red] [dim](root {escalation.root_id})[/dim]")
        if escalation.summary:
            console.print(f"    {escalation.summary[:120]}")
    if report.rejection_reason:
        console.print(f"[yellow]Rejected: {report.rejection_reason}[/yellow]")


def _run_command(
    project_dir: Path,
    plan_path: Optional[Path],
    *,
    resume: bool = False,
    executor_spec: Optional[str] = None,
    retry_budget: Optional[int] = None,
    task_timeout: Optional[float] = None,
    max_workers: Optional[int] = None,
    approve_steps: bool = False,
    snapshot: bool = True,
) -> int:
    project_dir = project_dir.resolve()
    console = Console()

    try:
        config = load_config(project_dir).with_overrides(
            retry_budget=retry_budget,
            task_timeout=task_timeout,
            max_workers=max_workers,
            approve_steps=True if approve_steps else None,
        )
        store = SnapshotStore(project_dir / STATE_DIR_NAME) if snapshot else None
        gate = StepApprovalGate(config.approval, reviewer=console_reviewer) if config.approval.enabled else None

        plan = load_plan(plan_path) if plan_path is not None else None
        executor: TaskExecutor
        if executor_spec:
            executor = load_executor(executor_spec)
        elif plan is not None:
            executor = build_scripted_executor(plan)
        else:
            executor = ScriptedExecutor()

        if resume:
            if store is None:
                logger.error("--resume cannot be combined with --no-snapshot")
                return EXIT_ERROR
            orchestrator = Orchestrator.resume(
                store, executor, config, gate=gate, on_escalation=_report_escalation
            )
        else:
            if plan is None:
                logger.error("--plan is required unless --resume is given")
                return EXIT_ERROR
            orchestrator = Orchestrator(
                build_graph(plan),
                executor,
                config,
                gate=gate,
                store=store,
                on_escalation=_report_escalation,
            )
    except (EngineError, ImportError, AttributeError, TypeError, ValueError) as exc:
        logger.error("Unable to start run: {}", exc)
        return EXIT_ERROR

    try:
        report = orchestrator.run()
    except KeyboardInterrupt:
        orchestrator.abort()
        if store is not None:
            store.save(orchestrator.graph, status=RunStatus.ABORTED.value)
        logger.warning("Interrupted; run aborted")
        return EXIT_INCOMPLETE
    except EngineError as exc:
        logger.error("Run failed: {}", exc)
        return EXIT_ERROR

    _print_report(report, console)
    return EXIT_OK if report.status == RunStatus.COMPLETED else EXIT_INCOMPLETE


def _plan_command(plan_path: Path, *, show_tree: bool = False) -> int:
    try:
        graph = build_graph(load_plan(plan_path))
    except EngineError as exc:
        logger.error("Invalid plan: {}", exc)
        return EXIT_ERROR

    visualize_execution_plan(graph)
    if show_tree:
        visualize_as_tree(graph)
    return EXIT_OK


def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    store = SnapshotStore(project_dir / STATE_DIR_NAME)

    try:
        graph = store.load()
        raw = store.load_raw() if graph is not None else {}
    except EngineError as exc:
        logger.error("Unable to load snapshot: {}", exc)
        return EXIT_ERROR

    if graph is None:
        if as_json:
            sys.stdout.write('{"status":"missing_snapshot"}\n')
        else:
            sys.stdout.write(f"No graph snapshot found at {store.path}\n")
        return EXIT_OK

    run_info = raw.get("run") or {}
    counts: dict[str, int] = {}
    for task in graph.tasks():
        counts[task.status.value] = counts.get(task.status.value, 0) + 1

    if as_json:
        payload = {
            "project_dir": str(project_dir),
            "snapshot": str(store.path),
            "saved_at": raw.get("saved_at"),
            "run": run_info,
            "graph_version": graph.version,
            "task_summary": counts,
            "escalations": graph.escalations,
            "ready": [t.id for t in graph.ready_set()],
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return EXIT_OK

    console = Console()
    console.print(f"Project:  {project_dir}")
    console.print(f"Snapshot: {store.path} (saved {raw.get('saved_at') or 'unknown'})")
    console.print(f"Run status: {run_info.get('status') or 'unknown'}, graph v{graph.version}")

    table = Table(show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Depends on", style="dim")
    table.add_column("Summary")
    for task in graph.tasks():
        status = task.status.value
        if task.status == TaskStatus.SUCCEEDED:
            status = f"[green]{status}[/green]"
        elif task.status.is_failure:
            status = f"[red]{status}[/red]"
        table.add_row(task.id, status, ", ".join(task.dependency_ids) or "-", (task.summary or "")[:60])
    console.print(table)

    for root_id, task_id in graph.escalations.items():
        console.print(f"[red]Escalated:[/red] {task_id} (root {root_id})")
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Run the `pdca-engine` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.project_dir, as_json=bool(args.json)))
        if argv[0] == "plan":
            args = _build_plan_parser().parse_args(argv[1:])
            raise SystemExit(_plan_command(args.plan, show_tree=bool(args.tree)))
        if argv[0] == "run":
            argv = argv[1:]

    args = _build_run_parser().parse_args(argv)
    _configure_logging(args.log_level)
    raise SystemExit(
        _run_command(
            args.project_dir,
            args.plan,
            resume=bool(args.resume),
            executor_spec=args.executor,
            retry_budget=args.retry_budget,
            task_timeout=args.task_timeout,
            max_workers=args.max_workers,
            approve_steps=bool(args.approve_steps),
            snapshot=not args.no_snapshot,
        )
    )


if __name__ == "__main__":
    main()
