"""Approval gate for human-in-the-loop control of step dispatch.

The gate is a two-phase protocol: :meth:`StepApprovalGate.propose_step`
publishes the tasks the scheduler wants to run, and the presentation side
answers with :meth:`~StepApprovalGate.accept_step` or
:meth:`~StepApprovalGate.reject_step`.  The orchestrator only dispatches an
accepted step.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .config import ApprovalConfig
from .task_graph.graph import TaskGraph
from .task_graph.model import Step
from .utils import _now_iso


@dataclass
class StepProposalItem:
    """One task of a proposed step, as shown to a human."""

    task_id: str
    role: str
    goal: str
    dependency_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StepProposal:
    """A step awaiting a decision."""

    id: str
    step_number: int
    items: list[StepProposalItem]
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_number": self.step_number,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at,
        }


@dataclass
class ApprovalResponse:
    """A decision on a step proposal."""

    proposal_id: str
    approved: bool
    feedback: Optional[str] = None
    responded_at: str = field(default_factory=_now_iso)


Reviewer = Callable[["StepApprovalGate", StepProposal], None]


class StepApprovalGate:
    """Gate every step behind an explicit accept/reject decision."""

    def __init__(self, config: Optional[ApprovalConfig] = None, reviewer: Optional[Reviewer] = None):
        """Initialize the gate.

        Args:
            config: Gate settings; a disabled gate approves every step.
            reviewer: Optional hook called with each proposal. It is expected
                to call ``accept_step`` or ``reject_step``, possibly later and
                from another thread.
        """
        self.config = config or ApprovalConfig()
        self.reviewer = reviewer
        self.console = Console()
        self._lock = threading.Lock()
        self._decided = threading.Event()
        self._pending: Optional[StepProposal] = None
        self._response: Optional[ApprovalResponse] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def pending(self) -> Optional[StepProposal]:
        with self._lock:
            return self._pending

    # ------------------------------------------------------------------
    # Two-phase protocol
    # ------------------------------------------------------------------

    def propose_step(self, graph: TaskGraph, step: Step) -> list[StepProposalItem]:
        """Publish *step* for review and return its display items, in step order."""
        return self._propose(graph, step).items

    def _propose(self, graph: TaskGraph, step: Step) -> StepProposal:
        items = []
        for task_id in step:
            task = graph.get(task_id)
            items.append(
                StepProposalItem(
                    task_id=task.id,
                    role=task.role,
                    goal=task.goal,
                    dependency_ids=list(task.dependency_ids),
                )
            )
        with self._lock:
            if self._pending is not None:
                raise ValueError(f"Proposal {self._pending.id} is still awaiting a decision")
            proposal = StepProposal(id=str(uuid.uuid4()), step_number=step.number, items=items)
            self._pending = proposal
            self._response = None
            self._decided.clear()
        return proposal

    def accept_step(self, feedback: Optional[str] = None) -> ApprovalResponse:
        return self._decide(True, feedback)

    def reject_step(self, reason: Optional[str] = None) -> ApprovalResponse:
        return self._decide(False, reason)

    def await_decision(self, timeout: Optional[float] = None) -> ApprovalResponse:
        """Block until the pending proposal is decided.

        Without a decision a non-required gate auto-approves after *timeout*
        (default: the configured timeout); a required gate waits forever.
        """
        with self._lock:
            if self._pending is None and self._response is None:
                raise ValueError("No step proposal is pending")
        if self.config.required:
            wait_for = None
        else:
            wait_for = self.config.timeout if timeout is None else timeout

        if not self._decided.wait(timeout=wait_for):
            with self._lock:
                decided_late = self._response is not None
            if not decided_late:
                logger.warning("No decision within {}s; auto-approving step", wait_for)
                return self._decide(True, "Auto-approved due to timeout")

        with self._lock:
            response = self._response
        if response is None:
            raise ValueError("Step proposal was withdrawn before a decision")
        return response

    def request_approval(self, graph: TaskGraph, step: Step) -> ApprovalResponse:
        """Propose *step*, show it, hand it to the reviewer and wait for the decision."""
        if not self.enabled:
            return ApprovalResponse(proposal_id="auto", approved=True, feedback="Gate not enabled")

        proposal = self._propose(graph, step)
        self._display_proposal(proposal)
        if self.reviewer is not None:
            self.reviewer(self, proposal)
        response = self.await_decision()

        if response.approved:
            self.console.print("[green]✓ Approved - Dispatching...[/green]")
        else:
            self.console.print(f"[red]✗ Rejected - {response.feedback or 'No reason given'}[/red]")
        return response

    def _decide(self, approved: bool, feedback: Optional[str]) -> ApprovalResponse:
        with self._lock:
            if self._pending is None:
                raise ValueError("No step proposal is pending")
            response = ApprovalResponse(proposal_id=self._pending.id, approved=approved, feedback=feedback)
            self._response = response
            self._pending = None
            self._decided.set()
        logger.info("Step proposal {} {}", response.proposal_id, "accepted" if approved else "rejected")
        return response

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def _display_proposal(self, proposal: StepProposal) -> None:
        """Display the approval prompt for *proposal*."""
        self.console.print()
        self.console.print("=" * 70)
        self.console.print(f"[bold yellow]APPROVAL REQUIRED: step {proposal.step_number}[/bold yellow]")
        self.console.print("=" * 70)

        table = Table(show_header=True)
        table.add_column("Task", style="cyan")
        table.add_column("Role")
        table.add_column("Goal")
        table.add_column("Depends on", style="dim")
        for item in proposal.items:
            table.add_row(item.task_id, item.role, item.goal[:80], ", ".join(item.dependency_ids) or "-")
        self.console.print(Panel(table, title=f"{len(proposal.items)} task(s) in parallel"))

        if self.config.required:
            self.console.print("[dim]Required - cannot skip or timeout[/dim]")
        elif self.config.timeout:
            self.console.print(f"[dim]Auto-approve in {self.config.timeout}s if no response[/dim]")
        self.console.print()


def console_reviewer(gate: StepApprovalGate, proposal: StepProposal) -> None:
    """Ask on the terminal whether to dispatch the proposed step."""
    if Confirm.ask(f"Dispatch step {proposal.step_number}?", default=True, console=gate.console):
        gate.accept_step()
    else:
        gate.reject_step("Rejected at console")
