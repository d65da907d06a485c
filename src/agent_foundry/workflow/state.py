"""Mutable progress record of one TDD run."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_foundry.workflow.phases import PhaseOutcome, TddPhase


@dataclass(frozen=True)
class PhaseRecord:
    """One executed phase and where it led."""

    phase: TddPhase
    outcome: PhaseOutcome
    next: TddPhase
    iteration: int
    started_at: float
    ended_at: float
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "next": self.next.value,
            "iteration": self.iteration,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "detail": self.detail,
        }


@dataclass
class WorkflowState:
    """Where a TDD run is and how often each loop has gone round.

    Attributes:
        work_item_id: Work item the run belongs to.
        description: Feature description handed to every agent prompt.
        workdir: Worktree the agents and tests run in.
        phase: Current phase.
        test_iterations: Times VERIFY_RED sent the run back to WRITE_TESTS.
        implement_iterations: Times VERIFY_GREEN or REVIEW sent the run back
            to IMPLEMENT.
        feedback: Note carried into the next agent prompt (failure output,
            review findings). Cleared once consumed.
    """

    work_item_id: str
    description: str
    workdir: Path
    phase: TddPhase
    test_iterations: int = 0
    implement_iterations: int = 0
    feedback: str = ""
    history: list[PhaseRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    @property
    def iteration(self) -> int:
        """Counter of the loop the current phase belongs to."""
        if self.phase in (TddPhase.WRITE_SPEC, TddPhase.WRITE_TESTS, TddPhase.VERIFY_RED):
            return self.test_iterations
        return self.implement_iterations

    @property
    def is_finished(self) -> bool:
        return self.phase.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "workdir": str(self.workdir),
            "phase": self.phase.value,
            "test_iterations": self.test_iterations,
            "implement_iterations": self.implement_iterations,
            "history": [record.to_dict() for record in self.history],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }
