"""Drive one work item through the TDD cycle.

The engine owns no processes or worktrees itself: it asks the agent runner
for one agent per agent phase and the test runner for one run per verify
phase, and feeds each outcome into :func:`next_phase`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from agent_foundry.config import AgentConfig, WorkflowConfig
from agent_foundry.errors import EscalationError, SpawnError, TestRunnerError
from agent_foundry.events import Escalated, EventBus, PhaseChanged
from agent_foundry.workflow.phases import PhaseOutcome, TddPhase, initial_phase, next_phase
from agent_foundry.workflow.prompts import build_phase_prompt
from agent_foundry.workflow.review import ReviewFeedbackExtractor, ReviewResult
from agent_foundry.workflow.state import PhaseRecord, WorkflowState
from agent_foundry.workflow.test_runner import TestResult, TestRunner

if TYPE_CHECKING:
    from agent_foundry.agent.runner import AgentHandle, AgentResult
    from agent_foundry.agent.stream import StreamListener

logger = logging.getLogger(__name__)


class AgentSpawner(Protocol):
    def spawn(
        self,
        prompt: str,
        workdir: Path | str,
        agent_config: AgentConfig | None = None,
        *,
        agent_type: Any = ...,
        work_item_id: str | None = None,
        listeners: Iterable[StreamListener] = (),
    ) -> AgentHandle: ...


class TestExecutor(Protocol):
    def run(self, workdir: Path | str) -> TestResult: ...


@dataclass
class WorkflowReport:
    """Everything one engine run produced."""

    work_item_id: str
    outcome: TddPhase
    state: WorkflowState
    test_results: list[TestResult] = field(default_factory=list)
    agent_results: list[AgentResult] = field(default_factory=list)
    reviews: list[ReviewResult] = field(default_factory=list)
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.outcome is TddPhase.COMPLETE

    @property
    def history(self) -> list[PhaseRecord]:
        return self.state.history

    @property
    def failed_phase(self) -> TddPhase | None:
        """Phase that ended the run when it did not complete."""
        if self.success or not self.history:
            return None
        return self.history[-1].phase

    @property
    def total_cost_usd(self) -> float:
        return sum(r.cost.cost_usd or 0.0 for r in self.agent_results)

    def raise_for_escalation(self) -> None:
        """Raise ``EscalationError`` if the run escalated to a human."""
        if self.outcome is TddPhase.ESCALATED:
            raise EscalationError(self.work_item_id, self.reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "state": self.state.to_dict(),
            "test_results": [r.to_dict() for r in self.test_results],
            "agent_runs": [r.run.to_dict() for r in self.agent_results],
            "reviews": [r.to_dict() for r in self.reviews],
            "total_cost_usd": self.total_cost_usd,
        }


class TDDWorkflowEngine:
    """Run the TDD state machine for one work item at a time.

    Args:
        runner: Spawns agent processes (an ``AgentProcessRunner``).
        config: Loop bound and skippable phases.
        test_runner: Runs the test suite; built from ``config`` when None.
        events: Bus receiving ``PhaseChanged`` and ``Escalated`` events.
        agent_config: Agent settings passed through to every spawn.

    The engine is not reentrant: a second concurrent :meth:`run` raises
    ``RuntimeError``. Use one engine per concurrent work item.
    """

    def __init__(
        self,
        runner: AgentSpawner,
        config: WorkflowConfig | None = None,
        test_runner: TestExecutor | None = None,
        events: EventBus | None = None,
        agent_config: AgentConfig | None = None,
    ) -> None:
        self.runner = runner
        self.config = config or WorkflowConfig()
        self.test_runner = test_runner or TestRunner(
            command=self.config.test_command, timeout=self.config.test_timeout
        )
        self.events = events
        self.agent_config = agent_config
        self._running = threading.Lock()
        self._cancelled = threading.Event()
        self._handle_lock = threading.Lock()
        self._current: AgentHandle | None = None

    def _max_steps(self) -> int:
        # every loop pass is at most four phases, plus the two leading ones
        return 4 * (2 * self.config.max_iterations + 1) + 2

    def run(
        self,
        work_item_id: str,
        description: str,
        workdir: Path | str,
        on_phase: Callable[[PhaseRecord], None] | None = None,
    ) -> WorkflowReport:
        """Drive ``work_item_id`` to a terminal phase and report.

        ``on_phase`` is called with each finished phase record.

        Raises:
            RuntimeError: If this engine is already running.
        """
        if not self._running.acquire(blocking=False):
            raise RuntimeError("TDD engine is already running; use one engine per work item")
        try:
            self._cancelled.clear()
            return self._drive(str(work_item_id), description, Path(workdir), on_phase)
        finally:
            with self._handle_lock:
                self._current = None
            self._running.release()

    def cancel(self) -> bool:
        """Stop the run; the running agent, if any, is terminated.

        Returns:
            True if an agent process was signalled.
        """
        self._cancelled.set()
        with self._handle_lock:
            handle = self._current
        if handle is None:
            return False
        return handle.cancel()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def _drive(
        self,
        work_item_id: str,
        description: str,
        workdir: Path,
        on_phase: Callable[[PhaseRecord], None] | None,
    ) -> WorkflowReport:
        state = WorkflowState(
            work_item_id=work_item_id,
            description=description,
            workdir=workdir,
            phase=initial_phase(self.config),
        )
        report = WorkflowReport(work_item_id=work_item_id, outcome=state.phase, state=state)
        logger.info("TDD run for %s starting at %s in %s", work_item_id, state.phase.value, workdir)
        self._publish(PhaseChanged(work_item_id=work_item_id, previous=None, next=state.phase.value, iteration=0))

        for _step in range(self._max_steps()):
            if state.phase.is_terminal:
                break
            phase = state.phase
            started = time.time()
            if self._cancelled.is_set():
                outcome, detail = PhaseOutcome.CANCELLED, "cancelled"
            elif phase.is_verify_phase:
                outcome, detail = self._verify(phase, state, report)
            else:
                outcome, detail = self._run_agent(phase, state, report)
            self._advance(state, phase, outcome, detail, started, report)
            if on_phase is not None:
                on_phase(state.history[-1])
        else:
            if not state.phase.is_terminal:
                self._advance(
                    state, state.phase, PhaseOutcome.ERROR, "step limit reached", time.time(), report
                )
                if on_phase is not None:
                    on_phase(state.history[-1])

        state.ended_at = time.time()
        report.outcome = state.phase
        logger.info("TDD run for %s ended: %s %s", work_item_id, state.phase.value, report.reason)
        return report

    def _advance(
        self,
        state: WorkflowState,
        phase: TddPhase,
        outcome: PhaseOutcome,
        detail: str,
        started: float,
        report: WorkflowReport,
    ) -> None:
        nxt = next_phase(phase, outcome, state, self.config)

        if phase is TddPhase.VERIFY_RED and outcome is PhaseOutcome.TESTS_PASSED:
            state.test_iterations += 1
        elif (phase is TddPhase.VERIFY_GREEN and outcome is PhaseOutcome.TESTS_FAILED) or (
            phase is TddPhase.REVIEW and outcome is PhaseOutcome.CHANGES_REQUESTED
        ):
            state.implement_iterations += 1

        state.history.append(
            PhaseRecord(
                phase=phase,
                outcome=outcome,
                next=nxt,
                iteration=state.iteration,
                started_at=started,
                ended_at=time.time(),
                detail=detail,
            )
        )
        state.feedback = detail if nxt.is_agent_phase else ""
        state.phase = nxt
        if nxt.is_terminal:
            report.reason = detail

        logger.info("%s: %s -> %s (%s)", state.work_item_id, phase.value, nxt.value, outcome.value)
        self._publish(
            PhaseChanged(
                work_item_id=state.work_item_id,
                previous=phase.value,
                next=nxt.value,
                iteration=state.iteration,
            )
        )
        if nxt is TddPhase.ESCALATED:
            iterations = state.test_iterations if phase is TddPhase.VERIFY_RED else state.implement_iterations
            logger.warning("%s escalated after %d iterations: %s", state.work_item_id, iterations, detail)
            self._publish(
                Escalated(
                    work_item_id=state.work_item_id,
                    phase=phase.value,
                    reason=detail,
                    iterations=iterations,
                )
            )

    def _run_agent(
        self, phase: TddPhase, state: WorkflowState, report: WorkflowReport
    ) -> tuple[PhaseOutcome, str]:
        prompt = build_phase_prompt(phase, state)
        extractor = ReviewFeedbackExtractor() if phase is TddPhase.REVIEW else None
        try:
            handle = self.runner.spawn(
                prompt,
                state.workdir,
                self.agent_config,
                agent_type=phase.agent_type,
                work_item_id=state.work_item_id,
                listeners=[extractor] if extractor is not None else (),
            )
        except SpawnError as e:
            logger.error("%s: could not start %s agent: %s", state.work_item_id, phase.value, e)
            return PhaseOutcome.ERROR, str(e)

        with self._handle_lock:
            self._current = handle
        if self._cancelled.is_set():
            handle.cancel()
        try:
            result = handle.wait()
        finally:
            with self._handle_lock:
                self._current = None
        report.agent_results.append(result)

        if result.cancelled:
            return PhaseOutcome.CANCELLED, f"{phase.value} agent cancelled"
        if result.exit_code != 0:
            detail = f"{phase.value} agent exited with code {result.exit_code}"
            if result.stderr_tail:
                detail += f": {result.stderr_tail.strip().splitlines()[-1]}"
            return PhaseOutcome.ERROR, detail

        if extractor is not None:
            review = extractor.result()
            report.reviews.append(review)
            if review.needs_changes:
                return PhaseOutcome.CHANGES_REQUESTED, review.feedback()
            return PhaseOutcome.APPROVED, review.feedback()
        return PhaseOutcome.SUCCEEDED, ""

    def _verify(
        self, phase: TddPhase, state: WorkflowState, report: WorkflowReport
    ) -> tuple[PhaseOutcome, str]:
        try:
            result = self.test_runner.run(state.workdir)
        except TestRunnerError as e:
            logger.error("%s: test run failed to execute: %s", state.work_item_id, e)
            return PhaseOutcome.ERROR, str(e)
        report.test_results.append(result)

        if phase is TddPhase.VERIFY_RED:
            if result.is_red:
                return PhaseOutcome.TESTS_FAILED, f"Failing tests ({result.summary()}):\n{result.output_tail()}"
            if result.no_tests:
                return PhaseOutcome.TESTS_PASSED, "No tests were found. Write tests that exercise the behavior."
            return (
                PhaseOutcome.TESTS_PASSED,
                f"The tests pass ({result.summary()}) before any implementation. "
                "Write tests that fail until the behavior exists.",
            )

        if result.is_green:
            return PhaseOutcome.TESTS_PASSED, f"All tests pass ({result.summary()})."
        return PhaseOutcome.TESTS_FAILED, f"Tests still failing ({result.summary()}):\n{result.output_tail()}"

    def _publish(self, event: PhaseChanged | Escalated) -> None:
        if self.events is not None:
            self.events.publish(event)
