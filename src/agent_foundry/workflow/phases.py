"""TDD phases and the pure transition function between them.

Forward path::

    WRITE_SPEC -> WRITE_TESTS -> VERIFY_RED -> IMPLEMENT -> VERIFY_GREEN -> REFACTOR -> COMPLETE

Backward edges: ``VERIFY_RED -> WRITE_TESTS`` when the new tests do not fail,
``VERIFY_GREEN -> IMPLEMENT`` when tests still fail. Both loops are bounded
by ``max_iterations`` and end in ``ESCALATED``. An optional ``REVIEW`` phase
sits between refactoring and completion.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from agent_foundry.agent.types import AgentType
from agent_foundry.errors import InvalidTransitionError

if TYPE_CHECKING:
    from agent_foundry.config import WorkflowConfig
    from agent_foundry.workflow.state import WorkflowState


class TddPhase(str, Enum):
    WRITE_SPEC = "write_spec"
    WRITE_TESTS = "write_tests"
    VERIFY_RED = "verify_red"
    IMPLEMENT = "implement"
    VERIFY_GREEN = "verify_green"
    REFACTOR = "refactor"
    REVIEW = "review"
    COMPLETE = "complete"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_agent_phase(self) -> bool:
        return self in _AGENT_TYPES

    @property
    def is_verify_phase(self) -> bool:
        return self in (TddPhase.VERIFY_RED, TddPhase.VERIFY_GREEN)

    @property
    def agent_type(self) -> AgentType:
        try:
            return _AGENT_TYPES[self]
        except KeyError:
            raise ValueError(f"{self.value} does not run an agent") from None


_TERMINAL = frozenset({TddPhase.COMPLETE, TddPhase.ESCALATED, TddPhase.ABANDONED, TddPhase.FAILED})

_AGENT_TYPES = {
    TddPhase.WRITE_SPEC: AgentType.TEST,
    TddPhase.WRITE_TESTS: AgentType.TEST,
    TddPhase.IMPLEMENT: AgentType.IMPLEMENT,
    TddPhase.REFACTOR: AgentType.IMPLEMENT,
    TddPhase.REVIEW: AgentType.REVIEW,
}


class PhaseOutcome(str, Enum):
    """What happened while executing a phase."""

    SUCCEEDED = "succeeded"
    ERROR = "error"
    CANCELLED = "cancelled"
    TESTS_FAILED = "tests_failed"
    TESTS_PASSED = "tests_passed"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


def initial_phase(options: WorkflowConfig) -> TddPhase:
    return TddPhase.WRITE_TESTS if options.skip_spec else TddPhase.WRITE_SPEC


def _after_green(options: WorkflowConfig) -> TddPhase:
    if not options.skip_refactor:
        return TddPhase.REFACTOR
    return TddPhase.REVIEW if options.review else TddPhase.COMPLETE


def _retry_or_escalate(retry: TddPhase, attempts: int, options: WorkflowConfig) -> TddPhase:
    return retry if attempts < options.max_iterations else TddPhase.ESCALATED


def next_phase(
    phase: TddPhase,
    outcome: PhaseOutcome,
    state: WorkflowState,
    options: WorkflowConfig,
) -> TddPhase:
    """Return the phase that follows ``phase`` given ``outcome``.

    Pure: neither ``state`` nor ``options`` is modified. Loop counters in
    ``state`` are the values *before* this outcome is counted.

    Raises:
        InvalidTransitionError: If ``phase`` is terminal or ``outcome`` cannot
            occur in ``phase``.
    """
    if phase.is_terminal:
        raise InvalidTransitionError(
            f"{phase.value} is terminal", operation="transition", resource=outcome.value
        )
    if outcome is PhaseOutcome.CANCELLED:
        return TddPhase.ABANDONED
    if outcome is PhaseOutcome.ERROR:
        return TddPhase.FAILED

    if phase is TddPhase.WRITE_SPEC and outcome is PhaseOutcome.SUCCEEDED:
        return TddPhase.WRITE_TESTS
    if phase is TddPhase.WRITE_TESTS and outcome is PhaseOutcome.SUCCEEDED:
        return TddPhase.VERIFY_RED
    if phase is TddPhase.VERIFY_RED:
        if outcome is PhaseOutcome.TESTS_FAILED:
            return TddPhase.IMPLEMENT
        if outcome is PhaseOutcome.TESTS_PASSED:
            return _retry_or_escalate(TddPhase.WRITE_TESTS, state.test_iterations + 1, options)
    if phase is TddPhase.IMPLEMENT and outcome is PhaseOutcome.SUCCEEDED:
        return TddPhase.VERIFY_GREEN
    if phase is TddPhase.VERIFY_GREEN:
        if outcome is PhaseOutcome.TESTS_PASSED:
            return _after_green(options)
        if outcome is PhaseOutcome.TESTS_FAILED:
            return _retry_or_escalate(TddPhase.IMPLEMENT, state.implement_iterations + 1, options)
    if phase is TddPhase.REFACTOR and outcome is PhaseOutcome.SUCCEEDED:
        return TddPhase.REVIEW if options.review else TddPhase.COMPLETE
    if phase is TddPhase.REVIEW:
        if outcome is PhaseOutcome.APPROVED:
            return TddPhase.COMPLETE
        if outcome is PhaseOutcome.CHANGES_REQUESTED:
            return _retry_or_escalate(TddPhase.IMPLEMENT, state.implement_iterations + 1, options)

    raise InvalidTransitionError(
        f"no transition from {phase.value} on {outcome.value}",
        operation="transition",
        resource=phase.value,
    )
