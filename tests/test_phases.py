# SPDX-License-Identifier: MIT
"""Tests for the TDD phase transition function."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_foundry.agent.types import AgentType
from agent_foundry.config import WorkflowConfig
from agent_foundry.errors import InvalidTransitionError
from agent_foundry.workflow.phases import PhaseOutcome, TddPhase, initial_phase, next_phase
from agent_foundry.workflow.state import WorkflowState

P = TddPhase
O = PhaseOutcome  # noqa: E741


def _state(phase: TddPhase = P.WRITE_SPEC, test_iterations: int = 0, implement_iterations: int = 0) -> WorkflowState:
    return WorkflowState(
        work_item_id="1",
        description="feature",
        workdir=Path("."),
        phase=phase,
        test_iterations=test_iterations,
        implement_iterations=implement_iterations,
    )


class TestNextPhase:
    """Forward path, loops and escalation."""

    @pytest.mark.parametrize(
        ("phase", "outcome", "expected"),
        [
            (P.WRITE_SPEC, O.SUCCEEDED, P.WRITE_TESTS),
            (P.WRITE_TESTS, O.SUCCEEDED, P.VERIFY_RED),
            (P.VERIFY_RED, O.TESTS_FAILED, P.IMPLEMENT),
            (P.VERIFY_RED, O.TESTS_PASSED, P.WRITE_TESTS),
            (P.IMPLEMENT, O.SUCCEEDED, P.VERIFY_GREEN),
            (P.VERIFY_GREEN, O.TESTS_PASSED, P.REFACTOR),
            (P.VERIFY_GREEN, O.TESTS_FAILED, P.IMPLEMENT),
            (P.REFACTOR, O.SUCCEEDED, P.COMPLETE),
            (P.IMPLEMENT, O.ERROR, P.FAILED),
            (P.VERIFY_GREEN, O.ERROR, P.FAILED),
            (P.WRITE_TESTS, O.CANCELLED, P.ABANDONED),
        ],
    )
    def test_default_options(self, phase: TddPhase, outcome: PhaseOutcome, expected: TddPhase) -> None:
        assert next_phase(phase, outcome, _state(phase), WorkflowConfig()) is expected

    def test_green_loop_escalates_at_bound(self) -> None:
        options = WorkflowConfig(max_iterations=3)
        assert next_phase(P.VERIFY_GREEN, O.TESTS_FAILED, _state(implement_iterations=1), options) is P.IMPLEMENT
        assert next_phase(P.VERIFY_GREEN, O.TESTS_FAILED, _state(implement_iterations=2), options) is P.ESCALATED

    def test_red_loop_escalates_at_bound(self) -> None:
        options = WorkflowConfig(max_iterations=2)
        assert next_phase(P.VERIFY_RED, O.TESTS_PASSED, _state(test_iterations=0), options) is P.WRITE_TESTS
        assert next_phase(P.VERIFY_RED, O.TESTS_PASSED, _state(test_iterations=1), options) is P.ESCALATED

    def test_loops_are_counted_separately(self) -> None:
        """Red-loop retries do not use up the green loop's budget."""
        options = WorkflowConfig(max_iterations=2)
        state = _state(test_iterations=5, implement_iterations=0)
        assert next_phase(P.VERIFY_GREEN, O.TESTS_FAILED, state, options) is P.IMPLEMENT

    def test_single_iteration_escalates_immediately(self) -> None:
        options = WorkflowConfig(max_iterations=1)
        assert next_phase(P.VERIFY_GREEN, O.TESTS_FAILED, _state(), options) is P.ESCALATED

    def test_skip_refactor(self) -> None:
        options = WorkflowConfig(skip_refactor=True)
        assert next_phase(P.VERIFY_GREEN, O.TESTS_PASSED, _state(), options) is P.COMPLETE

    def test_review_phase(self) -> None:
        options = WorkflowConfig(review=True, max_iterations=2)
        assert next_phase(P.REFACTOR, O.SUCCEEDED, _state(), options) is P.REVIEW
        assert next_phase(P.REVIEW, O.APPROVED, _state(), options) is P.COMPLETE
        assert next_phase(P.REVIEW, O.CHANGES_REQUESTED, _state(), options) is P.IMPLEMENT
        assert next_phase(P.REVIEW, O.CHANGES_REQUESTED, _state(implement_iterations=1), options) is P.ESCALATED

    def test_skip_refactor_with_review(self) -> None:
        options = WorkflowConfig(skip_refactor=True, review=True)
        assert next_phase(P.VERIFY_GREEN, O.TESTS_PASSED, _state(), options) is P.REVIEW

    def test_state_is_not_modified(self) -> None:
        state = _state(implement_iterations=1)
        next_phase(P.VERIFY_GREEN, O.TESTS_FAILED, state, WorkflowConfig())
        assert state.implement_iterations == 1
        assert state.phase is P.WRITE_SPEC

    @pytest.mark.parametrize("phase", [P.COMPLETE, P.ESCALATED, P.ABANDONED, P.FAILED])
    def test_terminal_phases_have_no_successor(self, phase: TddPhase) -> None:
        with pytest.raises(InvalidTransitionError, match="terminal"):
            next_phase(phase, O.SUCCEEDED, _state(), WorkflowConfig())

    @pytest.mark.parametrize(
        ("phase", "outcome"),
        [
            (P.WRITE_SPEC, O.TESTS_PASSED),
            (P.VERIFY_RED, O.SUCCEEDED),
            (P.IMPLEMENT, O.APPROVED),
        ],
    )
    def test_impossible_outcomes(self, phase: TddPhase, outcome: PhaseOutcome) -> None:
        with pytest.raises(InvalidTransitionError, match="no transition"):
            next_phase(phase, outcome, _state(), WorkflowConfig())


class TestPhaseProperties:
    """Static attributes of phases."""

    def test_initial_phase(self) -> None:
        assert initial_phase(WorkflowConfig()) is P.WRITE_SPEC
        assert initial_phase(WorkflowConfig(skip_spec=True)) is P.WRITE_TESTS

    def test_agent_types(self) -> None:
        assert P.WRITE_TESTS.agent_type is AgentType.TEST
        assert P.IMPLEMENT.agent_type is AgentType.IMPLEMENT
        assert P.REFACTOR.agent_type is AgentType.IMPLEMENT
        assert P.REVIEW.agent_type is AgentType.REVIEW
        with pytest.raises(ValueError):
            _ = P.VERIFY_RED.agent_type

    def test_classification(self) -> None:
        assert P.VERIFY_RED.is_verify_phase
        assert not P.VERIFY_RED.is_agent_phase
        assert P.ESCALATED.is_terminal
        assert not P.REVIEW.is_terminal

    def test_state_iteration_follows_current_loop(self) -> None:
        state = _state(P.VERIFY_RED, test_iterations=2, implement_iterations=1)
        assert state.iteration == 2
        state.phase = P.IMPLEMENT
        assert state.iteration == 1
