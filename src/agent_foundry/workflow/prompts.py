"""Prompts for each agent-driven TDD phase."""

from __future__ import annotations

from agent_foundry.workflow.phases import TddPhase
from agent_foundry.workflow.state import WorkflowState

MAX_FEEDBACK_CHARS = 6000

_INSTRUCTIONS: dict[TddPhase, list[str]] = {
    TddPhase.WRITE_SPEC: [
        "Write a short behavioral specification for the feature below.",
        "Describe inputs, outputs and edge cases as concrete examples.",
        "Save it as a markdown file next to the code it concerns.",
        "Do not write tests or implementation code yet.",
    ],
    TddPhase.WRITE_TESTS: [
        "Write failing tests that describe the behavior below.",
        "The tests must fail because the behavior is not implemented yet.",
        "Test the expected behavior, not implementation details.",
        "Do not implement the feature.",
    ],
    TddPhase.IMPLEMENT: [
        "The tests for the behavior below are failing.",
        "Write the MINIMAL code needed to make them pass.",
        "Do not add extra features or optimizations.",
        "Do not modify the tests.",
    ],
    TddPhase.REFACTOR: [
        "The tests for the behavior below now pass.",
        "Improve the code without changing its behavior:",
        "- Remove duplication",
        "- Improve naming",
        "- Simplify complex logic",
        "All tests must still pass when you are done.",
    ],
    TddPhase.REVIEW: [
        "Review the changes made in this working tree for the task below.",
        "Do not modify any files.",
        "",
        "Report your review in exactly this format:",
        "VERDICT: APPROVE | REQUEST_CHANGES | COMMENT",
        "BLOCKING:",
        "- issues that must be fixed before merging",
        "IMPORTANT:",
        "- issues that should be fixed but do not block",
        "SUGGESTIONS:",
        "- optional improvements",
        "POSITIVE:",
        "- good patterns observed",
    ],
}


def _clip(text: str, limit: int = MAX_FEEDBACK_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...\n" + text[-limit:]


def build_phase_prompt(phase: TddPhase, state: WorkflowState) -> str:
    """Build the prompt for an agent phase.

    Raises:
        ValueError: If ``phase`` does not run an agent.
    """
    try:
        instructions = _INSTRUCTIONS[phase]
    except KeyError:
        raise ValueError(f"no prompt for phase {phase.value}") from None

    prompt_parts = [
        f"# TDD PHASE: {phase.value.replace('_', ' ').upper()}",
        "",
        f"Work item: {state.work_item_id}",
        "",
        "---",
        "",
        state.description.strip(),
        "",
        "---",
        "",
        "## Instructions",
        "",
        *instructions,
    ]

    if state.feedback:
        prompt_parts.extend([
            "",
            "## Feedback from the previous attempt",
            "",
            _clip(state.feedback),
        ])

    prompt_parts.extend([
        "",
        "Do not run git commit; the orchestrator manages the branch.",
        "",
    ])
    return "\n".join(prompt_parts)


def build_task_prompt(work_item_id: str, description: str, title: str = "") -> str:
    """Prompt for a single implement agent handling a whole work item."""
    prompt_parts = [
        "# TASK",
        "",
        f"Work item: {work_item_id}" + (f" ({title})" if title else ""),
        "",
        "---",
        "",
        description.strip(),
        "",
        "---",
        "",
        "## Instructions",
        "",
        "- Implement the work item in this working tree.",
        "- Add or update tests for the behavior you change.",
        "- Make sure the existing test suite still passes.",
        "- Do not run git commit; the orchestrator manages the branch.",
        "",
    ]
    return "\n".join(prompt_parts)
