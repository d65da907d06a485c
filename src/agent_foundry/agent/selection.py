"""Pick an agent type for a task from its wording or the files it touches."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from agent_foundry.agent.types import AgentType

TEST_FILE_SUFFIXES = ("_test.py", "_test.rs", "_test.go", ".test.ts", ".test.js", "_spec.rb")
EXPLICIT_TEST_PHRASES = ("write test", "run test", "add test")


@dataclass(frozen=True)
class TaskHints:
    """Keywords scored per agent type. Matching is by substring."""

    implement: tuple[str, ...] = (
        "implement",
        "add",
        "create",
        "build",
        "fix",
        "refactor",
        "update",
        "modify",
        "change",
        "feature",
        "bug",
        "code",
    )
    test: tuple[str, ...] = (
        "test",
        "verify",
        "validate",
        "check",
        "assert",
        "spec",
        "coverage",
        "unittest",
        "integration",
    )
    review: tuple[str, ...] = (
        "review",
        "feedback",
        "critique",
        "evaluate",
        "assess",
        "approve",
        "comment",
        "pr",
        "pull request",
    )
    coordinator: tuple[str, ...] = (
        "coordinate",
        "orchestrate",
        "manage",
        "plan",
        "breakdown",
        "delegate",
        "multi",
        "phase",
        "workflow",
    )


def _score(text: str, keywords: Iterable[str]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def select_agent_type(task: str, hints: TaskHints | None = None) -> AgentType:
    """Agent type whose keywords best match ``task``.

    "write/run/add test" always means a test agent and any mention of
    "review" a review agent. Otherwise the highest keyword score wins, ties
    going to coordinator, then review, then test. No match at all means
    implement.
    """
    hints = hints or TaskHints()
    text = task.lower()
    if any(phrase in text for phrase in EXPLICIT_TEST_PHRASES):
        return AgentType.TEST
    if "review" in text:
        return AgentType.REVIEW

    scores = [
        (_score(text, hints.coordinator), AgentType.COORDINATOR),
        (_score(text, hints.review), AgentType.REVIEW),
        (_score(text, hints.test), AgentType.TEST),
        (_score(text, hints.implement), AgentType.IMPLEMENT),
    ]
    best = max(score for score, _ in scores)
    if best == 0:
        return AgentType.IMPLEMENT
    return next(agent_type for score, agent_type in scores if score == best)


def is_test_file(path: str) -> bool:
    lower = path.lower()
    return "test" in lower or "spec" in lower or lower.endswith(TEST_FILE_SUFFIXES)


def infer_from_files(files: Iterable[str]) -> AgentType | None:
    """TEST if every file is a test file, IMPLEMENT if none is, else None."""
    kinds = {is_test_file(f) for f in files}
    if kinds == {True}:
        return AgentType.TEST
    if kinds == {False}:
        return AgentType.IMPLEMENT
    return None


def suggest_agent_type(task: str, files: Iterable[str] = ()) -> AgentType:
    """File patterns first, then the task wording."""
    return infer_from_files(files) or select_agent_type(task)
