"""Exception hierarchy for the orchestration engine.

Only environment and infrastructure failures are raised. Expected control
flow (failing tests, unmet dependencies, tests that pass too early) is
modeled as ordinary result values by the components that produce it.

Every fatal error carries the failing operation, the resource involved and,
where the fix is mechanical, a ``hint`` suggesting it.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class OrchestratorError(Exception):
    """Base exception for all orchestration failures.

    Attributes:
        operation: Short name of the operation that failed (e.g. "acquire").
        resource: Identifier of the resource involved (work item id,
            worktree path, cycle path, ...).
        hint: Suggested remediation, if one is mechanical.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        resource: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.operation = operation
        self.resource = resource
        self.hint = hint
        parts = []
        if operation:
            parts.append(f"{operation}: ")
        parts.append(message)
        if resource:
            parts.append(f" [{resource}]")
        if hint:
            parts.append(f" ({hint})")
        super().__init__("".join(parts))
        self.message = message


# =============================================================================
# Agent process
# =============================================================================


class SpawnError(OrchestratorError):
    """Raised when the agent executable cannot be launched.

    Fatal and never retried: it means the environment is misconfigured.
    """


class ProcessError(OrchestratorError):
    """Raised when an agent process exits with a non-zero code."""

    def __init__(self, exit_code: int, *, resource: str | None = None, stderr_tail: str = "") -> None:
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"agent exited with code {exit_code}"
        if stderr_tail:
            message += f": {stderr_tail.strip().splitlines()[-1]}"
        super().__init__(message, operation="agent", resource=resource)


class ParseError(OrchestratorError):
    """Raised (or reported) for a malformed line on the agent output stream.

    The stream parser never lets this abort a stream; it is dispatched to
    listeners as a record instead.
    """

    def __init__(self, message: str, *, line: str = "", line_number: int = 0) -> None:
        self.line = line
        self.line_number = line_number
        super().__init__(message, operation="parse", resource=f"line {line_number}")


# =============================================================================
# Worktrees
# =============================================================================


class GitOperationError(OrchestratorError):
    """Raised when a git command fails.

    Carries the full command, exit status and stderr so the operation can be
    retried by hand.
    """

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stderr: str = "",
        cwd: Path | str | None = None,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.cwd = str(cwd) if cwd is not None else None
        detail = stderr.strip() or "no output"
        super().__init__(
            f"`{' '.join(self.command)}` exited {returncode}: {detail}",
            operation="git",
            resource=self.cwd,
        )


class WorktreeExistsError(OrchestratorError):
    """Raised when a non-forced create collides with an existing worktree."""

    def __init__(self, path: Path | str, task_key: str) -> None:
        self.path = Path(path)
        self.task_key = task_key
        super().__init__(
            f"worktree for {task_key!r} already exists",
            operation="acquire",
            resource=str(path),
            hint="use force to recreate",
        )


class DiskSpaceError(OrchestratorError):
    """Raised when eviction cannot free enough room for a new allocation."""

    def __init__(self, required_bytes: int, available_bytes: int, cache_root: Path | str) -> None:
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"need {required_bytes} bytes but only {available_bytes} can be freed",
            operation="evict",
            resource=str(cache_root),
            hint="raise max_total_bytes or clean up active worktrees",
        )


# =============================================================================
# Dependencies
# =============================================================================


class CycleError(OrchestratorError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        path: The offending cycle, starting and ending on the same id.
    """

    def __init__(self, path: Sequence[str]) -> None:
        self.path = list(path)
        super().__init__(
            "dependency cycle detected",
            operation="build_graph",
            resource=" -> ".join(self.path),
            hint="remove one of the dependency links in the cycle",
        )


class MalformedReferenceError(OrchestratorError):
    """Raised when a dependency declaration contains an unparseable reference."""

    def __init__(self, token: str, text: str = "") -> None:
        self.token = token
        self.text = text
        super().__init__(
            f"malformed dependency reference {token!r}",
            operation="parse_dependencies",
            hint="use '#N' or 'owner/repo#N'",
        )


# =============================================================================
# Workflow
# =============================================================================


class TestRunnerError(OrchestratorError):
    """Raised when the test command itself could not be executed.

    Distinct from failing tests, which are a normal ``TestResult``.
    """

    __test__ = False


class InvalidTransitionError(OrchestratorError):
    """Raised when the TDD state machine is asked for an illegal transition."""


class EscalationError(OrchestratorError):
    """Raised by callers that demand success from an escalated workflow."""

    def __init__(self, work_item_id: str, reason: str) -> None:
        self.work_item_id = work_item_id
        self.reason = reason
        super().__init__(
            reason,
            operation="tdd",
            resource=work_item_id,
            hint="human intervention required",
        )


# =============================================================================
# Storage
# =============================================================================


class StorageError(OrchestratorError):
    """Base exception for persistence failures."""


class RecordNotFoundError(StorageError):
    """Raised when a requested record does not exist."""
