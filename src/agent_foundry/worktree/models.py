"""Worktree records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


class WorktreeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    STALE = "stale"


class ReleaseOutcome(str, Enum):
    """How the work in a worktree ended."""

    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def status(self) -> WorktreeStatus:
        return WorktreeStatus(self.value)


@dataclass
class Worktree:
    """A pooled git worktree.

    Attributes:
        repo: Repository name (directory under the cache root).
        repo_path: Path of the main checkout the worktree belongs to.
        task_key: Caller-chosen key, typically derived from a work item id.
        path: Worktree directory.
        branch: Branch checked out in the worktree.
        base_commit: SHA the branch was created from.
        status: Lifecycle status.
        created_at: Creation time (epoch seconds).
        last_activity: Last acquire/touch/release time (epoch seconds).
    """

    repo: str
    repo_path: Path
    task_key: str
    path: Path
    branch: str
    base_commit: str
    status: WorktreeStatus
    created_at: float
    last_activity: float

    @property
    def key(self) -> tuple[str, str]:
        return (self.repo, self.task_key)

    @property
    def is_active(self) -> bool:
        return self.status is WorktreeStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "repo_path": str(self.repo_path),
            "task_key": self.task_key,
            "path": str(self.path),
            "branch": self.branch,
            "base_commit": self.base_commit,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Worktree:
        return cls(
            repo=data["repo"],
            repo_path=Path(data["repo_path"]),
            task_key=data["task_key"],
            path=Path(data["path"]),
            branch=data["branch"],
            base_commit=data.get("base_commit", ""),
            status=WorktreeStatus(data.get("status", WorktreeStatus.STALE.value)),
            created_at=float(data.get("created_at", 0.0)),
            last_activity=float(data.get("last_activity", 0.0)),
        )
