"""Find agent runs that were interrupted and whether they can be picked up.

A run is interrupted when it never recorded an end and its process is gone
(the orchestrator crashed or was killed). It can be resumed only while its
worktree is still on disk and the agent reported a session id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_foundry.agent.types import AgentRun
from agent_foundry.storage.repository import SqliteRepository, pid_alive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResumeInfo:
    """An interrupted run and what is left of it."""

    run: AgentRun
    message_count: int

    @property
    def worktree_path(self) -> Path:
        return self.run.workdir

    @property
    def worktree_exists(self) -> bool:
        return self.run.workdir.is_dir()

    @property
    def can_resume(self) -> bool:
        return self.worktree_exists and self.run.session_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.run.to_dict(),
            "message_count": self.message_count,
            "worktree_exists": self.worktree_exists,
            "can_resume": self.can_resume,
        }


def find_interrupted(
    repository: SqliteRepository,
    work_item_id: str | None = None,
    is_alive: Callable[[int], bool] = pid_alive,
) -> list[ResumeInfo]:
    """Interrupted runs, oldest first, optionally for one work item only."""
    infos = []
    for run in repository.find_interrupted_runs(is_alive=is_alive):
        if work_item_id is not None and run.work_item_id != work_item_id:
            continue
        info = ResumeInfo(run=run, message_count=repository.count_conversation(run.run_id))
        if not info.worktree_exists:
            logger.debug("Worktree of interrupted run %s is gone: %s", run.run_id, run.workdir)
        infos.append(info)
    return infos


def latest_interrupted(
    repository: SqliteRepository,
    work_item_id: str,
    is_alive: Callable[[int], bool] = pid_alive,
) -> ResumeInfo | None:
    """The most recent interrupted run of ``work_item_id``, if any."""
    infos = find_interrupted(repository, work_item_id=work_item_id, is_alive=is_alive)
    return infos[-1] if infos else None
