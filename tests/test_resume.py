# SPDX-License-Identifier: MIT
"""Tests for finding interrupted agent runs."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_foundry.agent.types import AgentRun, AgentType
from agent_foundry.storage.repository import SqliteRepository
from agent_foundry.workflow.resume import find_interrupted, latest_interrupted


@pytest.fixture
def repository(tmp_path: Path) -> Iterator[SqliteRepository]:
    repo = SqliteRepository(tmp_path / "state.db")
    yield repo
    repo.close()


def _run(run_id: str, workdir: Path, started_at: float, **kwargs) -> AgentRun:
    return AgentRun(
        run_id=run_id,
        agent_type=AgentType.IMPLEMENT,
        prompt="do it",
        workdir=workdir,
        pid=kwargs.pop("pid", 999_999),
        started_at=started_at,
        **kwargs,
    )


def _dead(_pid: int) -> bool:
    return False


class TestFindInterrupted:
    """Interrupted runs with their worktree state."""

    def test_worktree_still_present(self, repository: SqliteRepository, tmp_path: Path) -> None:
        tree = tmp_path / "tree"
        tree.mkdir()
        repository.insert_agent_run(_run("r1", tree, 1.0, work_item_id="42", session_id="sess-1"))
        repository.append_conversation("r1", 0, "system", {"type": "system"})
        repository.append_conversation("r1", 1, "assistant", {"type": "assistant"})

        [info] = find_interrupted(repository, is_alive=_dead)

        assert info.run.run_id == "r1"
        assert info.message_count == 2
        assert info.worktree_exists
        assert info.can_resume
        data = info.to_dict()
        assert data["worktree_exists"] is True
        assert data["message_count"] == 2
        assert data["work_item_id"] == "42"

    def test_worktree_gone(self, repository: SqliteRepository, tmp_path: Path) -> None:
        repository.insert_agent_run(_run("r1", tmp_path / "removed", 1.0, session_id="sess-1"))

        [info] = find_interrupted(repository, is_alive=_dead)

        assert not info.worktree_exists
        assert not info.can_resume
        assert info.message_count == 0

    def test_no_session_cannot_resume(self, repository: SqliteRepository, tmp_path: Path) -> None:
        repository.insert_agent_run(_run("r1", tmp_path, 1.0))
        [info] = find_interrupted(repository, is_alive=_dead)
        assert info.worktree_exists
        assert not info.can_resume

    def test_live_and_finished_runs_excluded(self, repository: SqliteRepository, tmp_path: Path) -> None:
        repository.insert_agent_run(_run("live", tmp_path, 1.0))
        assert find_interrupted(repository, is_alive=lambda pid: True) == []

    def test_latest_for_work_item(self, repository: SqliteRepository, tmp_path: Path) -> None:
        repository.insert_agent_run(_run("old", tmp_path, 1.0, work_item_id="7"))
        repository.insert_agent_run(_run("new", tmp_path, 2.0, work_item_id="7"))
        repository.insert_agent_run(_run("other", tmp_path, 3.0, work_item_id="8"))

        latest = latest_interrupted(repository, "7", is_alive=_dead)

        assert latest is not None
        assert latest.run.run_id == "new"
        assert [i.run.run_id for i in find_interrupted(repository, work_item_id="8", is_alive=_dead)] == ["other"]
        assert latest_interrupted(repository, "9", is_alive=_dead) is None
