# SPDX-License-Identifier: MIT
"""Tests for the parallel coordinator.

Most tests use an in-memory worktree pool and scripted engines so that
scheduling (dependency order, concurrency limit, blocking, cancellation)
is checked without git. One end-to-end test runs real worktrees and a fake
agent executable.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from conftest import agent_transcript

from agent_foundry.agent.runner import AgentProcessRunner
from agent_foundry.agent.types import AgentType
from agent_foundry.config import AgentConfig, CoordinatorConfig, OrchestratorConfig, PoolConfig
from agent_foundry.coordinator import Coordinator
from agent_foundry.deps.graph import WorkItem, WorkItemStatus
from agent_foundry.deps.references import DependencyRef
from agent_foundry.deps.resolver import DependencyResolver, StaticOracle
from agent_foundry.errors import CycleError
from agent_foundry.events import EventBus, EventRecorder, WorkItemBlocked, WorkItemCompleted, WorkItemReady
from agent_foundry.storage.repository import SqliteRepository
from agent_foundry.workflow.phases import PhaseOutcome, TddPhase
from agent_foundry.workflow.state import PhaseRecord, WorkflowState
from agent_foundry.workflow.tdd import WorkflowReport
from agent_foundry.worktree.models import ReleaseOutcome, Worktree, WorktreeStatus
from agent_foundry.worktree.pool import WorktreePool

WAIT = 10.0


def _wait_for(predicate: Callable[[], bool], timeout: float = WAIT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _item(item_id: str, *deps: str, status: WorkItemStatus = WorkItemStatus.UNRESOLVED) -> WorkItem:
    refs = tuple(DependencyRef.local(int(d)) for d in deps)
    return WorkItem(id=item_id, description=f"Implement item {item_id}", dependencies=refs, status=status)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakePool:
    """Hands out plain directories instead of git worktrees."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.acquired: list[str] = []
        self.released: dict[str, ReleaseOutcome] = {}
        self.touched: list[str] = []
        self._lock = threading.Lock()

    def acquire(self, repo: Path | str, task_key: str, base_ref: str = "main", force: bool = False) -> Worktree:
        path = self.root / task_key
        path.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self.acquired.append(task_key)
        return Worktree(
            repo="repo",
            repo_path=Path(repo),
            task_key=task_key,
            path=path,
            branch=f"agent/{task_key}",
            base_commit="abc",
            status=WorktreeStatus.ACTIVE,
            created_at=0.0,
            last_activity=0.0,
        )

    def release(self, worktree: Worktree, outcome: ReleaseOutcome | str) -> Worktree:
        with self._lock:
            self.released[worktree.task_key] = ReleaseOutcome(outcome)
        return worktree

    def touch(self, worktree: Worktree) -> None:
        with self._lock:
            self.touched.append(worktree.task_key)


class EngineScript:
    """Shared state of the fake engines built by one factory."""

    def __init__(self, failures: set[str] = frozenset(), delay: float = 0.0, block: bool = False) -> None:
        self.failures = set(failures)
        self.delay = delay
        self.block = block
        self.started: list[str] = []
        self.workdirs: dict[str, Path] = {}
        self.active = 0
        self.max_active = 0
        self.release = threading.Event()
        self._lock = threading.Lock()

    def factory(self) -> FakeEngine:
        return FakeEngine(self)


class FakeEngine:
    def __init__(self, script: EngineScript) -> None:
        self.script = script
        self.cancelled = threading.Event()

    def run(
        self,
        work_item_id: str,
        description: str,
        workdir: Path | str,
        on_phase: Callable[[PhaseRecord], None] | None = None,
    ) -> WorkflowReport:
        script = self.script
        with script._lock:
            script.started.append(work_item_id)
            script.workdirs[work_item_id] = Path(workdir)
            script.active += 1
            script.max_active = max(script.max_active, script.active)
        try:
            if script.block:
                self.cancelled.wait(WAIT)
            elif script.delay:
                time.sleep(script.delay)
        finally:
            with script._lock:
                script.active -= 1

        if self.cancelled.is_set():
            outcome, reason = TddPhase.ABANDONED, "cancelled"
        elif work_item_id in script.failures:
            outcome, reason = TddPhase.ESCALATED, "Tests still failing"
        else:
            outcome, reason = TddPhase.COMPLETE, ""
        state = WorkflowState(work_item_id=work_item_id, description=description, workdir=Path(workdir), phase=outcome)
        if on_phase is not None:
            record = PhaseRecord(
                phase=TddPhase.IMPLEMENT,
                outcome=PhaseOutcome.SUCCEEDED,
                next=outcome,
                iteration=0,
                started_at=0.0,
                ended_at=0.0,
            )
            state.history.append(record)
            on_phase(record)
        return WorkflowReport(work_item_id=work_item_id, outcome=outcome, state=state, reason=reason)

    def cancel(self) -> bool:
        self.cancelled.set()
        return True


class FakeAgentHandle:
    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        self.cancelled = False

    def wait(self, timeout: float | None = None) -> FakeAgentHandle:
        return self

    def cancel(self) -> bool:
        return False


class FakeRunner:
    """Single-mode agent runner returning scripted exit codes."""

    def __init__(self, exit_codes: dict[str, int] | None = None) -> None:
        self.exit_codes = exit_codes or {}
        self.calls: list[dict[str, Any]] = []

    def spawn(self, prompt, workdir, agent_config=None, *, agent_type, work_item_id=None, listeners=()):
        self.calls.append({"prompt": prompt, "workdir": Path(workdir), "agent_type": agent_type})
        return FakeAgentHandle(self.exit_codes.get(work_item_id, 0))


@pytest.fixture
def pool(tmp_path: Path) -> FakePool:
    return FakePool(tmp_path / "worktrees")


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


def _coordinator(
    pool: FakePool,
    script: EngineScript | None = None,
    runner: Any = None,
    recorder: EventRecorder | None = None,
    repository: SqliteRepository | None = None,
    max_concurrent: int = 4,
) -> Coordinator:
    bus = EventBus()
    if recorder is not None:
        bus.subscribe(recorder)
    config = OrchestratorConfig(coordinator=CoordinatorConfig(max_concurrent=max_concurrent, poll_interval=0.01))
    return Coordinator(
        DependencyResolver(),
        pool,
        runner or FakeRunner(),
        config=config,
        events=bus,
        repository=repository,
        engine_factory=script.factory if script is not None else None,
    )


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    """Dependency order and the concurrency limit."""

    def test_runs_in_dependency_order(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript()
        items = [_item("3", "2"), _item("1"), _item("2", "1")]
        report = _coordinator(pool, script).run(items, repo=tmp_path)

        assert script.started == ["1", "2", "3"]
        assert sorted(report.completed) == ["1", "2", "3"]
        assert report.success
        assert report.blocked == {}
        assert all(outcome is ReleaseOutcome.COMPLETED for outcome in pool.released.values())
        assert script.workdirs["2"] == pool.root / "2"

    def test_tdd_phases_touch_the_worktree(self, pool: FakePool, tmp_path: Path) -> None:
        _coordinator(pool, EngineScript()).run([_item("1"), _item("2", "1")], repo=tmp_path)
        assert pool.touched == ["1", "2"]

    def test_respects_max_concurrent(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript(delay=0.05)
        items = [_item(str(i)) for i in range(1, 7)]
        report = _coordinator(pool, script, max_concurrent=2).run(items, repo=tmp_path)

        assert len(report.completed) == 6
        assert script.max_active <= 2
        assert len(pool.released) == 6

    def test_independent_items_run_in_parallel(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript(delay=0.2)
        _coordinator(pool, script, max_concurrent=3).run([_item("1"), _item("2"), _item("3")], repo=tmp_path)
        assert script.max_active >= 2

    def test_completed_items_are_skipped(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript()
        items = [_item("1", status=WorkItemStatus.COMPLETED), _item("2", "1")]
        report = _coordinator(pool, script).run(items, repo=tmp_path)

        assert script.started == ["2"]
        assert report.completed == ["2"]
        assert pool.acquired == ["2"]

    def test_events(self, pool: FakePool, tmp_path: Path, recorder: EventRecorder) -> None:
        _coordinator(pool, EngineScript(), recorder=recorder).run([_item("1"), _item("2", "1")], repo=tmp_path)

        assert [e.work_item_id for e in recorder.of_type(WorkItemReady)] == ["1", "2"]
        completed = recorder.of_type(WorkItemCompleted)
        assert [(e.work_item_id, e.status) for e in completed] == [("1", "completed"), ("2", "completed")]
        assert [(e.work_item_id, e.blocked_by) for e in recorder.of_type(WorkItemBlocked)] == [("2", ("1",))]

    def test_cycle(self, pool: FakePool, tmp_path: Path) -> None:
        with pytest.raises(CycleError):
            _coordinator(pool, EngineScript()).run([_item("1", "2"), _item("2", "1")], repo=tmp_path)
        assert pool.acquired == []

    def test_unknown_mode(self, pool: FakePool, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="mode"):
            _coordinator(pool, EngineScript()).run([_item("1")], mode="parallel", repo=tmp_path)


class TestBlocking:
    """Failures and unmet external dependencies."""

    def test_failed_item_blocks_dependents(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript(failures={"1"})
        items = [_item("1"), _item("2", "1"), _item("3")]
        report = _coordinator(pool, script).run(items, repo=tmp_path)

        assert report.failed == ["1"]
        assert report.completed == ["3"]
        assert report.blocked == {"2": ("1",)}
        assert not report.success
        assert "2" not in script.started
        assert pool.released["1"] is ReleaseOutcome.ABANDONED
        assert report.results["1"].detail == "escalated: Tests still failing"

    def test_transitively_blocked(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript(failures={"1"})
        report = _coordinator(pool, script).run([_item("1"), _item("2", "1"), _item("3", "2")], repo=tmp_path)
        assert report.blocked == {"2": ("1",), "3": ("1", "2")}

    def test_external_dependency_unmet(self, pool: FakePool, tmp_path: Path, recorder: EventRecorder) -> None:
        script = EngineScript()
        report = _coordinator(pool, script, recorder=recorder).run([_item("5", "99")], repo=tmp_path)

        assert script.started == []
        assert report.blocked == {"5": ("99",)}
        blocked = recorder.of_type(WorkItemBlocked)
        assert len(blocked) == 1
        assert blocked[0].blocked_by == ("99",)

    def test_external_dependency_from_oracle(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript()
        oracle = StaticOracle(completed={"99"})
        report = _coordinator(pool, script).run([_item("5", "99")], repo=tmp_path, oracle=oracle)

        assert report.completed == ["5"]
        # batch completions are not written back into the caller's oracle
        assert not oracle.is_completed("5")


# ---------------------------------------------------------------------------
# Single-agent mode
# ---------------------------------------------------------------------------


class TestSingleMode:
    """One agent per work item."""

    def test_success(self, pool: FakePool, tmp_path: Path) -> None:
        runner = FakeRunner()
        report = _coordinator(pool, runner=runner).run(
            [WorkItem(id="7", description="Fix the crash", title="Crash")], mode="single", repo=tmp_path
        )

        assert report.completed == ["7"]
        assert report.results["7"].report is None
        call = runner.calls[0]
        assert call["agent_type"] is AgentType.IMPLEMENT
        assert call["workdir"] == pool.root / "7"
        assert "Work item: 7 (Crash)" in call["prompt"]
        assert "Fix the crash" in call["prompt"]

    def test_agent_type_follows_files_then_wording(self, pool: FakePool, tmp_path: Path) -> None:
        runner = FakeRunner()
        items = [
            WorkItem(id="1", description="Implement the parser", files=("tests/test_parser.py",)),
            WorkItem(id="2", description="Review the parser changes"),
        ]
        _coordinator(pool, runner=runner, max_concurrent=1).run(items, mode="single", repo=tmp_path)

        assert [call["agent_type"] for call in runner.calls] == [AgentType.TEST, AgentType.REVIEW]

    def test_failure(self, pool: FakePool, tmp_path: Path) -> None:
        runner = FakeRunner(exit_codes={"1": 3})
        report = _coordinator(pool, runner=runner).run([_item("1"), _item("2", "1")], mode="single", repo=tmp_path)

        assert report.failed == ["1"]
        assert report.results["1"].detail == "agent exited with code 3"
        assert report.blocked == {"2": ("1",)}
        assert len(runner.calls) == 1


# ---------------------------------------------------------------------------
# Cancellation and persistence
# ---------------------------------------------------------------------------


class TestCancellation:
    """Cancelling a running batch."""

    def test_cancel_in_flight(self, pool: FakePool, tmp_path: Path) -> None:
        script = EngineScript(block=True)
        coordinator = _coordinator(pool, script)
        reports = []
        worker = threading.Thread(
            target=lambda: reports.append(coordinator.run([_item("1"), _item("2", "1")], repo=tmp_path))
        )
        worker.start()
        try:
            assert _wait_for(lambda: script.started == ["1"])
            assert coordinator.cancel() == 1
        finally:
            worker.join(WAIT)

        assert not worker.is_alive()
        report = reports[0]
        assert report.cancelled
        assert report.failed == ["1"]
        assert report.blocked == {"2": ("1",)}
        assert pool.released["1"] is ReleaseOutcome.ABANDONED


class TestPersistence:
    """Work item status written through the repository."""

    def test_statuses_recorded(self, pool: FakePool, tmp_path: Path) -> None:
        repository = SqliteRepository(tmp_path / "state.db")
        script = EngineScript(failures={"2"})
        items = [_item("1"), _item("2", "1"), _item("3", "2")]
        _coordinator(pool, script, repository=repository).run(items, repo=tmp_path)

        assert repository.get_work_item("1").status is WorkItemStatus.COMPLETED
        assert repository.get_work_item("2").status is WorkItemStatus.FAILED
        stored = repository.get_work_item("3")
        assert stored.status is WorkItemStatus.BLOCKED
        assert stored.dependency_keys == ["2"]


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


@pytest.mark.git
class TestEndToEnd:
    """Real worktrees and a fake agent executable."""

    def test_single_mode_batch(self, temp_git_repo: Path, fake_agent, tmp_path: Path) -> None:
        script = fake_agent(lines=agent_transcript())
        config = OrchestratorConfig(
            agent=AgentConfig(executable=str(script), terminate_grace=2.0),
            pool=PoolConfig(cache_root=tmp_path / "cache", lock_timeout=30),
            coordinator=CoordinatorConfig(max_concurrent=2, mode="single", poll_interval=0.01),
        )
        repository = SqliteRepository(tmp_path / "state.db")
        pool = WorktreePool(config.pool, repository=repository)
        runner = AgentProcessRunner(config.agent, repository=repository)
        coordinator = Coordinator(DependencyResolver(), pool, runner, config=config, repository=repository)

        report = coordinator.run([_item("1"), _item("2", "1")], repo=temp_git_repo)

        assert report.success
        assert sorted(report.completed) == ["1", "2"]
        for key in ("1", "2"):
            entry = pool.get(temp_git_repo, key)
            assert entry is not None
            assert entry.status is WorktreeStatus.COMPLETED
            assert (entry.path / "README.md").exists()
        assert {run.work_item_id for run in repository.list_agent_runs()} == {"1", "2"}
