"""Run a batch of work items in parallel, respecting their dependencies.

Each ready work item gets its own worktree and either one implement agent
(``single`` mode) or a full TDD engine run (``tdd`` mode). The coordinator
is the only component that knows about the concurrency limit.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from agent_foundry.agent.selection import suggest_agent_type
from agent_foundry.config import OrchestratorConfig
from agent_foundry.deps.graph import DependencyGraph, WorkItem, WorkItemStatus
from agent_foundry.deps.resolver import CompletionOracle, DependencyResolver, StaticOracle
from agent_foundry.events import EventBus, WorkItemBlocked, WorkItemCompleted, WorkItemReady
from agent_foundry.workflow.prompts import build_task_prompt
from agent_foundry.workflow.tdd import TDDWorkflowEngine, WorkflowReport
from agent_foundry.worktree.models import ReleaseOutcome, Worktree

if TYPE_CHECKING:
    from agent_foundry.agent.runner import AgentProcessRunner
    from agent_foundry.storage.repository import Repository
    from agent_foundry.worktree.pool import WorktreePool

logger = logging.getLogger(__name__)

MODES = ("single", "tdd")


class BatchOracle:
    """Completion state of the batch, backed by an optional outside oracle."""

    def __init__(self, fallback: CompletionOracle | None = None) -> None:
        self.local = StaticOracle()
        self.fallback = fallback

    def is_completed(self, key: str) -> bool:
        if self.local.is_completed(key):
            return True
        return self.fallback is not None and self.fallback.is_completed(key)

    def exists(self, key: str) -> bool:
        if self.local.exists(key):
            return True
        return self.fallback is not None and self.fallback.exists(key)


class Cancellable(Protocol):
    def cancel(self) -> bool: ...


EngineFactory = Callable[[], TDDWorkflowEngine]


@dataclass
class ItemResult:
    """Final status of one work item in a coordinator run."""

    work_item_id: str
    status: WorkItemStatus
    detail: str = ""
    worktree: Path | None = None
    report: WorkflowReport | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "status": self.status.value,
            "detail": self.detail,
            "worktree": str(self.worktree) if self.worktree else None,
            "outcome": self.report.outcome.value if self.report else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class CoordinatorReport:
    """Outcome of a batch.

    ``blocked`` maps items that never started to what they were waiting on.
    """

    mode: str
    results: dict[str, ItemResult] = field(default_factory=dict)
    blocked: dict[str, tuple[str, ...]] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def completed(self) -> list[str]:
        return [k for k, r in self.results.items() if r.status is WorkItemStatus.COMPLETED]

    @property
    def failed(self) -> list[str]:
        return [k for k, r in self.results.items() if r.status is WorkItemStatus.FAILED]

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "cancelled": self.cancelled,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": {k: list(v) for k, v in self.blocked.items()},
            "results": {k: r.to_dict() for k, r in self.results.items()},
        }


class Coordinator:
    """Schedule work items onto worktrees and agents.

    Args:
        resolver: Dependency readiness rules.
        pool: Worktree pool handing out one worktree per work item.
        runner: Agent process runner.
        config: Full configuration; ``coordinator``, ``workflow`` and
            ``agent`` sections are used.
        events: Bus for ready/blocked/completed events.
        repository: Optional storage for work item status.
        engine_factory: Builds one TDD engine per item; defaults to an
            engine over ``runner``.
    """

    def __init__(
        self,
        resolver: DependencyResolver,
        pool: WorktreePool,
        runner: AgentProcessRunner,
        config: OrchestratorConfig | None = None,
        events: EventBus | None = None,
        repository: Repository | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.resolver = resolver
        self.pool = pool
        self.runner = runner
        self.config = config or OrchestratorConfig()
        self.events = events
        self.repository = repository
        self.engine_factory = engine_factory or self._default_engine
        self._cancelled = threading.Event()
        self._active_lock = threading.Lock()
        self._active: dict[str, Cancellable] = {}

    def _default_engine(self) -> TDDWorkflowEngine:
        return TDDWorkflowEngine(
            self.runner,
            self.config.workflow,
            events=self.events,
            agent_config=self.config.agent,
        )

    def cancel(self) -> int:
        """Stop scheduling and cancel every in-flight item.

        Returns:
            Number of in-flight items signalled.
        """
        self._cancelled.set()
        with self._active_lock:
            active = list(self._active.items())
        for item_id, target in active:
            logger.warning("Cancelling work item %s", item_id)
            target.cancel()
        return len(active)

    def run(
        self,
        items: Iterable[WorkItem],
        mode: str | None = None,
        repo: Path | str | None = None,
        oracle: CompletionOracle | None = None,
    ) -> CoordinatorReport:
        """Process ``items`` until nothing is running and nothing is ready.

        Args:
            items: The batch. Items already marked completed count as done.
            mode: ``single`` or ``tdd``; defaults to the configured mode.
            repo: Repository for items without their own ``repo``; defaults
                to the current directory.
            oracle: Completion state of items outside the batch. It is only
                read; batch completions are tracked separately.

        Raises:
            CycleError: If the batch dependencies are cyclic.
            ValueError: For an unknown mode.
        """
        mode = mode or self.config.coordinator.mode
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        default_repo = Path(repo) if repo is not None else Path.cwd()
        self._cancelled.clear()

        graph = self.resolver.build_graph(items)
        completion = BatchOracle(oracle)
        for item_id, item in graph.items.items():
            completion.local.mark_existing(item_id)
            if item.status is WorkItemStatus.COMPLETED:
                completion.local.mark_completed(item_id)
            self._persist(item)

        report = CoordinatorReport(mode=mode)
        limit = self.config.coordinator.max_concurrent
        poll = self.config.coordinator.poll_interval
        running: dict[str, concurrent.futures.Future[ItemResult]] = {}
        announced_blocked: dict[str, tuple[str, ...]] = {}
        logger.info("Coordinating %d work item(s) in %s mode, max %d concurrent", len(graph), mode, limit)

        with concurrent.futures.ThreadPoolExecutor(max_workers=limit, thread_name_prefix="agent-foundry") as executor:
            while True:
                if not self._cancelled.is_set():
                    self._announce_blocked(graph, completion, running, announced_blocked)
                    ready = self.resolver.ready_frontier(graph, completion, exclude=running)
                    for item in ready[: max(limit - len(running), 0)]:
                        item.status = WorkItemStatus.IN_PROGRESS
                        self._persist(item)
                        self._publish(WorkItemReady(work_item_id=item.id))
                        logger.info("Starting work item %s", item.id)
                        item_repo = Path(item.repo) if item.repo else default_repo
                        running[item.id] = executor.submit(self._process, item, item_repo, mode)

                if not running:
                    break

                done, _ = concurrent.futures.wait(
                    running.values(), timeout=poll, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for item_id, future in list(running.items()):
                    if future not in done:
                        continue
                    del running[item_id]
                    item = graph.items[item_id]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.exception("Work item %s raised", item_id)
                        result = ItemResult(work_item_id=item_id, status=WorkItemStatus.FAILED, detail=str(e))
                    self._finish(item, result, completion, report)

        report.cancelled = self._cancelled.is_set()
        for item_id in graph.topological_order():
            if item_id in report.results:
                continue
            item = graph.items[item_id]
            if item.status is WorkItemStatus.COMPLETED:
                continue
            unmet = self.resolver.blocked_by(item_id, graph, completion).unmet
            report.blocked[item_id] = unmet
            if unmet:
                item.status = WorkItemStatus.BLOCKED
                self._persist(item)

        logger.info(
            "Coordinator finished: %d completed, %d failed, %d blocked",
            len(report.completed),
            len(report.failed),
            len(report.blocked),
        )
        return report

    def _announce_blocked(
        self,
        graph: DependencyGraph,
        oracle: CompletionOracle,
        running: dict[str, Any],
        announced: dict[str, tuple[str, ...]],
    ) -> None:
        for item_id in graph.topological_order():
            item = graph.items[item_id]
            if item_id in running or item.status.is_terminal or item.status is WorkItemStatus.IN_PROGRESS:
                continue
            unmet = self.resolver.blocked_by(item_id, graph, oracle).unmet
            if not unmet:
                announced.pop(item_id, None)
                continue
            if announced.get(item_id) != unmet:
                announced[item_id] = unmet
                item.status = WorkItemStatus.BLOCKED
                self._persist(item)
                self._publish(WorkItemBlocked(work_item_id=item_id, blocked_by=unmet))

    def _process(self, item: WorkItem, repo: Path, mode: str) -> ItemResult:
        started = time.monotonic()
        worktree = self.pool.acquire(repo, item.id, base_ref=self.config.coordinator.base_ref)
        try:
            if mode == "single":
                success, detail, report = self._run_single(item, worktree)
            else:
                success, detail, report = self._run_tdd(item, worktree)
        except BaseException:
            self.pool.release(worktree, ReleaseOutcome.ABANDONED)
            raise
        finally:
            with self._active_lock:
                self._active.pop(item.id, None)

        self.pool.release(worktree, ReleaseOutcome.COMPLETED if success else ReleaseOutcome.ABANDONED)
        return ItemResult(
            work_item_id=item.id,
            status=WorkItemStatus.COMPLETED if success else WorkItemStatus.FAILED,
            detail=detail,
            worktree=worktree.path,
            report=report,
            duration_seconds=time.monotonic() - started,
        )

    def _run_single(self, item: WorkItem, worktree: Worktree) -> tuple[bool, str, None]:
        handle = self.runner.spawn(
            build_task_prompt(item.id, item.description, item.title),
            worktree.path,
            self.config.agent,
            agent_type=suggest_agent_type(item.description or item.title, item.files),
            work_item_id=item.id,
        )
        with self._active_lock:
            self._active[item.id] = handle
        if self._cancelled.is_set():
            handle.cancel()
        result = handle.wait()
        if result.cancelled:
            return False, "cancelled", None
        if result.exit_code != 0:
            return False, f"agent exited with code {result.exit_code}", None
        return True, "", None

    def _run_tdd(self, item: WorkItem, worktree: Worktree) -> tuple[bool, str, WorkflowReport]:
        engine = self.engine_factory()
        with self._active_lock:
            self._active[item.id] = engine
        if self._cancelled.is_set():
            engine.cancel()
        report = engine.run(
            item.id,
            item.description or item.title,
            worktree.path,
            on_phase=lambda _record: self.pool.touch(worktree),
        )
        detail = report.outcome.value if report.success else f"{report.outcome.value}: {report.reason}"
        return report.success, detail, report

    def _finish(
        self,
        item: WorkItem,
        result: ItemResult,
        completion: BatchOracle,
        report: CoordinatorReport,
    ) -> None:
        item.status = result.status
        report.results[item.id] = result
        if result.status is WorkItemStatus.COMPLETED:
            completion.local.mark_completed(item.id)
        self._persist(item)
        if result.status is WorkItemStatus.COMPLETED:
            logger.info("Work item %s completed", item.id)
        else:
            logger.warning("Work item %s failed: %s", item.id, result.detail)
        self._publish(WorkItemCompleted(work_item_id=item.id, status=result.status.value, detail=result.detail))

    def _persist(self, item: WorkItem) -> None:
        if self.repository is not None:
            self.repository.upsert_work_item(item)

    def _publish(self, event: Any) -> None:
        if self.events is not None:
            self.events.publish(event)
