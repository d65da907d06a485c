"""agent-foundry CLI: run coding agents over isolated worktrees.

Commands:
    run: Run a batch of work items in dependency order.
    tdd: Drive one task through the TDD cycle in its own worktree.
    deps: Show the dependency layers of a batch, or the cycle.
    worktrees: List, evict or clean up pooled worktrees.
    test: Run the test suite of a directory and report counts.
    resume: List agent runs that were interrupted.
    backends: Show which agent backends are installed.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import shlex
import signal
import sys
from collections.abc import Callable, Iterator, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

from agent_foundry import __version__
from agent_foundry.agent.backends import BACKENDS
from agent_foundry.agent.listeners import PrintListener
from agent_foundry.agent.runner import AgentProcessRunner
from agent_foundry.agent.types import AgentRun
from agent_foundry.agent.watchdog import HeartbeatWatchdog
from agent_foundry.config import OrchestratorConfig, OrchestratorConfigError, load_config
from agent_foundry.coordinator import Coordinator
from agent_foundry.deps.batch import BatchFileError, load_work_items
from agent_foundry.deps.resolver import DependencyResolver
from agent_foundry.errors import CycleError, OrchestratorError
from agent_foundry.events import (
    Escalated,
    Event,
    EventBus,
    PhaseChanged,
    WorkItemBlocked,
    WorkItemCompleted,
    WorkItemReady,
    WorktreeCreated,
    WorktreeReleased,
)
from agent_foundry.storage.repository import SqliteRepository, pid_alive
from agent_foundry.workflow.phases import TddPhase
from agent_foundry.workflow.resume import find_interrupted
from agent_foundry.workflow.tdd import TDDWorkflowEngine
from agent_foundry.workflow.test_runner import TestFramework, TestRunner
from agent_foundry.worktree.eviction import EvictionPolicy
from agent_foundry.worktree.models import ReleaseOutcome
from agent_foundry.worktree.pool import WorktreePool

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the agent-foundry CLI."""
    parser = argparse.ArgumentParser(
        prog="agent-foundry",
        description="Orchestrate coding agents over isolated git worktrees",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: agent-foundry.yaml)")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="More output (-vv for debug)")
    parser.add_argument("--json", action="store_true", help="Print a JSON report instead of text")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a batch of work items in dependency order")
    run_parser.add_argument("items", type=Path, help="YAML batch file")
    run_parser.add_argument("--mode", choices=["single", "tdd"], default=None)
    run_parser.add_argument("--max-concurrent", type=int, default=None)
    run_parser.add_argument("--repo", type=Path, default=None, help="Repository for items without one")

    tdd_parser = subparsers.add_parser("tdd", help="Drive one task through the TDD cycle")
    tdd_parser.add_argument("repo", type=Path)
    tdd_parser.add_argument("task_key")
    tdd_parser.add_argument("description")
    tdd_parser.add_argument("--base-ref", default=None)
    tdd_parser.add_argument("--max-iterations", type=int, default=None)
    tdd_parser.add_argument("--skip-spec", action="store_true")
    tdd_parser.add_argument("--skip-refactor", action="store_true")
    tdd_parser.add_argument("--review", action="store_true")
    tdd_parser.add_argument("--force", action="store_true", help="Recreate the worktree")

    deps_parser = subparsers.add_parser("deps", help="Show dependency layers of a batch")
    deps_parser.add_argument("items", type=Path, help="YAML batch file")

    wt_parser = subparsers.add_parser("worktrees", help="Manage pooled worktrees")
    wt_sub = wt_parser.add_subparsers(dest="worktrees_command", required=True)
    wt_list = wt_sub.add_parser("list", help="List pooled worktrees")
    wt_list.add_argument("--repo", default=None)
    wt_evict = wt_sub.add_parser("evict", help="Evict worktrees per the retention policy")
    wt_evict.add_argument("--max-bytes", type=int, default=None)
    wt_evict.add_argument("--max-per-repo", type=int, default=None)
    wt_evict.add_argument("--max-age-days", type=float, default=None)
    wt_evict.add_argument("--dry-run", action="store_true")
    wt_clean = wt_sub.add_parser("cleanup-stale", help="Mark orphans and remove stale worktrees")
    wt_clean.add_argument("--dry-run", action="store_true")

    test_parser = subparsers.add_parser("test", help="Run the test suite of a directory")
    test_parser.add_argument("directory", type=Path)
    test_parser.add_argument("--framework", choices=[f.value for f in TestFramework], default=None)
    test_parser.add_argument("--command", dest="test_command", default=None, help="Explicit test command")

    resume_parser = subparsers.add_parser("resume", help="List interrupted agent runs")
    resume_parser.add_argument("--work-item", default=None, help="Only runs of this work item")

    subparsers.add_parser("backends", help="Show which agent backends are installed")

    return parser


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose >= 1:
        level = logging.INFO
    if verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _log(msg: str) -> None:
    sys.stdout.write(msg + "\n")


def _event_printer(verbose: int) -> Callable[[Event], None]:
    def _print(event: Event) -> None:
        if isinstance(event, PhaseChanged):
            _log(f"[{event.work_item_id}] {event.previous or 'start'} -> {event.next} (iteration {event.iteration})")
        elif isinstance(event, Escalated):
            _log(f"[{event.work_item_id}] ESCALATED in {event.phase} after {event.iterations} iterations")
        elif isinstance(event, WorkItemReady):
            _log(f"[{event.work_item_id}] ready")
        elif isinstance(event, WorkItemBlocked):
            _log(f"[{event.work_item_id}] blocked by {', '.join(event.blocked_by)}")
        elif isinstance(event, WorkItemCompleted):
            _log(f"[{event.work_item_id}] {event.status} {event.detail}".rstrip())
        elif isinstance(event, (WorktreeCreated, WorktreeReleased)) and verbose:
            _log(f"[{event.task_key}] {event.kind}: {event.path}")

    return _print


@contextlib.contextmanager
def _interrupts(cancel: Callable[[], Any]) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into ``cancel()`` while the block runs."""

    def _handler(signum: int, frame: Any) -> None:
        sys.stderr.write(f"Received signal {signum}, cancelling...\n")
        cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _agent_echo(verbose: int) -> Callable[[AgentRun], PrintListener]:
    def _listener(run: AgentRun) -> PrintListener:
        return PrintListener(verbose=verbose >= 1, prefix=f"[{run.work_item_id or run.run_id}] ")

    return _listener


class _Context:
    """Components built from configuration for one CLI invocation."""

    def __init__(self, config: OrchestratorConfig, verbose: int, quiet_events: bool) -> None:
        self.config = config
        self.events = EventBus()
        if not quiet_events:
            self.events.subscribe(_event_printer(verbose))
        self.repository = SqliteRepository(config.storage.database)
        self.watchdog: HeartbeatWatchdog | None = None
        if config.agent.heartbeat_timeout is not None:
            self.watchdog = HeartbeatWatchdog(config.agent.heartbeat_timeout)
            self.watchdog.start()
        self.runner = AgentProcessRunner(
            config.agent,
            events=self.events,
            repository=self.repository,
            watchdog=self.watchdog,
            echo=None if quiet_events else _agent_echo(verbose),
        )
        self.pool = WorktreePool(config.pool, events=self.events, repository=self.repository)

    def close(self) -> None:
        if self.watchdog is not None:
            self.watchdog.stop()
        self.repository.close()


def cmd_run(ctx: _Context, items_path: Path, mode: str | None, repo: Path | None, as_json: bool) -> int:
    items = load_work_items(items_path)
    coordinator = Coordinator(
        DependencyResolver(strict_cross_repo=ctx.config.coordinator.strict_cross_repo),
        ctx.pool,
        ctx.runner,
        ctx.config,
        events=ctx.events,
        repository=ctx.repository,
    )
    with _interrupts(coordinator.cancel):
        report = coordinator.run(items, mode=mode, repo=repo)
    return _finish_run(report.to_dict(), report.success, report.cancelled, as_json)


def _finish_run(payload: dict[str, Any], success: bool, cancelled: bool, as_json: bool) -> int:
    if as_json:
        _emit(payload)
    else:
        _log("")
        _log(f"completed: {', '.join(payload['completed']) or '-'}")
        _log(f"failed:    {', '.join(payload['failed']) or '-'}")
        blocked = payload["blocked"]
        _log("blocked:   " + (", ".join(f"{k} (by {', '.join(v) or 'cancel'})" for k, v in blocked.items()) or "-"))
    if cancelled:
        return 130
    return 0 if success else 1


def cmd_tdd(ctx: _Context, args: argparse.Namespace) -> int:
    engine = TDDWorkflowEngine(ctx.runner, ctx.config.workflow, events=ctx.events, agent_config=ctx.config.agent)
    worktree = ctx.pool.acquire(
        args.repo,
        args.task_key,
        base_ref=args.base_ref or ctx.config.coordinator.base_ref,
        force=args.force,
    )
    _log(f"Worktree {worktree.path} on {worktree.branch} @ {worktree.base_commit[:12]}")
    try:
        with _interrupts(engine.cancel):
            report = engine.run(args.task_key, args.description, worktree.path)
    except BaseException:
        ctx.pool.release(worktree, ReleaseOutcome.ABANDONED)
        raise
    ctx.pool.release(worktree, ReleaseOutcome.COMPLETED if report.success else ReleaseOutcome.ABANDONED)

    if args.json:
        _emit(report.to_dict())
    else:
        _log(f"Outcome: {report.outcome.value}" + (f" ({report.reason})" if not report.success else ""))
        _log(f"Cost: ${report.total_cost_usd:.4f} over {len(report.agent_results)} agent run(s)")
    if report.outcome is TddPhase.ABANDONED:
        return 130
    return 0 if report.success else 1


def cmd_deps(items_path: Path, as_json: bool) -> int:
    items = load_work_items(items_path)
    resolver = DependencyResolver()
    try:
        graph = resolver.build_graph(items)
    except CycleError as e:
        if as_json:
            _emit({"cycle": list(e.path)})
        else:
            sys.stderr.write(f"Dependency cycle: {' -> '.join(e.path)}\n")
        return 1
    layers = graph.layers()
    external = sorted(n for n in graph.nodes if graph.is_external(n))
    if as_json:
        _emit({"layers": layers, "external": external})
        return 0
    for depth, layer in enumerate(layers):
        _log(f"layer {depth}: {', '.join(layer)}")
    if external:
        _log(f"external: {', '.join(external)}")
    return 0


def cmd_worktrees(ctx: _Context, args: argparse.Namespace) -> int:
    pool = ctx.pool
    if args.worktrees_command == "list":
        entries = pool.list_worktrees(args.repo)
        if args.json:
            _emit([w.to_dict() for w in entries])
        else:
            for w in entries:
                _log(f"{w.status.value:<10} {w.repo}/{w.task_key:<24} {w.branch:<32} {w.path}")
        return 0

    if args.worktrees_command == "evict":
        policy = pool.default_policy()
        overrides: dict[str, Any] = {}
        if args.max_bytes is not None:
            overrides["max_total_bytes"] = args.max_bytes
        if args.max_per_repo is not None:
            overrides["max_per_repo"] = args.max_per_repo
        if args.max_age_days is not None:
            overrides["max_age_seconds"] = args.max_age_days * 86400
        report = pool.evict(replace(policy, **overrides) if overrides else policy, dry_run=args.dry_run)
    else:
        live = {
            run.workdir
            for run in ctx.repository.list_agent_runs()
            if run.ended_at is None and run.pid is not None and pid_alive(run.pid)
        }
        marked = pool.mark_orphans(live_paths=live)
        if marked and not args.json:
            _log(f"Marked {len(marked)} orphaned worktree(s) stale")
        report = pool.evict(EvictionPolicy.stale(), dry_run=args.dry_run)

    if args.json:
        _emit(report.to_dict())
    else:
        verb = "Would remove" if report.dry_run else "Removed"
        for path in report.removed:
            _log(f"{verb} {path}")
        for path, error in report.failed.items():
            sys.stderr.write(f"Failed to remove {path}: {error}\n")
        _log(f"{verb} {len(report.removed)} worktree(s), {report.freed_bytes} bytes")
    return 1 if report.failed else 0


def cmd_test(directory: Path, framework: str | None, command: str | None, timeout: float, as_json: bool) -> int:
    runner = TestRunner(command=shlex.split(command) if command else None, framework=framework, timeout=timeout)
    result = runner.run(directory)
    if as_json:
        _emit(result.to_dict())
    else:
        _log(f"{result.framework or 'custom'}: {result.summary()} (exit {result.exit_code})")
    return 0 if result.failed == 0 else 1


def cmd_resume(ctx: _Context, work_item_id: str | None, as_json: bool) -> int:
    infos = find_interrupted(ctx.repository, work_item_id=work_item_id)
    if as_json:
        _emit([info.to_dict() for info in infos])
        return 0
    if not infos:
        _log("No interrupted agent runs.")
        return 0
    for info in infos:
        run = info.run
        item = f" work item {run.work_item_id}" if run.work_item_id else ""
        _log(f"{run.run_id} {run.agent_type.value:<10} pid {run.pid}{item} in {run.workdir}")
        if run.session_id:
            _log(f"    session {run.session_id}, {info.message_count} message(s) logged")
        if not info.worktree_exists:
            _log("    worktree is gone; the run cannot be resumed")
    return 0


def cmd_backends(config: OrchestratorConfig, as_json: bool) -> int:
    rows = []
    for name, backend in BACKENDS.items():
        configured = name == config.agent.backend
        executable = config.agent.executable if configured else backend.default_executable
        rows.append(
            {
                "name": name,
                "executable": executable,
                "configured": configured,
                "available": backend.is_available(executable),
            }
        )
    if as_json:
        _emit(rows)
    else:
        for row in rows:
            marker = "*" if row["configured"] else " "
            state = "available" if row["available"] else "not found"
            _log(f"{marker} {row['name']:<8} {row['executable']:<24} {state}")
    return 0 if any(row["configured"] and row["available"] for row in rows) else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the agent-foundry CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.command == "deps":
            return cmd_deps(args.items, args.json)

        config = load_config(args.config)
        if args.command == "test":
            return cmd_test(
                args.directory,
                args.framework,
                args.test_command,
                config.workflow.test_timeout,
                args.json,
            )

        if args.command == "backends":
            return cmd_backends(config, args.json)

        if args.command == "run" and args.max_concurrent is not None:
            config = replace(config, coordinator=replace(config.coordinator, max_concurrent=args.max_concurrent))
        if args.command == "tdd":
            workflow = config.workflow
            config = replace(
                config,
                workflow=replace(
                    workflow,
                    max_iterations=args.max_iterations or workflow.max_iterations,
                    skip_spec=args.skip_spec or workflow.skip_spec,
                    skip_refactor=args.skip_refactor or workflow.skip_refactor,
                    review=args.review or workflow.review,
                ),
            )
        ctx = _Context(config, args.verbose, quiet_events=args.json)
        try:
            if args.command == "run":
                return cmd_run(ctx, args.items, args.mode, args.repo, args.json)
            if args.command == "tdd":
                return cmd_tdd(ctx, args)
            if args.command == "worktrees":
                return cmd_worktrees(ctx, args)
            if args.command == "resume":
                return cmd_resume(ctx, args.work_item, args.json)
        finally:
            ctx.close()
    except (OrchestratorConfigError, BatchFileError) as e:
        logger.debug("Configuration failure", exc_info=True)
        sys.stderr.write(f"Configuration error: {e}\n")
        return 2
    except CycleError as e:
        sys.stderr.write(f"Dependency cycle: {' -> '.join(e.path)}\n")
        return 1
    except OrchestratorError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        sys.stderr.write(f"Error: {e}\n")
        return 2

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
