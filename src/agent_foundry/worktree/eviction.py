"""Eviction policies for the worktree cache.

Planning is a pure function over pool entries so that it can be inspected
(dry run) before anything is deleted. The rules, applied in order:

1. ``stale_only``: remove every ``stale`` entry and nothing else
2. age: remove non-active entries idle longer than ``max_age_seconds``
3. count: keep at most ``max_per_repo`` entries per repository, removing the
   least recently used non-active ones first
4. size: remove least recently used non-active entries until the cache
   (plus any pending allocation) fits ``max_total_bytes``

Active entries are never planned for removal.
"""

from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_foundry.worktree.models import Worktree, WorktreeStatus


@dataclass(frozen=True)
class EvictionPolicy:
    """Limits enforced by :meth:`WorktreePool.evict`.

    Attributes:
        max_total_bytes: Total cache size budget. None disables the size rule.
        max_per_repo: Maximum entries per repository. None disables the rule.
        max_age_seconds: Idle time after which non-active entries expire.
        stale_only: Only remove entries marked stale.
    """

    max_total_bytes: int | None = None
    max_per_repo: int | None = None
    max_age_seconds: float | None = None
    stale_only: bool = False

    @classmethod
    def stale(cls) -> EvictionPolicy:
        return cls(stale_only=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_total_bytes": self.max_total_bytes,
            "max_per_repo": self.max_per_repo,
            "max_age_seconds": self.max_age_seconds,
            "stale_only": self.stale_only,
        }


@dataclass
class EvictionPlan:
    """Entries selected for removal and why."""

    remove: list[Worktree] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)
    total_bytes_before: int = 0
    freed_bytes: int = 0
    satisfied: bool = True

    @property
    def total_bytes_after(self) -> int:
        return self.total_bytes_before - self.freed_bytes


@dataclass
class EvictionReport:
    """Result of executing an eviction plan."""

    removed: list[Path] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    freed_bytes: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": [str(p) for p in self.removed],
            "failed": dict(self.failed),
            "freed_bytes": self.freed_bytes,
            "dry_run": self.dry_run,
        }


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files under ``path`` (symlinks skipped)."""
    total = 0
    stack = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_symlink():
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.is_file(follow_symlinks=False):
                            total += entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            continue
    return total


def plan_eviction(
    entries: list[Worktree],
    policy: EvictionPolicy,
    sizes: dict[str, int],
    now: float,
    required_bytes: int = 0,
) -> EvictionPlan:
    """Decide which entries to remove.

    Args:
        entries: Every pool entry.
        policy: Limits to enforce.
        sizes: Size in bytes per entry, keyed by ``str(path)``.
        now: Current time (epoch seconds).
        required_bytes: Size of a pending allocation that must also fit.

    Returns:
        The plan. ``satisfied`` is False when the size budget cannot be met
        even after removing every candidate.
    """
    plan = EvictionPlan(total_bytes_before=sum(sizes.get(str(e.path), 0) for e in entries))
    chosen: set[str] = set()

    def take(entry: Worktree, reason: str) -> None:
        key = str(entry.path)
        if key in chosen:
            return
        chosen.add(key)
        plan.remove.append(entry)
        plan.reasons[key] = reason
        plan.freed_bytes += sizes.get(key, 0)

    if policy.stale_only:
        for entry in sorted(entries, key=lambda e: e.last_activity):
            if entry.status is WorktreeStatus.STALE:
                take(entry, "stale")
        return plan

    candidates = sorted((e for e in entries if not e.is_active), key=lambda e: e.last_activity)

    if policy.max_age_seconds is not None:
        for entry in candidates:
            if now - entry.last_activity > policy.max_age_seconds:
                take(entry, "expired")

    if policy.max_per_repo is not None:
        by_repo: dict[str, list[Worktree]] = defaultdict(list)
        for entry in entries:
            if str(entry.path) not in chosen:
                by_repo[entry.repo].append(entry)
        for repo, repo_entries in by_repo.items():
            excess = len(repo_entries) - policy.max_per_repo
            for entry in candidates:
                if excess <= 0:
                    break
                if entry.repo == repo and str(entry.path) not in chosen:
                    take(entry, "over_repo_limit")
                    excess -= 1

    if policy.max_total_bytes is not None:
        for entry in candidates:
            if plan.total_bytes_after + required_bytes <= policy.max_total_bytes:
                break
            take(entry, "over_size_budget")
        plan.satisfied = plan.total_bytes_after + required_bytes <= policy.max_total_bytes

    return plan
