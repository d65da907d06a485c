"""Pool of reusable, isolated git worktrees.

Layout on disk::

    <cache_root>/
        pool.json               # index of every pooled worktree
        .locks/                 # pool and per-key lock files
        <repo>-<hash>/<task-key>/  # one worktree per task key

The index is the arena: one record per ``(repo, task_key)``. It is rewritten
atomically after every mutation and re-read under the pool lock before each
one, so several processes can share a cache root. The repo fragment carries a
short hash of the repository path, so checkouts that share a directory name
never share worktrees.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agent_foundry.atomic_io import atomic_write_json, read_json
from agent_foundry.config import PoolConfig
from agent_foundry.errors import DiskSpaceError, GitOperationError, WorktreeExistsError
from agent_foundry.events import WorktreeCreated, WorktreeReleased
from agent_foundry.worktree.eviction import (
    EvictionPolicy,
    EvictionReport,
    directory_size,
    plan_eviction,
)
from agent_foundry.worktree.git import GitClient, sanitize_fragment
from agent_foundry.worktree.locking import PoolLocks
from agent_foundry.worktree.models import ReleaseOutcome, Worktree, WorktreeStatus

if TYPE_CHECKING:
    from agent_foundry.events import EventBus
    from agent_foundry.storage.repository import Repository

logger = logging.getLogger(__name__)

INDEX_NAME = "pool.json"
INDEX_VERSION = 1


class WorktreePool:
    """Create, reuse and evict worktrees keyed by ``(repo, task_key)``.

    Invariants:
        - at most one record, hence at most one active worktree, per key
        - a key's path is deterministic: ``cache_root/repo-hash/sanitized-key``
        - acquirers of one key are serialized; structural changes to the pool
          (index writes, ``git worktree add/remove``, eviction) are serialized
          pool-wide
        - eviction never removes an active worktree
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        git: GitClient | None = None,
        events: EventBus | None = None,
        repository: Repository | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or PoolConfig()
        self.cache_root = Path(self.config.cache_root)
        self.git = git or GitClient()
        self.events = events
        self.repository = repository
        self._clock = clock
        self._locks = PoolLocks(self.cache_root, timeout=self.config.lock_timeout)
        self._entries: dict[tuple[str, str], Worktree] = {}
        self._mutex = threading.Lock()
        self.cache_root.mkdir(parents=True, exist_ok=True)
        self._load()

    # -- naming -------------------------------------------------------------

    @staticmethod
    def repo_name(repo: Path | str) -> str:
        """Pool name of a repository: its directory name plus a path hash."""
        resolved = Path(repo).resolve()
        digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()[:8]
        return f"{sanitize_fragment(resolved.name)}-{digest}"

    def path_for(self, repo: Path | str, task_key: str) -> Path:
        return self.cache_root / self.repo_name(repo) / sanitize_fragment(task_key)

    def branch_for(self, task_key: str) -> str:
        return f"{self.config.branch_prefix}{sanitize_fragment(task_key)}"

    @property
    def index_path(self) -> Path:
        return self.cache_root / INDEX_NAME

    # -- index --------------------------------------------------------------

    def _load(self) -> None:
        data = read_json(self.index_path)
        entries: dict[tuple[str, str], Worktree] = {}
        if isinstance(data, dict):
            for raw in data.get("worktrees", []):
                try:
                    worktree = Worktree.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping unreadable pool index entry %r: %s", raw, e)
                    continue
                entries[worktree.key] = worktree
        with self._mutex:
            self._entries = entries

    def _save(self) -> None:
        with self._mutex:
            records = [w.to_dict() for w in sorted(self._entries.values(), key=lambda w: w.key)]
        atomic_write_json(self.index_path, {"version": INDEX_VERSION, "worktrees": records})

    def _persist(self, worktree: Worktree) -> None:
        if self.repository is not None:
            self.repository.upsert_worktree(worktree)

    def _publish(self, event: Any) -> None:
        if self.events is not None:
            self.events.publish(event)

    # -- queries ------------------------------------------------------------

    def get(self, repo: Path | str, task_key: str) -> Worktree | None:
        with self._mutex:
            return self._entries.get((self.repo_name(repo), task_key))

    def list_worktrees(self, repo: Path | str | None = None) -> list[Worktree]:
        """All entries, least recently used first."""
        with self._mutex:
            entries = list(self._entries.values())
        if repo is not None:
            name = self.repo_name(repo)
            entries = [w for w in entries if w.repo == name]
        return sorted(entries, key=lambda w: w.last_activity)

    def refresh(self) -> None:
        """Re-read the index written by this or another process."""
        with self._locks.pool():
            self._load()

    # -- acquire / release --------------------------------------------------

    def acquire(
        self,
        repo: Path | str,
        task_key: str,
        base_ref: str = "main",
        force: bool = False,
    ) -> Worktree:
        """Return a worktree for ``(repo, task_key)``, creating it if needed.

        An existing entry for the key is returned as-is (and marked active)
        unless ``force`` is set, in which case it is torn down, its branch
        deleted, and recreated. New worktrees branch from ``base_ref`` after
        fetching it. The fetch holds only the key lock, so acquirers of
        unrelated keys proceed in parallel.

        Raises:
            WorktreeExistsError: The target directory exists but is not a
                pooled worktree of this repository, and ``force`` was not
                given.
            GitOperationError: Fetching or adding the worktree failed.
            DiskSpaceError: The size budget cannot fit another worktree.
        """
        if not task_key or not task_key.strip():
            raise ValueError("task_key must be non-empty")
        repo_path = Path(repo).resolve()
        name = self.repo_name(repo_path)
        key = (name, task_key)
        path = self.path_for(repo_path, task_key)
        branch = self.branch_for(task_key)

        with self._locks.key(name, task_key):
            if not force:
                with self._locks.pool():
                    self._load()
                    reused = self._reuse_locked(key, repo_path, path, task_key)
                if reused is not None:
                    return reused

            base_sha = self.git.resolve_base(repo_path, base_ref, self.config.remote)

            with self._locks.pool():
                self._load()
                now = self._clock()
                with self._mutex:
                    existing = self._entries.get(key)
                if force:
                    self._teardown(repo_path, path, existing, branch=branch)
                elif path.exists():
                    raise WorktreeExistsError(path, task_key)

                if self.config.max_total_bytes is not None:
                    self._make_room(name)

                self.git.worktree_add(repo_path, path, branch, base_sha)
                worktree = Worktree(
                    repo=name,
                    repo_path=repo_path,
                    task_key=task_key,
                    path=path,
                    branch=branch,
                    base_commit=base_sha,
                    status=WorktreeStatus.ACTIVE,
                    created_at=now,
                    last_activity=now,
                )
                with self._mutex:
                    self._entries[key] = worktree
                self._save()
                self._persist(worktree)

        logger.info("Created worktree %s on %s from %s (%s)", path, branch, base_ref, base_sha[:12])
        self._publish(
            WorktreeCreated(
                repo=name,
                task_key=task_key,
                path=str(path),
                branch=branch,
                base_commit=base_sha,
            )
        )
        return worktree

    def _reuse_locked(
        self, key: tuple[str, str], repo_path: Path, path: Path, task_key: str
    ) -> Worktree | None:
        with self._mutex:
            existing = self._entries.get(key)
        if existing is None:
            return None
        if existing.repo_path.resolve() != repo_path:
            raise WorktreeExistsError(path, task_key)
        if not existing.path.is_dir():
            logger.warning("Pooled worktree %s is missing on disk; recreating", existing.path)
            self._drop(existing)
            self.git.worktree_prune(repo_path)
            self._save()
            return None
        previous = existing.status
        existing.status = WorktreeStatus.ACTIVE
        existing.last_activity = self._clock()
        self._save()
        self._persist(existing)
        if previous is WorktreeStatus.ACTIVE:
            logger.debug("Worktree %s already active; returning it", existing.path)
        else:
            logger.info("Reusing %s worktree %s", previous.value, existing.path)
        return existing

    def release(self, worktree: Worktree, outcome: ReleaseOutcome | str) -> Worktree:
        """Mark a worktree completed or abandoned. It stays on disk for reuse."""
        outcome = ReleaseOutcome(outcome)
        dirty = self._has_changes(worktree.path)
        if dirty and outcome is ReleaseOutcome.COMPLETED:
            logger.warning("Worktree %s released as completed with uncommitted changes", worktree.path)
        with self._locks.key(worktree.repo, worktree.task_key), self._locks.pool():
            self._load()
            with self._mutex:
                entry = self._entries.get(worktree.key)
            if entry is None:
                logger.warning("Releasing unknown worktree %s; re-registering it", worktree.path)
                entry = worktree
                with self._mutex:
                    self._entries[entry.key] = entry
            entry.status = outcome.status
            entry.last_activity = self._clock()
            self._save()
            self._persist(entry)
        worktree.status = entry.status
        worktree.last_activity = entry.last_activity
        logger.info("Released worktree %s as %s", entry.path, outcome.value)
        self._publish(
            WorktreeReleased(
                repo=entry.repo,
                task_key=entry.task_key,
                path=str(entry.path),
                outcome=outcome.value,
                dirty=dirty,
            )
        )
        return entry

    def _has_changes(self, path: Path) -> bool:
        if not path.is_dir():
            return False
        try:
            return self.git.is_dirty(path)
        except GitOperationError as e:
            logger.debug("Cannot inspect %s: %s", path, e)
            return False

    def touch(self, worktree: Worktree) -> None:
        """Record activity on a worktree (keeps it away from LRU eviction)."""
        with self._locks.pool():
            self._load()
            with self._mutex:
                entry = self._entries.get(worktree.key)
            if entry is None:
                return
            entry.last_activity = self._clock()
            worktree.last_activity = entry.last_activity
            self._save()

    # -- orphans and eviction -----------------------------------------------

    def mark_orphans(self, live_paths: Iterable[Path | str] = ()) -> list[Worktree]:
        """Mark worktrees with no live agent run as stale.

        Active entries whose path is not in ``live_paths`` (their agent is
        gone, e.g. after a crash) become stale. Directories under the cache
        root with no index entry are adopted as stale entries.

        Returns:
            The entries newly marked stale.
        """
        live = {Path(p).resolve() for p in live_paths}
        marked: list[Worktree] = []
        with self._locks.pool():
            self._load()
            with self._mutex:
                entries = list(self._entries.values())
            known = {w.path.resolve() for w in entries}
            for entry in entries:
                if entry.is_active and entry.path.is_dir() and entry.path.resolve() not in live:
                    entry.status = WorktreeStatus.STALE
                    marked.append(entry)
            for path in self._scan_disk():
                if path.resolve() in known or path.resolve() in live:
                    continue
                adopted = self._adopt(path)
                if adopted is not None:
                    with self._mutex:
                        self._entries.setdefault(adopted.key, adopted)
                    marked.append(adopted)
            if marked:
                self._save()
                for entry in marked:
                    self._persist(entry)
        for entry in marked:
            logger.info("Marked orphaned worktree %s as stale", entry.path)
        return marked

    def _scan_disk(self) -> list[Path]:
        found: list[Path] = []
        for repo_dir in sorted(self.cache_root.iterdir()):
            if not repo_dir.is_dir() or repo_dir.name.startswith("."):
                continue
            for child in sorted(repo_dir.iterdir()):
                if child.is_dir() and not child.name.startswith("."):
                    found.append(child)
        return found

    def _adopt(self, path: Path) -> Worktree | None:
        """Build a stale record for an untracked worktree directory."""
        git_file = path / ".git"
        if not git_file.is_file():
            logger.warning("Ignoring %s: not a git worktree", path)
            return None
        content = git_file.read_text(encoding="utf-8").strip()
        if not content.startswith("gitdir:"):
            return None
        # gitdir: <repo>/.git/worktrees/<name>
        gitdir = Path(content[len("gitdir:") :].strip())
        repo_git = gitdir.parent.parent
        repo_path = repo_git.parent if repo_git.name == ".git" else repo_git
        branch, head = "", ""
        try:
            listing = self.git.worktree_list(repo_path)
        except GitOperationError as e:
            logger.warning("Cannot list worktrees of %s: %s", repo_path, e)
            listing = []
        for registered in listing:
            if registered.path.resolve() == path.resolve():
                branch = registered.branch or ""
                head = registered.head or ""
                break
        else:
            logger.warning("Adopting %s, which %s does not list as a worktree", path, repo_path)
        mtime = path.stat().st_mtime
        return Worktree(
            repo=path.parent.name,
            repo_path=repo_path,
            task_key=path.name,
            path=path,
            branch=branch,
            base_commit=head,
            status=WorktreeStatus.STALE,
            created_at=mtime,
            last_activity=mtime,
        )

    def default_policy(self) -> EvictionPolicy:
        return EvictionPolicy(
            max_total_bytes=self.config.max_total_bytes,
            max_per_repo=self.config.max_per_repo,
            max_age_seconds=self.config.max_age_seconds,
        )

    def evict(
        self,
        policy: EvictionPolicy | None = None,
        dry_run: bool = False,
        required_bytes: int = 0,
    ) -> EvictionReport:
        """Remove non-active worktrees according to ``policy``.

        Raises:
            DiskSpaceError: If ``required_bytes`` cannot fit under the size
                budget even after evicting every candidate.
        """
        with self._locks.pool():
            self._load()
            return self._evict_locked(policy or self.default_policy(), dry_run, required_bytes)

    def cleanup_stale(self, dry_run: bool = False) -> list[Path]:
        """Remove every stale worktree; active ones are never touched."""
        return self.evict(EvictionPolicy.stale(), dry_run=dry_run).removed

    def ensure_capacity(self, required_bytes: int) -> EvictionReport:
        """Evict LRU entries until ``required_bytes`` more fits the size budget."""
        policy = EvictionPolicy(max_total_bytes=self.config.max_total_bytes)
        with self._locks.pool():
            self._load()
            return self._evict_locked(policy, False, required_bytes)

    def _make_room(self, repo: str) -> None:
        with self._mutex:
            same_repo = [w for w in self._entries.values() if w.repo == repo and w.path.is_dir()]
        estimate = 0
        if same_repo:
            estimate = sum(directory_size(w.path) for w in same_repo) // len(same_repo)
        self._evict_locked(EvictionPolicy(max_total_bytes=self.config.max_total_bytes), False, estimate)

    def _evict_locked(self, policy: EvictionPolicy, dry_run: bool, required_bytes: int) -> EvictionReport:
        with self._mutex:
            entries = list(self._entries.values())
        sizes = {str(w.path): directory_size(w.path) for w in entries}
        plan = plan_eviction(entries, policy, sizes, self._clock(), required_bytes)

        if required_bytes and not plan.satisfied and policy.max_total_bytes is not None:
            available = max(policy.max_total_bytes - plan.total_bytes_after, 0)
            raise DiskSpaceError(required_bytes, available, self.cache_root)

        report = EvictionReport(dry_run=dry_run)
        for entry in plan.remove:
            reason = plan.reasons.get(str(entry.path), "")
            if dry_run:
                report.removed.append(entry.path)
                report.freed_bytes += sizes.get(str(entry.path), 0)
                continue
            try:
                self._teardown(entry.repo_path, entry.path, entry)
            except (GitOperationError, OSError) as e:
                logger.warning("Failed to evict %s (%s): %s", entry.path, reason, e)
                report.failed[str(entry.path)] = str(e)
                continue
            logger.info("Evicted worktree %s (%s)", entry.path, reason)
            report.removed.append(entry.path)
            report.freed_bytes += sizes.get(str(entry.path), 0)
        if report.removed and not dry_run:
            self._save()
        return report

    def _drop(self, entry: Worktree) -> None:
        with self._mutex:
            self._entries.pop(entry.key, None)
        if self.repository is not None:
            self.repository.delete_worktree(entry.path)

    def _teardown(
        self, repo_path: Path, path: Path, entry: Worktree | None, branch: str | None = None
    ) -> None:
        """Remove a worktree from git, disk and the index; optionally its branch."""
        if repo_path.is_dir():
            if path.exists():
                self.git.worktree_remove(repo_path, path)
            else:
                self.git.worktree_prune(repo_path)
            if branch and not self.git.delete_branch(repo_path, branch):
                logger.debug("Branch %s was not present in %s", branch, repo_path)
        if path.exists():
            shutil.rmtree(path)
        if entry is not None:
            self._drop(entry)
