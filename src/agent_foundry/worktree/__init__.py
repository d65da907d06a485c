"""Pooled git worktrees: isolated, reusable, crash-safe workspaces."""

from agent_foundry.worktree.eviction import EvictionPolicy, EvictionReport, plan_eviction
from agent_foundry.worktree.git import GitClient, sanitize_fragment
from agent_foundry.worktree.locking import LockTimeoutError, PoolLocks
from agent_foundry.worktree.models import ReleaseOutcome, Worktree, WorktreeStatus
from agent_foundry.worktree.pool import WorktreePool

__all__ = [
    "EvictionPolicy",
    "EvictionReport",
    "GitClient",
    "LockTimeoutError",
    "PoolLocks",
    "ReleaseOutcome",
    "Worktree",
    "WorktreePool",
    "WorktreeStatus",
    "plan_eviction",
    "sanitize_fragment",
]
