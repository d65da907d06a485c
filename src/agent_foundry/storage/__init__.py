"""Persistent history of runs, conversations, worktrees and work items."""

from agent_foundry.storage.repository import (
    ConversationEntry,
    Repository,
    SqliteRepository,
    pid_alive,
)

__all__ = ["ConversationEntry", "Repository", "SqliteRepository", "pid_alive"]
