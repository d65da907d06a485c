"""Locking for the worktree pool.

Two lock kinds, both safe across threads (threading.Lock) and across
processes (fcntl advisory locks):

- one pool lock serializing structural mutations: index writes,
  ``git worktree add/remove``, eviction
- one lock per ``(repo, task_key)`` so that unrelated tasks acquire in
  parallel while a single key only ever has one acquirer

Lock files live under ``<cache_root>/.locks/``::

    .locks/pool.lock
    .locks/keys/<repo>--<task_key>.lock
"""

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from agent_foundry.errors import OrchestratorError
from agent_foundry.worktree.git import sanitize_fragment


class LockTimeoutError(OrchestratorError):
    """Raised when a pool lock cannot be acquired within the timeout."""


class FileLock:
    """Exclusive lock that is both thread-safe and process-safe.

    The thread lock is taken first so that threads of one process queue up
    in-process instead of all spinning on flock.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: int | None = None
        self._thread_lock = threading.Lock()

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: float | None = None) -> None:
        """Acquire the lock, polling flock until ``timeout`` expires.

        Raises:
            LockTimeoutError: If the lock is still held by someone else after
                ``timeout`` seconds.
        """
        start = time.monotonic()
        if not self._thread_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockTimeoutError(
                f"timed out after {timeout:.2f}s waiting for in-process holder",
                operation="lock",
                resource=str(self.lock_path),
            )
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    elapsed = time.monotonic() - start
                    if timeout is not None and elapsed >= timeout:
                        os.close(fd)
                        raise LockTimeoutError(
                            f"timed out after {timeout:.2f}s waiting for another process",
                            operation="lock",
                            resource=str(self.lock_path),
                            hint="check for a stuck agent-foundry process",
                        ) from None
                    time.sleep(0.01)
            self._fd = fd
        except BaseException:
            self._thread_lock.release()
            raise

    def release(self) -> None:
        if self._fd is None:
            raise RuntimeError(f"Lock not held: {self.lock_path}")
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
        finally:
            self._fd = None
            self._thread_lock.release()

    @contextmanager
    def held(self, timeout: float | None = None) -> Iterator[None]:
        self.acquire(timeout)
        try:
            yield
        finally:
            self.release()


class PoolLocks:
    """Pool-wide and per-key locks rooted at a cache directory."""

    LOCKS_DIR = ".locks"
    POOL_LOCK_NAME = "pool.lock"
    KEY_LOCKS_DIR = "keys"

    def __init__(self, cache_root: Path, timeout: float | None = 60.0) -> None:
        self.locks_dir = cache_root / self.LOCKS_DIR
        self.timeout = timeout
        self._pool_lock = FileLock(self.locks_dir / self.POOL_LOCK_NAME)
        self._key_locks: dict[str, FileLock] = {}
        self._key_locks_mutex = threading.Lock()

    @staticmethod
    def key_name(repo: str, task_key: str) -> str:
        return f"{sanitize_fragment(repo)}--{sanitize_fragment(task_key)}"

    def _key_lock(self, repo: str, task_key: str) -> FileLock:
        name = self.key_name(repo, task_key)
        with self._key_locks_mutex:
            lock = self._key_locks.get(name)
            if lock is None:
                lock = FileLock(self.locks_dir / self.KEY_LOCKS_DIR / f"{name}.lock")
                self._key_locks[name] = lock
            return lock

    @contextmanager
    def pool(self) -> Iterator[None]:
        """Serialize a structural mutation of the pool."""
        with self._pool_lock.held(self.timeout):
            yield

    @contextmanager
    def key(self, repo: str, task_key: str) -> Iterator[None]:
        """Serialize acquirers of a single ``(repo, task_key)``."""
        with self._key_lock(repo, task_key).held(self.timeout):
            yield
