"""SQLite persistence for agent runs, conversation logs, worktrees and work items.

Tables:
    - agent_runs: One row per spawned agent process
    - conversation_logs: Every raw stream message of a run, in order
    - worktrees: Mirror of the worktree pool index
    - work_items: Work items and their resolution status

The database is history, not coordination: components keep working from
their own in-memory state and only write through here.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from agent_foundry.agent.types import AgentRun, AgentType, CostSummary
from agent_foundry.deps.graph import WorkItem, WorkItemStatus
from agent_foundry.deps.references import parse_reference
from agent_foundry.errors import RecordNotFoundError, StorageError
from agent_foundry.worktree.models import Worktree

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""

_CREATE_AGENT_RUNS_TABLE = """
CREATE TABLE IF NOT EXISTS agent_runs (
    run_id TEXT PRIMARY KEY,
    agent_type TEXT NOT NULL,
    prompt TEXT NOT NULL,
    workdir TEXT NOT NULL,
    pid INTEGER,
    started_at REAL NOT NULL,
    ended_at REAL,
    exit_code INTEGER,
    cancelled INTEGER NOT NULL DEFAULT 0,
    work_item_id TEXT,
    session_id TEXT,
    cost TEXT
);
"""

_CREATE_CONVERSATION_LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS conversation_logs (
    run_id TEXT NOT NULL REFERENCES agent_runs (run_id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    message_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    recorded_at REAL NOT NULL,
    PRIMARY KEY (run_id, seq)
);
"""

_CREATE_WORKTREES_TABLE = """
CREATE TABLE IF NOT EXISTS worktrees (
    path TEXT PRIMARY KEY,
    repo TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    task_key TEXT NOT NULL,
    branch TEXT NOT NULL,
    base_commit TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at REAL NOT NULL,
    last_activity REAL NOT NULL
);
"""

_CREATE_WORK_ITEMS_TABLE = """
CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    repo TEXT,
    depends_on TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_agent_runs_started ON agent_runs (started_at);",
    "CREATE INDEX IF NOT EXISTS idx_agent_runs_work_item ON agent_runs (work_item_id);",
    "CREATE INDEX IF NOT EXISTS idx_worktrees_repo ON worktrees (repo, task_key);",
    "CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items (status);",
]


@dataclass(frozen=True)
class ConversationEntry:
    """One stored stream message."""

    run_id: str
    seq: int
    message_type: str
    payload: dict[str, Any]
    recorded_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ConversationEntry:
        return cls(
            run_id=row["run_id"],
            seq=row["seq"],
            message_type=row["message_type"],
            payload=json.loads(row["payload"]),
            recorded_at=row["recorded_at"],
        )


class Repository(Protocol):
    """Persistence operations used by the runner, pool and coordinator."""

    def insert_agent_run(self, run: AgentRun) -> None: ...

    def finish_agent_run(self, run: AgentRun) -> None: ...

    def append_conversation(self, run_id: str, seq: int, message_type: str, payload: dict[str, Any]) -> None: ...

    def upsert_worktree(self, worktree: Worktree) -> None: ...

    def delete_worktree(self, path: Path | str) -> bool: ...

    def upsert_work_item(self, item: WorkItem) -> None: ...


def _run_from_row(row: sqlite3.Row) -> AgentRun:
    cost = json.loads(row["cost"]) if row["cost"] else {}
    return AgentRun(
        run_id=row["run_id"],
        agent_type=AgentType(row["agent_type"]),
        prompt=row["prompt"],
        workdir=Path(row["workdir"]),
        pid=row["pid"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        exit_code=row["exit_code"],
        cost=CostSummary(**cost),
        work_item_id=row["work_item_id"],
        session_id=row["session_id"],
        cancelled=bool(row["cancelled"]),
    )


def _worktree_from_row(row: sqlite3.Row) -> Worktree:
    return Worktree.from_dict(dict(row))


def _work_item_from_row(row: sqlite3.Row) -> WorkItem:
    refs = tuple(parse_reference(token) for token in json.loads(row["depends_on"]))
    return WorkItem(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        repo=row["repo"],
        dependencies=refs,
        status=WorkItemStatus(row["status"]),
    )


def pid_alive(pid: int) -> bool:
    """True if a process with ``pid`` exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SqliteRepository:
    """SQLite-backed :class:`Repository`.

    Thread Safety:
        Each thread gets its own connection. WAL mode lets the runner's
        dispatch threads append conversation logs while the coordinator
        reads.

    Example usage:
        repo = SqliteRepository(Path(".agent-foundry/state.db"))
        repo.initialize()
        repo.insert_agent_run(run)
        runs = repo.list_agent_runs(work_item_id="42")
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("PRAGMA journal_mode = WAL;")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        if not self._initialized:
            self.initialize()
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e), operation="storage", resource=str(self.db_path)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def initialize(self) -> None:
        """Create tables and indexes if missing. Safe to call repeatedly."""
        with self._init_lock:
            if self._initialized:
                return
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute(_CREATE_SCHEMA_VERSION_TABLE)
                    row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
                    if row is not None and row["version"] > SCHEMA_VERSION:
                        raise StorageError(
                            f"database schema version {row['version']} is newer than supported {SCHEMA_VERSION}",
                            operation="storage",
                            resource=str(self.db_path),
                            hint="upgrade agent-foundry",
                        )
                    for statement in (
                        _CREATE_AGENT_RUNS_TABLE,
                        _CREATE_CONVERSATION_LOGS_TABLE,
                        _CREATE_WORKTREES_TABLE,
                        _CREATE_WORK_ITEMS_TABLE,
                        *_CREATE_INDEXES,
                    ):
                        conn.execute(statement)
                    if row is None:
                        conn.execute("INSERT INTO schema_version (version) VALUES (?);", (SCHEMA_VERSION,))
            except sqlite3.Error as e:
                raise StorageError(str(e), operation="storage", resource=str(self.db_path)) from e
            self._initialized = True
            logger.debug("Initialized state database %s", self.db_path)

    def close(self) -> None:
        """Close the connection of the current thread."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # -------------------------------------------------------------------------
    # Agent runs
    # -------------------------------------------------------------------------

    def insert_agent_run(self, run: AgentRun) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO agent_runs (
                    run_id, agent_type, prompt, workdir, pid, started_at, ended_at,
                    exit_code, cancelled, work_item_id, session_id, cost
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    run.run_id,
                    run.agent_type.value,
                    run.prompt,
                    str(run.workdir),
                    run.pid,
                    run.started_at,
                    run.ended_at,
                    run.exit_code,
                    int(run.cancelled),
                    run.work_item_id,
                    run.session_id,
                    json.dumps(run.cost.to_dict()),
                ),
            )

    def finish_agent_run(self, run: AgentRun) -> None:
        """Record exit code, end time, session and cost of a finished run."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE agent_runs
                SET ended_at = ?, exit_code = ?, cancelled = ?, session_id = ?, cost = ?
                WHERE run_id = ?;
                """,
                (
                    run.ended_at if run.ended_at is not None else time.time(),
                    run.exit_code,
                    int(run.cancelled),
                    run.session_id,
                    json.dumps(run.cost.to_dict()),
                    run.run_id,
                ),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"agent run not found: {run.run_id}", operation="storage")

    def get_agent_run(self, run_id: str) -> AgentRun:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM agent_runs WHERE run_id = ?;", (run_id,))
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"agent run not found: {run_id}", operation="storage")
        return _run_from_row(row)

    def list_agent_runs(self, work_item_id: str | None = None, limit: int | None = None) -> list[AgentRun]:
        """Runs newest first, optionally for one work item."""
        sql = "SELECT * FROM agent_runs"
        params: list[Any] = []
        if work_item_id is not None:
            sql += " WHERE work_item_id = ?"
            params.append(work_item_id)
        sql += " ORDER BY started_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._transaction() as cursor:
            cursor.execute(sql + ";", params)
            rows = cursor.fetchall()
        return [_run_from_row(row) for row in rows]

    def find_interrupted_runs(self, is_alive: Callable[[int], bool] = pid_alive) -> list[AgentRun]:
        """Runs that never recorded an end and whose process is gone."""
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM agent_runs WHERE ended_at IS NULL ORDER BY started_at;")
            rows = cursor.fetchall()
        runs = [_run_from_row(row) for row in rows]
        return [run for run in runs if run.pid is None or not is_alive(run.pid)]

    # -------------------------------------------------------------------------
    # Conversation logs
    # -------------------------------------------------------------------------

    def append_conversation(self, run_id: str, seq: int, message_type: str, payload: dict[str, Any]) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT OR REPLACE INTO conversation_logs (run_id, seq, message_type, payload, recorded_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (run_id, seq, message_type, json.dumps(payload, default=str), time.time()),
            )

    def get_conversation(self, run_id: str) -> list[ConversationEntry]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM conversation_logs WHERE run_id = ? ORDER BY seq;", (run_id,))
            rows = cursor.fetchall()
        return [ConversationEntry.from_row(row) for row in rows]

    def count_conversation(self, run_id: str) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM conversation_logs WHERE run_id = ?;", (run_id,))
            return int(cursor.fetchone()[0])

    # -------------------------------------------------------------------------
    # Worktrees
    # -------------------------------------------------------------------------

    def upsert_worktree(self, worktree: Worktree) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO worktrees (
                    path, repo, repo_path, task_key, branch, base_commit, status, created_at, last_activity
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (path) DO UPDATE SET
                    repo = excluded.repo,
                    repo_path = excluded.repo_path,
                    task_key = excluded.task_key,
                    branch = excluded.branch,
                    base_commit = excluded.base_commit,
                    status = excluded.status,
                    last_activity = excluded.last_activity;
                """,
                (
                    str(worktree.path),
                    worktree.repo,
                    str(worktree.repo_path),
                    worktree.task_key,
                    worktree.branch,
                    worktree.base_commit,
                    worktree.status.value,
                    worktree.created_at,
                    worktree.last_activity,
                ),
            )

    def get_worktree(self, path: Path | str) -> Worktree:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM worktrees WHERE path = ?;", (str(path),))
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"worktree not found: {path}", operation="storage")
        return _worktree_from_row(row)

    def list_worktrees(self, repo: str | None = None) -> list[Worktree]:
        """Worktrees least recently used first."""
        with self._transaction() as cursor:
            if repo is None:
                cursor.execute("SELECT * FROM worktrees ORDER BY last_activity;")
            else:
                cursor.execute("SELECT * FROM worktrees WHERE repo = ? ORDER BY last_activity;", (repo,))
            rows = cursor.fetchall()
        return [_worktree_from_row(row) for row in rows]

    def delete_worktree(self, path: Path | str) -> bool:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM worktrees WHERE path = ?;", (str(path),))
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Work items
    # -------------------------------------------------------------------------

    def upsert_work_item(self, item: WorkItem) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO work_items (id, title, description, repo, depends_on, status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    repo = excluded.repo,
                    depends_on = excluded.depends_on,
                    status = excluded.status,
                    updated_at = excluded.updated_at;
                """,
                (
                    item.id,
                    item.title,
                    item.description,
                    item.repo,
                    json.dumps([str(ref) for ref in item.dependencies]),
                    item.status.value,
                    time.time(),
                ),
            )

    def get_work_item(self, item_id: str) -> WorkItem:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM work_items WHERE id = ?;", (str(item_id),))
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"work item not found: {item_id}", operation="storage")
        return _work_item_from_row(row)

    def list_work_items(self, status: WorkItemStatus | str | None = None) -> list[WorkItem]:
        with self._transaction() as cursor:
            if status is None:
                cursor.execute("SELECT * FROM work_items ORDER BY id;")
            else:
                cursor.execute(
                    "SELECT * FROM work_items WHERE status = ? ORDER BY id;", (WorkItemStatus(status).value,)
                )
            rows = cursor.fetchall()
        return [_work_item_from_row(row) for row in rows]

    def update_work_item_status(self, item_id: str, status: WorkItemStatus | str) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE work_items SET status = ?, updated_at = ? WHERE id = ?;",
                (WorkItemStatus(status).value, time.time(), str(item_id)),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"work item not found: {item_id}", operation="storage")
