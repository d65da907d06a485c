"""Thin git plumbing wrapper used by the worktree pool."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agent_foundry.errors import GitOperationError

logger = logging.getLogger(__name__)

_UNSAFE_FRAGMENT = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_fragment(text: str) -> str:
    """Make ``text`` safe as a single path component or branch fragment.

    Slashes, backslashes, colons and whitespace all become ``-``.
    """
    frag = _UNSAFE_FRAGMENT.sub("-", text.strip())
    frag = frag.strip("-.")
    return frag or "task"


@dataclass(frozen=True)
class WorktreeListing:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    head: str | None
    branch: str | None
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def parse_worktree_porcelain(output: str) -> list[WorktreeListing]:
    """Parse ``git worktree list --porcelain`` output."""
    entries: list[WorktreeListing] = []
    fields: dict[str, str | bool] = {}

    def flush() -> None:
        if "worktree" in fields:
            branch = fields.get("branch")
            head = fields.get("HEAD")
            if isinstance(branch, str) and branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/") :]
            entries.append(
                WorktreeListing(
                    path=Path(str(fields["worktree"])),
                    head=head if isinstance(head, str) else None,
                    branch=branch if isinstance(branch, str) else None,
                    bare=bool(fields.get("bare")),
                    detached=bool(fields.get("detached")),
                    prunable="prunable" in fields,
                )
            )
        fields.clear()

    for line in output.splitlines():
        if not line.strip():
            flush()
            continue
        key, _, value = line.partition(" ")
        fields[key] = value if value else True
    flush()
    return entries


class GitClient:
    """Run git commands, raising GitOperationError on failure.

    Args:
        executable: git binary.
        env: Environment for child processes. Defaults to a copy of os.environ
            with interactive prompts disabled.
        timeout: Per-command timeout in seconds.
    """

    def __init__(self, executable: str = "git", env: dict[str, str] | None = None, timeout: float = 300.0):
        self.executable = executable
        if env is None:
            env = os.environ.copy()
            env.setdefault("GIT_TERMINAL_PROMPT", "0")
        self.env = env
        self.timeout = timeout

    def run(self, args: list[str], cwd: Path | str, check: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [self.executable, *args]
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd),
                env=self.env,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise GitOperationError(cmd, 127, f"git not found: {e}", cwd) from e
        except subprocess.TimeoutExpired as e:
            raise GitOperationError(cmd, -1, f"timed out after {self.timeout}s", cwd) from e
        if check and proc.returncode != 0:
            raise GitOperationError(cmd, proc.returncode, proc.stderr or proc.stdout, cwd)
        return proc

    def remote_exists(self, repo: Path, remote: str) -> bool:
        proc = self.run(["remote"], cwd=repo)
        return remote in proc.stdout.split()

    def fetch(self, repo: Path, remote: str, ref: str) -> None:
        self.run(["fetch", "--quiet", remote, ref], cwd=repo)

    def rev_parse(self, repo: Path, ref: str) -> str:
        proc = self.run(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=repo)
        return proc.stdout.strip()

    def resolve_base(self, repo: Path, base_ref: str, remote: str = "origin") -> str:
        """Fetch ``base_ref`` from ``remote`` (when configured) and return its SHA.

        Prefers the freshly fetched remote-tracking ref over a possibly stale
        local branch of the same name.
        """
        if self.remote_exists(repo, remote):
            self.fetch(repo, remote, base_ref)
            candidate = self.run(
                ["rev-parse", "--verify", "--quiet", f"{remote}/{base_ref}^{{commit}}"], cwd=repo, check=False
            )
            if candidate.returncode == 0 and candidate.stdout.strip():
                return candidate.stdout.strip()
        return self.rev_parse(repo, base_ref)

    def worktree_add(self, repo: Path, path: Path, branch: str, base_sha: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.run(["worktree", "add", "-B", branch, str(path), base_sha], cwd=repo)

    def worktree_remove(self, repo: Path, path: Path) -> None:
        """Remove a worktree, falling back to rmtree + prune if git refuses."""
        proc = self.run(["worktree", "remove", "--force", str(path)], cwd=repo, check=False)
        if proc.returncode != 0:
            logger.warning("git worktree remove failed for %s, removing directory: %s", path, proc.stderr.strip())
            if path.exists():
                shutil.rmtree(path)
            self.run(["worktree", "prune"], cwd=repo)

    def worktree_prune(self, repo: Path) -> None:
        self.run(["worktree", "prune"], cwd=repo)

    def worktree_list(self, repo: Path) -> list[WorktreeListing]:
        proc = self.run(["worktree", "list", "--porcelain"], cwd=repo)
        return parse_worktree_porcelain(proc.stdout)

    def delete_branch(self, repo: Path, branch: str) -> bool:
        proc = self.run(["branch", "-D", branch], cwd=repo, check=False)
        return proc.returncode == 0

    def is_dirty(self, path: Path) -> bool:
        proc = self.run(["status", "--porcelain=v1"], cwd=path)
        return bool(proc.stdout.strip())
