# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- Deterministic test environment setup
- A throwaway git repository with one commit on ``main``
- A factory for fake agent executables that replay stream-json output
- Skipping of ``git``-marked tests when git is not installed
"""
from __future__ import annotations

import json
import os
import shutil
import stat
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent

GIT_AVAILABLE = shutil.which("git") is not None


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism.

    Sets environment variables to ensure reproducible test execution.
    """
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
        "GIT_TERMINAL_PROMPT": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that need the git executable when it is missing."""
    if GIT_AVAILABLE:
        return
    skip_git = pytest.mark.skip(reason="git executable not available")
    for item in items:
        if "git" in item.keywords:
            item.add_marker(skip_git)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def run_git(args: list[str], cwd: Path) -> str:
    """Run a git command, failing the test on a non-zero exit."""
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stderr}"
    return result.stdout.strip()


def stream_line(message_type: str, **fields: Any) -> str:
    """One line of agent stream-json output."""
    return json.dumps({"type": message_type, **fields})


def agent_transcript(text: str = "Done.", session_id: str = "sess-1", cost_usd: float = 0.01) -> list[str]:
    """A minimal well-formed agent conversation: init, one reply, result."""
    return [
        stream_line("system", subtype="init", session_id=session_id),
        stream_line("assistant", message={"content": [{"type": "text", "text": text}]}),
        stream_line(
            "result",
            subtype="success",
            session_id=session_id,
            result=text,
            total_cost_usd=cost_usd,
            duration_ms=1500,
            num_turns=1,
            usage={"input_tokens": 100, "output_tokens": 20},
        ),
    ]


# ---------------------------------------------------------------------------
# Fixtures: Git
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with an initial commit on main."""
    repo = tmp_path / "repo"
    repo.mkdir()

    run_git(["init", "-q"], repo)
    run_git(["symbolic-ref", "HEAD", "refs/heads/main"], repo)
    run_git(["config", "user.email", "test@test.com"], repo)
    run_git(["config", "user.name", "Test"], repo)
    run_git(["config", "commit.gpgsign", "false"], repo)

    (repo / "README.md").write_text("# Test Repo\n", encoding="utf-8")
    run_git(["add", "README.md"], repo)
    run_git(["commit", "-q", "-m", "Initial commit"], repo)

    return repo


# ---------------------------------------------------------------------------
# Fixtures: Fake Agent
# ---------------------------------------------------------------------------


FakeAgentFactory = Callable[..., Path]


@pytest.fixture
def fake_agent(tmp_path: Path) -> FakeAgentFactory:
    """Factory for fake agent executables.

    The script records its arguments to ``<script>.args`` (one per line),
    prints the given stdout lines, optionally sleeps, writes ``stderr`` and
    exits with ``exit_code``.

    Usage:
        def test_something(fake_agent):
            script = fake_agent(lines=agent_transcript(), exit_code=0)
            runner = AgentProcessRunner(AgentConfig(executable=str(script)))
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def make(
        lines: Sequence[str] = (),
        exit_code: int = 0,
        stderr: str = "",
        sleep: float = 0.0,
        name: str = "fake-agent",
    ) -> Path:
        script = bin_dir / name
        body = [
            "#!/bin/sh",
            'printf \'%s\\n\' "$@" > "$0.args"',
        ]
        if lines:
            body.append("cat <<'__AGENT_OUTPUT__'")
            body.extend(lines)
            body.append("__AGENT_OUTPUT__")
        if sleep:
            body.append(f"sleep {sleep}")
        if stderr:
            body.append(f"echo '{stderr}' >&2")
        body.append(f"exit {exit_code}")
        script.write_text("\n".join(body) + "\n", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return make
