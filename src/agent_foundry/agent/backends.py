"""Command lines of the supported coding-agent CLIs.

A backend knows how to turn a prompt and an :class:`AgentConfig` into the
argument vector of one non-interactive, streaming invocation. Every backend
must emit newline-delimited JSON in the stream format decoded by
:mod:`agent_foundry.agent.stream`.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Protocol

from agent_foundry.config import DEFAULT_EXECUTABLES, AgentConfig

logger = logging.getLogger(__name__)

VERSION_TIMEOUT = 10.0


class AgentBackend(Protocol):
    """One coding-agent CLI."""

    name: str
    default_executable: str

    def build_command(self, prompt: str, config: AgentConfig) -> list[str]: ...

    def is_available(self, executable: str | None = None) -> bool: ...


def _answers_version(executable: str) -> bool:
    """True if ``executable --version`` can be launched and exits cleanly."""
    if os.sep not in executable and shutil.which(executable) is None:
        return False
    try:
        proc = subprocess.run(
            [executable, "--version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=VERSION_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("%s --version failed: %s", executable, e)
        return False
    return proc.returncode == 0


class ClaudeBackend:
    """Claude Code in print mode with ``stream-json`` output."""

    name = "claude"
    default_executable = DEFAULT_EXECUTABLES["claude"]

    def build_command(self, prompt: str, config: AgentConfig) -> list[str]:
        cmd = [config.executable, "--print", "--verbose", "--output-format", "stream-json"]
        if config.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if config.model:
            cmd.extend(["--model", config.model])
        cmd.extend(config.extra_args)
        cmd.append(prompt)
        return cmd

    def is_available(self, executable: str | None = None) -> bool:
        return _answers_version(executable or self.default_executable)


class CursorBackend:
    """Cursor's headless agent CLI.

    ``--force`` is its counterpart of skipping permission prompts.
    """

    name = "cursor"
    default_executable = DEFAULT_EXECUTABLES["cursor"]

    def build_command(self, prompt: str, config: AgentConfig) -> list[str]:
        cmd = [config.executable, "--print", "--output-format", "stream-json"]
        if config.skip_permissions:
            cmd.append("--force")
        if config.model:
            cmd.extend(["--model", config.model])
        cmd.extend(config.extra_args)
        cmd.append(prompt)
        return cmd

    def is_available(self, executable: str | None = None) -> bool:
        return _answers_version(executable or self.default_executable)


BACKENDS: dict[str, AgentBackend] = {
    backend.name: backend for backend in (ClaudeBackend(), CursorBackend())
}


def get_backend(name: str) -> AgentBackend:
    """Look up a backend by name.

    Raises:
        ValueError: For an unknown backend name.
    """
    try:
        return BACKENDS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown agent backend {name!r} (expected one of: {', '.join(BACKENDS)})") from None


def available_backends() -> list[str]:
    """Names of the backends whose default executable is installed."""
    return [name for name, backend in BACKENDS.items() if backend.is_available()]
