"""Agent process lifecycle.

One external coding-agent process per unit of work. The runner is a
single-shot primitive: it launches, streams and reports, but never retries.

Lifecycle of a handle::

    SPAWNED --first line--> STREAMING --EOF + exit--> EXITED

A reader thread pushes stdout lines onto a queue; a dispatch thread drains
the queue into the :class:`OutputStreamParser`, so slow listeners never
block the pipe.
"""

from __future__ import annotations

import contextlib
import logging
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agent_foundry.agent.backends import get_backend
from agent_foundry.agent.listeners import ConversationLogListener, EventBridgeListener
from agent_foundry.agent.stream import Completed, OutputStreamParser, StreamListener
from agent_foundry.agent.types import AgentRun, AgentType, CostSummary
from agent_foundry.config import AgentConfig
from agent_foundry.errors import ProcessError, SpawnError

if TYPE_CHECKING:
    from agent_foundry.agent.watchdog import HeartbeatWatchdog
    from agent_foundry.events import EventBus
    from agent_foundry.storage.repository import Repository

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
_EOF = object()


class HandleState(str, Enum):
    SPAWNED = "spawned"
    STREAMING = "streaming"
    EXITED = "exited"


@dataclass(frozen=True)
class AgentResult:
    """Outcome of one agent process."""

    run: AgentRun
    completed: Completed
    stderr_tail: str = ""

    @property
    def exit_code(self) -> int:
        return self.completed.exit_code

    @property
    def cost(self) -> CostSummary:
        return self.completed.cost

    @property
    def cancelled(self) -> bool:
        return self.run.cancelled

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class AgentHandle:
    """Live agent process: cancellation, liveness and a completion future."""

    def __init__(
        self,
        process: subprocess.Popen[str],
        run: AgentRun,
        parser: OutputStreamParser,
        terminate_grace: float = 5.0,
    ) -> None:
        self._process = process
        self._run = run
        self._parser = parser
        self._terminate_grace = terminate_grace
        self._state = HandleState.SPAWNED
        self._state_lock = threading.Lock()
        self._cancelled = False
        self._lines: queue.Queue[Any] = queue.Queue()
        self._stderr_lines: list[str] = []
        self._last_output_at = time.monotonic()
        self.future: Future[AgentResult] = Future()
        self._threads: list[threading.Thread] = []

    # -- properties ---------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def run_id(self) -> str:
        return self._run.run_id

    @property
    def agent_type(self) -> AgentType:
        return self._run.agent_type

    @property
    def workdir(self) -> Path:
        return self._run.workdir

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def last_output_at(self) -> float:
        """Monotonic timestamp of the most recent output line (or of spawn)."""
        return self._last_output_at

    @property
    def parser(self) -> OutputStreamParser:
        return self._parser

    def add_listener(self, listener: StreamListener) -> None:
        self._parser.add_listener(listener)

    def add_done_callback(self, callback: Callable[[AgentResult], None]) -> None:
        """Call ``callback(result)`` once the process has exited."""
        self.future.add_done_callback(lambda f: callback(f.result()))

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        reader = threading.Thread(
            target=self._pump_stdout, name=f"agent-{self.run_id}-stdout", daemon=True
        )
        err_reader = threading.Thread(
            target=self._pump_stderr, name=f"agent-{self.run_id}-stderr", daemon=True
        )
        dispatcher = threading.Thread(
            target=self._dispatch, name=f"agent-{self.run_id}-dispatch", daemon=True
        )
        self._threads = [reader, err_reader, dispatcher]
        for thread in self._threads:
            thread.start()

    def _pump_stdout(self) -> None:
        src = self._process.stdout
        if src is None:
            self._lines.put(_EOF)
            return
        try:
            for line in iter(src.readline, ""):
                self._last_output_at = time.monotonic()
                self._lines.put(line)
        except (OSError, ValueError):
            logger.debug("stdout of agent %s closed early", self.run_id)
        finally:
            with contextlib.suppress(Exception):
                src.close()
            self._lines.put(_EOF)

    def _pump_stderr(self) -> None:
        src = self._process.stderr
        if src is None:
            return
        try:
            for line in iter(src.readline, ""):
                self._last_output_at = time.monotonic()
                self._stderr_lines.append(line)
                if len(self._stderr_lines) > STDERR_TAIL_LINES:
                    del self._stderr_lines[0]
        except (OSError, ValueError):
            logger.debug("stderr of agent %s closed early", self.run_id)
        finally:
            with contextlib.suppress(Exception):
                src.close()

    def _dispatch(self) -> None:
        try:
            while True:
                line = self._lines.get()
                if line is _EOF:
                    break
                if self._state is HandleState.SPAWNED:
                    with self._state_lock:
                        self._state = HandleState.STREAMING
                self._parser.feed(line)

            exit_code = self._process.wait()
            self._threads[1].join(timeout=2)
            completed = self._parser.finish(exit_code)
            run = replace(
                self._run,
                ended_at=time.time(),
                exit_code=exit_code,
                cost=completed.cost,
                session_id=completed.session_id,
                cancelled=self._cancelled,
            )
            self._run = run
            with self._state_lock:
                self._state = HandleState.EXITED
            logger.info(
                "Agent %s (%s, pid %d) exited with code %d%s",
                run.run_id,
                run.agent_type.value,
                self.pid,
                exit_code,
                " after cancellation" if self._cancelled else "",
            )
            self.future.set_result(AgentResult(run=run, completed=completed, stderr_tail="".join(self._stderr_lines)))
        except Exception as exc:
            logger.exception("Dispatch for agent %s failed", self.run_id)
            with self._state_lock:
                self._state = HandleState.EXITED
            if not self.future.done():
                self.future.set_exception(exc)

    def cancel(self) -> bool:
        """Terminate the process (SIGTERM, then SIGKILL after the grace period).

        Returns:
            True if a signal was sent, False if the process had already exited.
        """
        with self._state_lock:
            if self._state is HandleState.EXITED or self._process.poll() is not None:
                return False
            self._cancelled = True
        logger.warning("Cancelling agent %s (pid %d)", self.run_id, self.pid)
        self._signal(signal.SIGTERM)
        try:
            self._process.wait(timeout=self._terminate_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Agent %s ignored SIGTERM, killing", self.run_id)
            self._signal(signal.SIGKILL)
        return True

    def _signal(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(sig)

    def wait(self, timeout: float | None = None) -> AgentResult:
        """Block until the process has exited and its stream is drained."""
        return self.future.result(timeout=timeout)

    def result(self, timeout: float | None = None) -> AgentResult:
        """Like :meth:`wait`, but raise ProcessError on a non-zero exit.

        A cancelled run is returned as-is: cancellation is the caller's own
        decision, not a process failure.
        """
        result = self.wait(timeout)
        if result.exit_code != 0 and not result.cancelled:
            raise ProcessError(result.exit_code, resource=str(self.workdir), stderr_tail=result.stderr_tail)
        return result


class AgentProcessRunner:
    """Spawn coding-agent processes.

    Args:
        config: Default agent configuration (executable, model, flags).
        events: Optional bus; when set, every decoded message is republished
            as an ``AgentOutput`` event.
        repository: Optional storage; when set, runs and conversation logs
            are persisted.
        watchdog: Optional heartbeat watchdog every spawned handle is
            registered with.
        echo: Optional factory building one extra listener per run, e.g. a
            ``PrintListener`` echoing the agent to the terminal.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        events: EventBus | None = None,
        repository: Repository | None = None,
        watchdog: HeartbeatWatchdog | None = None,
        echo: Callable[[AgentRun], StreamListener] | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.events = events
        self.repository = repository
        self.watchdog = watchdog
        self.echo = echo

    @staticmethod
    def build_command(prompt: str, config: AgentConfig) -> list[str]:
        """Argument vector for one non-interactive, streaming agent invocation."""
        return get_backend(config.backend).build_command(prompt, config)

    def _resolve_executable(self, executable: str) -> str:
        if os.sep in executable or (os.altsep and os.altsep in executable):
            path = Path(executable)
            if not path.is_file():
                raise SpawnError(
                    "agent executable not found",
                    operation="spawn",
                    resource=executable,
                    hint="set agent.executable or AGENT_FOUNDRY_CLAUDE_PATH",
                )
            if not os.access(path, os.X_OK):
                raise SpawnError(
                    "agent executable is not executable",
                    operation="spawn",
                    resource=executable,
                    hint=f"chmod +x {executable}",
                )
            return str(path)
        found = shutil.which(executable)
        if found is None:
            raise SpawnError(
                "agent executable not found on PATH",
                operation="spawn",
                resource=executable,
                hint="install it or set agent.executable to an absolute path",
            )
        return found

    def spawn(
        self,
        prompt: str,
        workdir: Path | str,
        agent_config: AgentConfig | None = None,
        *,
        agent_type: AgentType | str = AgentType.IMPLEMENT,
        work_item_id: str | None = None,
        listeners: Iterable[StreamListener] = (),
    ) -> AgentHandle:
        """Launch one agent process in ``workdir``.

        Raises:
            ValueError: If the prompt is empty.
            SpawnError: If the workdir or the executable is unusable.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")
        workdir = Path(workdir)
        if not workdir.is_dir():
            raise SpawnError("working directory does not exist", operation="spawn", resource=str(workdir))

        agent_type = AgentType.parse(agent_type)
        config = (agent_config or self.config).for_type(agent_type.value)
        executable = self._resolve_executable(config.executable)
        cmd = self.build_command(prompt, replace(config, executable=executable))

        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(workdir),
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, OSError) as e:
            raise SpawnError(f"failed to launch agent: {e}", operation="spawn", resource=executable) from e

        run = AgentRun(
            run_id=uuid.uuid4().hex[:12],
            agent_type=agent_type,
            prompt=prompt,
            workdir=workdir,
            pid=process.pid,
            started_at=time.time(),
            work_item_id=work_item_id,
        )
        logger.info("Spawned %s agent %s (pid %d) in %s", agent_type.value, run.run_id, process.pid, workdir)

        parser = OutputStreamParser(listeners)
        if self.echo is not None:
            parser.add_listener(self.echo(run))
        if self.repository is not None:
            self.repository.insert_agent_run(run)
            parser.add_listener(ConversationLogListener(self.repository, run.run_id))
        if self.events is not None:
            parser.add_listener(EventBridgeListener(self.events, run.run_id))

        handle = AgentHandle(process, run, parser, terminate_grace=config.terminate_grace)
        if self.repository is not None:
            repository = self.repository
            handle.add_done_callback(lambda result: repository.finish_agent_run(result.run))
        handle.start()
        if self.watchdog is not None:
            self.watchdog.watch(handle)
        return handle

    def run(
        self,
        prompt: str,
        workdir: Path | str,
        agent_config: AgentConfig | None = None,
        **kwargs: Any,
    ) -> AgentResult:
        """Spawn and wait. Does not raise on non-zero exit; see ``AgentResult.success``."""
        return self.spawn(prompt, workdir, agent_config, **kwargs).wait()
