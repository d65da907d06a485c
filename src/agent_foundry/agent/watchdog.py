"""Heartbeat watchdog for agent processes.

A policy layered over :class:`AgentProcessRunner`: any watched handle that
produces no output for longer than ``timeout`` seconds is treated as hung
and cancelled.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agent_foundry.agent.runner import AgentHandle

logger = logging.getLogger(__name__)


class HeartbeatWatchdog:
    """Cancel agent handles that go silent.

    Args:
        timeout: Seconds of silence after which a handle is cancelled.
        interval: Polling interval of the background thread.
        on_timeout: Optional callback invoked with each cancelled handle.
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        timeout: float,
        interval: float = 1.0,
        on_timeout: Callable[[AgentHandle], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        self.timeout = timeout
        self.interval = interval
        self.on_timeout = on_timeout
        self._clock = clock
        self._handles: dict[str, AgentHandle] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def watch(self, handle: AgentHandle) -> None:
        with self._lock:
            self._handles[handle.run_id] = handle
        handle.add_done_callback(lambda _result: self.unwatch(handle))

    def unwatch(self, handle: AgentHandle) -> None:
        with self._lock:
            self._handles.pop(handle.run_id, None)

    @property
    def watched(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def check_once(self, now: float | None = None) -> list[AgentHandle]:
        """Cancel every handle silent for longer than the timeout.

        Returns:
            The handles that were cancelled on this tick.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [h for h in self._handles.values() if now - h.last_output_at > self.timeout]
            for handle in expired:
                self._handles.pop(handle.run_id, None)

        for handle in expired:
            silent_for = now - handle.last_output_at
            logger.warning(
                "Agent %s produced no output for %.1fs (limit %.1fs); cancelling",
                handle.run_id,
                silent_for,
                self.timeout,
            )
            handle.cancel()
            if self.on_timeout is not None:
                self.on_timeout(handle)
        return expired

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="agent-watchdog", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 2 + 1)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check_once()
            except Exception:
                logger.exception("Watchdog tick failed")

    def __enter__(self) -> HeartbeatWatchdog:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
