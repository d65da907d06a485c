"""Stock stream listeners."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, TextIO

from agent_foundry.agent.stream import (
    AssistantMessage,
    Completed,
    ResultMessage,
    StreamListenerBase,
    StreamMessage,
    SystemMessage,
    ToolResultMessage,
    ToolUseMessage,
    summarize,
)
from agent_foundry.events import AgentOutput, EventBus

if TYPE_CHECKING:
    from agent_foundry.errors import ParseError
    from agent_foundry.storage.repository import Repository

TRUNCATE_AT = 200


def _truncate(text: str, limit: int = TRUNCATE_AT) -> str:
    if len(text) > limit:
        return f"{text[:limit]}... ({len(text)} chars)"
    return text


class PrintListener(StreamListenerBase):
    """Echo agent activity to a terminal.

    Assistant text goes to ``out`` as-is; tool activity and session markers go
    to ``err`` when verbose, with tool output truncated.
    """

    def __init__(self, verbose: bool = False, out: TextIO | None = None, err: TextIO | None = None, prefix: str = ""):
        self.verbose = verbose
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.prefix = prefix

    def on_message(self, message: StreamMessage) -> None:
        if isinstance(message, AssistantMessage):
            text = message.text
            if text:
                self.out.write(f"{self.prefix}{text}")
                if not text.endswith("\n"):
                    self.out.write("\n")
                self.out.flush()
            if self.verbose:
                for block in message.tool_uses:
                    self.err.write(f"{self.prefix}[tool: {block.name}]\n")
        elif not self.verbose:
            return
        elif isinstance(message, SystemMessage):
            self.err.write(f"{self.prefix}[system: {message.subtype or 'init'}]\n")
        elif isinstance(message, ToolUseMessage):
            self.err.write(f"{self.prefix}[tool: {message.tool_name}]\n")
        elif isinstance(message, ToolResultMessage):
            label = "error" if message.is_error else "result"
            self.err.write(f"{self.prefix}[{label}: {_truncate(message.output)}]\n")
        elif isinstance(message, ResultMessage):
            pass
        else:
            self.err.write(f"{self.prefix}[{message.type}]\n")

    def on_parse_error(self, error: ParseError) -> None:
        if self.verbose:
            self.err.write(f"{self.prefix}[parse error: {error.message}]\n")

    def on_completed(self, completed: Completed) -> None:
        cost = completed.cost
        line = f"{self.prefix}[exit {completed.exit_code}: {cost.input_tokens} in / {cost.output_tokens} out tokens"
        if cost.cost_usd is not None:
            line += f", ${cost.cost_usd:.4f}"
        line += f", {cost.duration_ms / 1000:.1f}s]\n"
        self.err.write(line)
        self.err.flush()


class CollectingListener(StreamListenerBase):
    """Keep every message, parse error and the completion event in memory."""

    def __init__(self) -> None:
        self.messages: list[StreamMessage] = []
        self.parse_errors: list[ParseError] = []
        self.completed: Completed | None = None
        self._lock = threading.Lock()

    def on_message(self, message: StreamMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def on_parse_error(self, error: ParseError) -> None:
        with self._lock:
            self.parse_errors.append(error)

    def on_completed(self, completed: Completed) -> None:
        self.completed = completed

    @property
    def text(self) -> str:
        """All assistant text, in order."""
        with self._lock:
            return "".join(m.text for m in self.messages if isinstance(m, AssistantMessage))

    def of_type(self, message_type: str) -> list[StreamMessage]:
        with self._lock:
            return [m for m in self.messages if m.type == message_type]


class ConversationLogListener(StreamListenerBase):
    """Persist every raw message of one agent run to the conversation log."""

    def __init__(self, repository: Repository, run_id: str) -> None:
        self.repository = repository
        self.run_id = run_id
        self._sequence = 0
        self._lock = threading.Lock()

    def on_message(self, message: StreamMessage) -> None:
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
        self.repository.append_conversation(self.run_id, sequence, message.type, message.raw)

    def on_parse_error(self, error: ParseError) -> None:
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
        self.repository.append_conversation(
            self.run_id,
            sequence,
            "parse_error",
            {"error": error.message, "line": error.line, "line_number": error.line_number},
        )


class EventBridgeListener(StreamListenerBase):
    """Republish stream messages as ``AgentOutput`` events."""

    def __init__(self, events: EventBus, run_id: str) -> None:
        self.events = events
        self.run_id = run_id

    def on_message(self, message: StreamMessage) -> None:
        self.events.publish(
            AgentOutput(
                run_id=self.run_id,
                message_type=message.type,
                summary=summarize(message),
                raw=message.raw,
            )
        )
