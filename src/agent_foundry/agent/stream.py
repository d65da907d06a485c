"""Agent output stream protocol and parser.

The agent writes one JSON object per line on stdout, discriminated by a
``type`` field:

- ``system``: session start, carries ``session_id``
- ``assistant``: ``message.content`` with text and tool_use blocks
- ``tool_use``: a tool invocation reported on its own line
- ``tool_result``: tool ``output`` and an ``is_error`` flag (``user`` lines
  carrying tool_result blocks are normalized to this)
- ``result``: final cost/token counters and durations

Any other ``type`` is forwarded as an :class:`OpaqueMessage`. Lines that are
not valid JSON objects, or that do not match their declared type, are
reported to listeners as :class:`~agent_foundry.errors.ParseError` records
and the stream carries on.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from agent_foundry.agent.types import CostSummary
from agent_foundry.errors import ParseError

logger = logging.getLogger(__name__)


# =============================================================================
# Message models
# =============================================================================


class _StreamModel(BaseModel):
    """Base model for stream messages; unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow")

    _raw: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def raw(self) -> dict[str, Any]:
        """The decoded JSON object exactly as received."""
        return self._raw


class ContentBlock(BaseModel):
    """One block of assistant or user message content."""

    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool = False


class MessageBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: list[ContentBlock] | str = Field(default_factory=list)

    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [ContentBlock(type="text", text=self.content)] if self.content else []
        return list(self.content)


class SystemMessage(_StreamModel):
    type: Literal["system"] = "system"
    subtype: str | None = None
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None


class AssistantMessage(_StreamModel):
    type: Literal["assistant"] = "assistant"
    message: MessageBody = Field(default_factory=MessageBody)
    session_id: str | None = None

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text or "" for b in self.message.blocks() if b.type == "text")

    @property
    def tool_uses(self) -> list[ContentBlock]:
        return [b for b in self.message.blocks() if b.type == "tool_use"]


class ToolUseMessage(_StreamModel):
    type: Literal["tool_use"] = "tool_use"
    tool: str | None = None
    name: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        return self.tool or self.name or "unknown"


class ToolResultMessage(_StreamModel):
    type: Literal["tool_result"] = "tool_result"
    output: str = ""
    is_error: bool = False


class ResultMessage(_StreamModel):
    type: Literal["result"] = "result"
    subtype: str | None = None
    is_error: bool = False
    result: str | None = None
    session_id: str | None = None
    total_cost_usd: float | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int | None = None
    usage: dict[str, Any] | None = None
    cost: dict[str, Any] | None = None

    def cost_summary(self) -> CostSummary:
        """Fold the counters of this message into a CostSummary.

        Both the ``usage`` block (``cache_read_input_tokens`` style) and the
        older ``cost`` block (``cache_read_tokens`` style) are understood.
        """
        counters: dict[str, Any] = {}
        if self.cost:
            counters.update(self.cost)
        if self.usage:
            counters.update(self.usage)
        return CostSummary(
            input_tokens=_int(counters.get("input_tokens")),
            output_tokens=_int(counters.get("output_tokens")),
            cache_read_tokens=_int(counters.get("cache_read_tokens", counters.get("cache_read_input_tokens"))),
            cache_write_tokens=_int(
                counters.get("cache_write_tokens", counters.get("cache_creation_input_tokens"))
            ),
            cost_usd=self.total_cost_usd if self.total_cost_usd is not None else self.cost_usd,
            duration_ms=self.duration_ms or 0,
            duration_api_ms=self.duration_api_ms or 0,
            num_turns=self.num_turns or 0,
        )


class OpaqueMessage(_StreamModel):
    """A message whose ``type`` this parser does not know."""

    type: str


StreamMessage = Union[
    SystemMessage,
    AssistantMessage,
    ToolUseMessage,
    ToolResultMessage,
    ResultMessage,
    OpaqueMessage,
]

_MESSAGE_TYPES: dict[str, type[_StreamModel]] = {
    "system": SystemMessage,
    "assistant": AssistantMessage,
    "tool_use": ToolUseMessage,
    "tool_result": ToolResultMessage,
    "result": ResultMessage,
}


def _int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _stringify_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return "".join(parts)
    return json.dumps(content)


def _normalize_user(data: dict[str, Any]) -> dict[str, Any] | None:
    """Turn a ``user`` line that carries tool_result blocks into a tool_result."""
    message = data.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    results = [b for b in content if isinstance(b, dict) and b.get("type") == "tool_result"]
    if not results:
        return None
    return {
        "type": "tool_result",
        "output": "\n".join(_stringify_content(b.get("content")) for b in results),
        "is_error": any(bool(b.get("is_error")) for b in results),
    }


def decode_line(line: str | bytes, line_number: int = 0) -> StreamMessage | None:
    """Decode one line of agent output.

    Returns:
        The decoded message, or None for a blank line.

    Raises:
        ParseError: If the line is not a JSON object of a well-formed message.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text:
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg}", line=text, line_number=line_number) from e
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}", line=text, line_number=line_number)

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ParseError("missing 'type' discriminator", line=text, line_number=line_number)

    payload = data
    if msg_type == "user":
        normalized = _normalize_user(data)
        if normalized is not None:
            payload = normalized
            msg_type = "tool_result"

    model = _MESSAGE_TYPES.get(msg_type, OpaqueMessage)
    try:
        message = model.model_validate(payload)
    except ValidationError as e:
        raise ParseError(
            f"malformed {msg_type!r} message: {e.error_count()} validation error(s)",
            line=text,
            line_number=line_number,
        ) from e
    message._raw = data
    return message  # type: ignore[return-value]


def summarize(message: StreamMessage, limit: int = 200) -> str:
    """One-line human summary of a message, truncated to ``limit`` characters."""
    if isinstance(message, SystemMessage):
        summary = f"session {message.session_id or '?'} ({message.subtype or 'system'})"
    elif isinstance(message, AssistantMessage):
        tools = ", ".join(b.name or "?" for b in message.tool_uses)
        summary = message.text.strip()
        if tools:
            summary = f"{summary} [tools: {tools}]".strip()
    elif isinstance(message, ToolUseMessage):
        summary = f"{message.tool_name} {json.dumps(message.input, sort_keys=True)}"
    elif isinstance(message, ToolResultMessage):
        prefix = "error" if message.is_error else "result"
        summary = f"{prefix}: {message.output}"
    elif isinstance(message, ResultMessage):
        cost = message.cost_summary()
        summary = f"done in {cost.duration_ms}ms, {cost.total_tokens} tokens"
    else:
        summary = f"<{message.type}>"
    summary = " ".join(summary.split())
    if len(summary) > limit:
        return f"{summary[:limit]}... ({len(summary)} chars)"
    return summary


# =============================================================================
# Completion and listeners
# =============================================================================


@dataclass(frozen=True)
class Completed:
    """Terminal stream event: output ended and the process exited."""

    exit_code: int
    cost: CostSummary
    session_id: str | None = None
    message_count: int = 0
    parse_error_count: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class StreamListener(Protocol):
    """Receiver of decoded stream messages."""

    def on_message(self, message: StreamMessage) -> None: ...

    def on_parse_error(self, error: ParseError) -> None: ...

    def on_completed(self, completed: Completed) -> None: ...


class StreamListenerBase:
    """No-op listener to subclass when only some callbacks matter."""

    def on_message(self, message: StreamMessage) -> None:
        pass

    def on_parse_error(self, error: ParseError) -> None:
        pass

    def on_completed(self, completed: Completed) -> None:
        pass


class OutputStreamParser:
    """Decode agent output lines and fan them out to listeners.

    Listeners receive messages in registration order. A listener that raises
    is logged and skipped so that one faulty consumer cannot stall the
    stream or starve the others.
    """

    def __init__(self, listeners: Iterable[StreamListener] | None = None) -> None:
        self._listeners: list[StreamListener] = list(listeners or [])
        self._lock = threading.Lock()
        self._line_number = 0
        self._message_count = 0
        self._parse_errors: list[ParseError] = []
        self._session_id: str | None = None
        self._last_result: ResultMessage | None = None
        self._completed: Completed | None = None

    def add_listener(self, listener: StreamListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StreamListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def parse_errors(self) -> list[ParseError]:
        return list(self._parse_errors)

    @property
    def last_result(self) -> ResultMessage | None:
        return self._last_result

    @property
    def completed(self) -> Completed | None:
        return self._completed

    def cost_summary(self) -> CostSummary:
        if self._last_result is None:
            return CostSummary()
        return self._last_result.cost_summary()

    def feed(self, line: str | bytes) -> StreamMessage | None:
        """Decode one line and dispatch the result. Never raises ParseError."""
        self._line_number += 1
        try:
            message = decode_line(line, self._line_number)
        except ParseError as error:
            logger.debug("Skipping malformed agent output line %d: %s", self._line_number, error)
            self._parse_errors.append(error)
            self._dispatch("on_parse_error", error)
            return None
        if message is None:
            return None

        self._message_count += 1
        if isinstance(message, SystemMessage) and message.session_id:
            self._session_id = message.session_id
        elif isinstance(message, ResultMessage):
            self._last_result = message
            if message.session_id and not self._session_id:
                self._session_id = message.session_id
        self._dispatch("on_message", message)
        return message

    def consume(self, lines: Iterable[str | bytes]) -> None:
        """Feed every line of ``lines``."""
        for line in lines:
            self.feed(line)

    def finish(self, exit_code: int) -> Completed:
        """Emit the terminal Completed event. Later calls return the same event."""
        if self._completed is not None:
            return self._completed
        completed = Completed(
            exit_code=exit_code,
            cost=self.cost_summary(),
            session_id=self._session_id,
            message_count=self._message_count,
            parse_error_count=len(self._parse_errors),
        )
        self._completed = completed
        self._dispatch("on_completed", completed)
        return completed

    def _dispatch(self, method: str, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            callback = getattr(listener, method, None)
            if callback is None:
                continue
            try:
                callback(payload)
            except Exception:
                logger.exception("Stream listener %r failed in %s", listener, method)
