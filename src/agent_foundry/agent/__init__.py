"""Agent process lifecycle and output stream handling."""

from agent_foundry.agent.backends import BACKENDS, AgentBackend, ClaudeBackend, CursorBackend, get_backend
from agent_foundry.agent.listeners import (
    CollectingListener,
    ConversationLogListener,
    EventBridgeListener,
    PrintListener,
)
from agent_foundry.agent.runner import AgentHandle, AgentProcessRunner, AgentResult, HandleState
from agent_foundry.agent.selection import TaskHints, infer_from_files, select_agent_type, suggest_agent_type
from agent_foundry.agent.stream import (
    AssistantMessage,
    Completed,
    OpaqueMessage,
    OutputStreamParser,
    ResultMessage,
    StreamListener,
    StreamListenerBase,
    StreamMessage,
    SystemMessage,
    ToolResultMessage,
    ToolUseMessage,
    decode_line,
)
from agent_foundry.agent.types import AgentRun, AgentType, CostSummary
from agent_foundry.agent.watchdog import HeartbeatWatchdog

__all__ = [
    "BACKENDS",
    "AgentBackend",
    "AgentHandle",
    "AgentProcessRunner",
    "AgentResult",
    "AgentRun",
    "AgentType",
    "AssistantMessage",
    "ClaudeBackend",
    "CollectingListener",
    "Completed",
    "ConversationLogListener",
    "CostSummary",
    "CursorBackend",
    "EventBridgeListener",
    "HandleState",
    "HeartbeatWatchdog",
    "OpaqueMessage",
    "OutputStreamParser",
    "PrintListener",
    "ResultMessage",
    "StreamListener",
    "StreamListenerBase",
    "StreamMessage",
    "SystemMessage",
    "TaskHints",
    "ToolResultMessage",
    "ToolUseMessage",
    "decode_line",
    "get_backend",
    "infer_from_files",
    "select_agent_type",
    "suggest_agent_type",
]
