"""agent-foundry: orchestrate coding agents over isolated git worktrees.

Spawns external coding-agent processes, parses their streamed JSON output,
isolates each task in a pooled git worktree, schedules work items in
dependency order and drives a test-driven cycle with bounded retries.
"""

from agent_foundry.agent import AgentHandle, AgentProcessRunner, AgentResult, AgentRun, AgentType, HeartbeatWatchdog
from agent_foundry.config import OrchestratorConfig, OrchestratorConfigError, load_config
from agent_foundry.coordinator import Coordinator, CoordinatorReport
from agent_foundry.deps import DependencyResolver, WorkItem, WorkItemStatus, build_graph, load_work_items
from agent_foundry.errors import OrchestratorError
from agent_foundry.events import EventBus
from agent_foundry.storage import SqliteRepository
from agent_foundry.workflow import TDDWorkflowEngine, TddPhase, TestResult, TestRunner, WorkflowReport
from agent_foundry.worktree import ReleaseOutcome, Worktree, WorktreePool

__version__ = "0.1.0"

__all__ = [
    "AgentHandle",
    "AgentProcessRunner",
    "AgentResult",
    "AgentRun",
    "AgentType",
    "Coordinator",
    "CoordinatorReport",
    "DependencyResolver",
    "EventBus",
    "HeartbeatWatchdog",
    "OrchestratorConfig",
    "OrchestratorConfigError",
    "OrchestratorError",
    "ReleaseOutcome",
    "SqliteRepository",
    "TDDWorkflowEngine",
    "TddPhase",
    "TestResult",
    "TestRunner",
    "WorkItem",
    "WorkItemStatus",
    "Worktree",
    "WorktreePool",
    "WorkflowReport",
    "__version__",
    "build_graph",
    "load_config",
    "load_work_items",
]
