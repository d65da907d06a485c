"""Agent types and run records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class AgentType(str, Enum):
    """Role an agent process plays."""

    IMPLEMENT = "implement"
    TEST = "test"
    REVIEW = "review"
    COORDINATOR = "coordinator"

    @classmethod
    def parse(cls, value: str | AgentType) -> AgentType:
        """Parse an agent type, accepting the short aliases used on the CLI."""
        if isinstance(value, AgentType):
            return value
        normalized = value.strip().lower()
        try:
            return _ALIASES[normalized]
        except KeyError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown agent type {value!r} (expected one of: {valid})") from None

    def __str__(self) -> str:
        return self.value


_ALIASES: dict[str, AgentType] = {
    "implement": AgentType.IMPLEMENT,
    "impl": AgentType.IMPLEMENT,
    "i": AgentType.IMPLEMENT,
    "test": AgentType.TEST,
    "t": AgentType.TEST,
    "review": AgentType.REVIEW,
    "r": AgentType.REVIEW,
    "coordinator": AgentType.COORDINATOR,
    "coord": AgentType.COORDINATOR,
    "c": AgentType.COORDINATOR,
}


@dataclass(frozen=True)
class CostSummary:
    """Token and cost counters reported by the agent's final result message."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float | None = None
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_write_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "duration_api_ms": self.duration_api_ms,
            "num_turns": self.num_turns,
        }


@dataclass(frozen=True)
class AgentRun:
    """Immutable history record of one agent invocation."""

    run_id: str
    agent_type: AgentType
    prompt: str
    workdir: Path
    pid: int | None
    started_at: float
    ended_at: float | None = None
    exit_code: int | None = None
    cost: CostSummary = field(default_factory=CostSummary)
    work_item_id: str | None = None
    session_id: str | None = None
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "agent_type": self.agent_type.value,
            "prompt": self.prompt,
            "workdir": str(self.workdir),
            "pid": self.pid,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "cost": self.cost.to_dict(),
            "work_item_id": self.work_item_id,
            "session_id": self.session_id,
            "cancelled": self.cancelled,
        }
