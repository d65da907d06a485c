"""Test-driven workflow: phases, engine and test execution."""

from agent_foundry.workflow.phases import PhaseOutcome, TddPhase, initial_phase, next_phase
from agent_foundry.workflow.prompts import build_phase_prompt, build_task_prompt
from agent_foundry.workflow.review import ReviewFeedbackExtractor, ReviewResult, ReviewVerdict, parse_review
from agent_foundry.workflow.resume import ResumeInfo, find_interrupted, latest_interrupted
from agent_foundry.workflow.state import PhaseRecord, WorkflowState
from agent_foundry.workflow.tdd import TDDWorkflowEngine, WorkflowReport
from agent_foundry.workflow.test_runner import TestFramework, TestResult, TestRunner, detect_framework

__all__ = [
    "PhaseOutcome",
    "PhaseRecord",
    "ResumeInfo",
    "ReviewFeedbackExtractor",
    "ReviewResult",
    "ReviewVerdict",
    "TDDWorkflowEngine",
    "TddPhase",
    "TestFramework",
    "TestResult",
    "TestRunner",
    "WorkflowReport",
    "WorkflowState",
    "build_phase_prompt",
    "build_task_prompt",
    "detect_framework",
    "find_interrupted",
    "initial_phase",
    "latest_interrupted",
    "next_phase",
]
