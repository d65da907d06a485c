"""Dependency graph construction and readiness."""

from agent_foundry.deps.batch import BatchFileError, load_work_items, parse_work_items
from agent_foundry.deps.graph import DependencyGraph, WorkItem, WorkItemStatus, build_graph, find_cycle
from agent_foundry.deps.references import (
    DependencyRef,
    ParsedDependencies,
    parse_dependencies,
    parse_reference,
)
from agent_foundry.deps.resolver import CompletionOracle, DependencyResolver, DependencyUnmet, StaticOracle

__all__ = [
    "BatchFileError",
    "CompletionOracle",
    "DependencyGraph",
    "DependencyRef",
    "DependencyResolver",
    "DependencyUnmet",
    "ParsedDependencies",
    "StaticOracle",
    "WorkItem",
    "WorkItemStatus",
    "build_graph",
    "find_cycle",
    "load_work_items",
    "parse_dependencies",
    "parse_reference",
    "parse_work_items",
]
