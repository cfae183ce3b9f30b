"""Workspace orchestrator - run skills across the packages of a modular workspace."""

__version__ = "0.1.0"

from workspace_orchestrator.config import Config
from workspace_orchestrator.environment import EnvironmentContext, EnvironmentRoot
from workspace_orchestrator.orchestrator import (
    Orchestrator,
    RetryPolicy,
    RunOptions,
    RunStatus,
    RunSummary,
)
from workspace_orchestrator.package_graph import Package, PackageGraph
from workspace_orchestrator.runner import ExecutionOutcome, OutcomeKind, Runner
from workspace_orchestrator.skills import Skill, SkillRegistry

__all__ = [
    "Config",
    "EnvironmentContext",
    "EnvironmentRoot",
    "ExecutionOutcome",
    "Orchestrator",
    "OutcomeKind",
    "Package",
    "PackageGraph",
    "RetryPolicy",
    "RunOptions",
    "RunStatus",
    "RunSummary",
    "Runner",
    "Skill",
    "SkillRegistry",
    "__version__",
]
