import sys
from pathlib import Path

import pytest

from workspace_orchestrator.config import Config
from workspace_orchestrator.environment import EnvironmentContext
from workspace_orchestrator.orchestrator import Orchestrator
from workspace_orchestrator.package_graph import PackageGraph
from workspace_orchestrator.runner import Runner
from workspace_orchestrator.skills import Skill, SkillRegistry


@pytest.fixture
def python_skill():
    """Factory for skills running an inline Python snippet; ``{package}`` is substituted inside it."""

    def _make(name: str, code: str, **kwargs) -> Skill:
        return Skill(name=name, command=(sys.executable, "-c", code), **kwargs)

    return _make


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def make_orchestrator(workspace: Path):
    def _make(manifests, *skills: Skill, timeout: float | None = None, **kwargs) -> Orchestrator:
        graph = PackageGraph.load(manifests)
        registry = SkillRegistry()
        for skill in skills:
            registry.register(skill)
        runner = Runner(timeout=timeout, terminate_grace_seconds=1.0, workspace_root=workspace)
        kwargs.setdefault("environment", EnvironmentContext.ambient())
        return Orchestrator(
            graph,
            registry,
            runner=runner,
            config=Config(),
            workspace_root=workspace,
            **kwargs,
        )

    return _make
