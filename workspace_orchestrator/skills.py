"""Skill definitions, the skill registry, and output classification."""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from workspace_orchestrator.config import Config, SkillConfig, get_config
from workspace_orchestrator.exceptions import DuplicateSkillError, UnknownSkillError
from workspace_orchestrator.logging import get_logger
from workspace_orchestrator.package_graph import Package

log = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{(package|path|workspace)\}")


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern, re.MULTILINE)
    except re.error:
        return re.compile(re.escape(pattern), re.MULTILINE)


@dataclass(frozen=True)
class ClassifierRule:
    """Maps an output pattern to a more specific failure reason.

    With ``fail_on_match`` the rule also turns an otherwise successful exit
    into a failure (e.g. warnings treated as errors).
    """

    pattern: re.Pattern[str]
    reason: str
    fail_on_match: bool = False

    @classmethod
    def compile(cls, pattern: str, reason: str, fail_on_match: bool = False) -> ClassifierRule:
        return cls(pattern=_compile_pattern(pattern), reason=reason, fail_on_match=fail_on_match)

    def matches(self, output: str) -> bool:
        return bool(self.pattern.search(output))


@dataclass(frozen=True)
class SkillEnvironment:
    """Environment roots a skill requires: a base root plus ordered overlays."""

    base_root: str
    overlays: tuple[str, ...] = ()


@dataclass(frozen=True)
class Skill:
    """Named, parameterized operation runnable against a package.

    ``command`` is either a shell-like string, tokenized with :mod:`shlex`
    before substitution, or an argv sequence. Each token may contain the
    ``{package}``, ``{path}`` and ``{workspace}`` placeholders.
    """

    name: str
    command: str | tuple[str, ...]
    description: str = ""
    requires: frozenset[str] | None = None
    success_exit_codes: frozenset[int] = frozenset({0})
    classifiers: tuple[ClassifierRule, ...] = ()
    environment: SkillEnvironment | None = None

    @property
    def required_capabilities(self) -> frozenset[str]:
        """Capabilities a package must declare; defaults to the skill name."""
        if self.requires is None:
            return frozenset({self.name})
        return self.requires

    def applies_to(self, package: Package) -> bool:
        return self.required_capabilities <= package.capabilities

    def _template_tokens(self) -> list[str]:
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    def render_command(self, package: Package, workspace: Path | str | None = None) -> list[str]:
        """Build the argv for ``package``; substituted values never split into extra arguments."""
        values = {
            "package": package.name,
            "path": package.path or ".",
            "workspace": str(workspace) if workspace is not None else ".",
        }
        return [
            _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], token)
            for token in self._template_tokens()
        ]

    def classify(self, exit_code: int | None, output: str) -> tuple[bool, str | None]:
        """Return ``(succeeded, reason)`` for a finished subprocess.

        Categorization is best effort: a nonzero exit fails whether or not a
        rule matches, and the first matching rule only supplies the reason.
        """
        if exit_code is not None and exit_code in self.success_exit_codes:
            for rule in self.classifiers:
                if rule.fail_on_match and rule.matches(output):
                    return False, rule.reason
            return True, None

        for rule in self.classifiers:
            if rule.matches(output):
                return False, rule.reason
        return False, f"exit code {exit_code}"


def skill_from_config(entry: SkillConfig) -> Skill:
    """Build an immutable skill from its configuration entry."""
    command = entry.command if isinstance(entry.command, str) else tuple(entry.command)
    environment = None
    if entry.environment is not None:
        environment = SkillEnvironment(
            base_root=entry.environment.base_root,
            overlays=tuple(entry.environment.overlays),
        )
    return Skill(
        name=entry.name.strip(),
        command=command,
        description=entry.description,
        requires=frozenset(entry.requires) if entry.requires is not None else None,
        success_exit_codes=frozenset(entry.success_exit_codes),
        classifiers=tuple(
            ClassifierRule.compile(rule.pattern, rule.reason, rule.fail_on_match)
            for rule in entry.classifiers
        ),
        environment=environment,
    )


BUILTIN_SKILLS: tuple[Skill, ...] = (
    Skill(
        name="build",
        command="colcon build --packages-select {package}",
        description="Build the package and install it into the workspace overlay.",
        classifiers=(
            ClassifierRule.compile(r"CMake Error", "configuration error"),
            ClassifierRule.compile(r"(?i)\berror:", "compiler error"),
            ClassifierRule.compile(r"ModuleNotFoundError|Could not find a package", "missing dependency"),
        ),
    ),
    Skill(
        name="test",
        command="colcon test --packages-select {package} --return-code-on-test-failure",
        description="Run the package test suite.",
        classifiers=(
            ClassifierRule.compile(r"(?i)\b\d+ (tests? )?failed|\bFAILED\b", "test failures"),
            ClassifierRule.compile(r"(?i)\berror:", "compiler error"),
        ),
    ),
    Skill(
        name="lint",
        command="colcon test --packages-select {package} --ctest-args -L linter --return-code-on-test-failure",
        description="Run the package linters and style checkers.",
        classifiers=(
            ClassifierRule.compile(
                r"(?i)(flake8|pep257|cpplint|cppcheck|uncrustify|xmllint|copyright|lint_cmake)",
                "lint violations found",
            ),
        ),
    ),
    Skill(
        name="deps",
        command="rosdep check --from-paths {path} --ignore-src",
        description="Check that the system dependencies of the package are installed.",
        classifiers=(
            ClassifierRule.compile(r"(?i)cannot be satisfied|not installed|resolve the following", "missing system dependencies"),
        ),
    ),
)


class SkillRegistry:
    """Registry of skills, populated once and read-only afterwards."""

    def __init__(self):
        self._skills: dict[str, Skill] = {}

    @classmethod
    def from_config(cls, config: Config | None = None, include_builtin: bool = True) -> SkillRegistry:
        """Registry holding the built-in catalog with configured overrides applied.

        Raises:
            DuplicateSkillError: if the configuration defines a name twice
        """
        cfg = config or get_config()
        configured: dict[str, Skill] = {}
        for entry in cfg.skills:
            skill = skill_from_config(entry)
            if skill.name in configured:
                raise DuplicateSkillError(skill.name)
            configured[skill.name] = skill

        registry = cls()
        if include_builtin:
            for skill in BUILTIN_SKILLS:
                if skill.name not in configured:
                    registry.register(skill)
        for skill in configured.values():
            registry.register(skill)
        return registry

    def register(self, skill: Skill) -> None:
        """Register a skill.

        Raises:
            DuplicateSkillError: if the name already exists
        """
        if not skill.name:
            raise ValueError("Skill must have a name")
        if skill.name in self._skills:
            raise DuplicateSkillError(skill.name)
        log.debug("Registering skill", skill=skill.name)
        self._skills[skill.name] = skill

    def resolve(self, name: str) -> Skill:
        """Get a skill by name.

        Raises:
            UnknownSkillError: if not found
        """
        skill = self._skills.get(name)
        if skill is None:
            raise UnknownSkillError(name)
        return skill

    def has_skill(self, name: str) -> bool:
        return name in self._skills

    def list_skills(self) -> list[str]:
        return sorted(self._skills)

    def __iter__(self) -> Iterator[Skill]:
        return iter(self._skills[name] for name in self.list_skills())

    def __len__(self) -> int:
        return len(self._skills)
