"""Orchestrates one skill across the packages of a workspace.

Flow of a single invocation:

    PLANNING     resolve the skill, targets, topological order, applicability
                 and environment; configuration errors abort here before
                 anything runs
    EXECUTING    launch eligible packages up to the concurrency limit;
                 dependents of a failure are skipped, never attempted
    AGGREGATING  build the RunSummary and artifacts
    DONE         terminal; instances are never reused
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

from workspace_orchestrator.artifacts import (
    ImplementationPlan,
    VerificationWalkthrough,
    WalkthroughStep,
    write_artifacts,
)
from workspace_orchestrator.config import Config, get_config
from workspace_orchestrator.environment import EnvironmentContext
from workspace_orchestrator.exceptions import ConfigError, OrchestratorStateError
from workspace_orchestrator.logging import get_logger, run_context
from workspace_orchestrator.package_graph import Package, PackageGraph, PackageRef
from workspace_orchestrator.runner import (
    CANCELLED_REASON,
    TIMEOUT_REASON,
    ExecutionOutcome,
    OutcomeKind,
    Runner,
)
from workspace_orchestrator.skills import Skill, SkillEnvironment, SkillRegistry

log = get_logger(__name__)

# Outcomes of a dependency that prevent its dependents from running.
_BLOCKING_KINDS = {
    OutcomeKind.FAILURE,
    OutcomeKind.SKIPPED_UPSTREAM_FAILURE,
    OutcomeKind.CANCELLED,
}


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    DONE = "done"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NO_OP = "no-op"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryPolicy:
    """Caller-supplied retry policy layered above the runner.

    ``retry_reasons`` restricts retries to failures with those reasons; empty
    means any failure reason qualifies. Timeouts are governed separately by
    ``retry_on_timeout``.
    """

    max_attempts: int = 1
    retry_on_timeout: bool = False
    retry_reasons: frozenset[str] = frozenset()

    def should_retry(self, outcome: ExecutionOutcome, attempt: int) -> bool:
        if outcome.kind is not OutcomeKind.FAILURE or attempt >= self.max_attempts:
            return False
        if outcome.reason == TIMEOUT_REASON:
            return self.retry_on_timeout
        return not self.retry_reasons or outcome.reason in self.retry_reasons


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation options; ``None`` falls back to configuration."""

    concurrency_limit: int | None = None
    timeout_per_package: float | None = None
    only_affected: bool = False
    retry: RetryPolicy | None = None


@dataclass(frozen=True)
class RunSummary:
    """Aggregate of every outcome of one invocation, in execution order."""

    skill: str
    status: RunStatus
    outcomes: tuple[ExecutionOutcome, ...]
    plan: ImplementationPlan
    walkthrough: VerificationWalkthrough
    duration: float = 0.0
    artifacts_error: str | None = None

    @property
    def failed(self) -> list[str]:
        return [o.package for o in self.outcomes if o.kind is OutcomeKind.FAILURE]

    @property
    def succeeded(self) -> list[str]:
        return [o.package for o in self.outcomes if o.kind is OutcomeKind.SUCCESS]

    @property
    def skipped(self) -> list[tuple[str, str]]:
        """``(package, reason)`` for every package that was never attempted."""
        return [
            (o.package, o.reason or o.kind.value)
            for o in self.outcomes
            if o.kind in (OutcomeKind.SKIPPED_UNSUPPORTED, OutcomeKind.SKIPPED_UPSTREAM_FAILURE)
        ]

    def outcome_for(self, package: str) -> ExecutionOutcome:
        for outcome in self.outcomes:
            if outcome.package == package:
                return outcome
        raise KeyError(package)

    def kinds(self) -> dict[str, OutcomeKind]:
        return {o.package: o.kind for o in self.outcomes}

    def counts(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in OutcomeKind}
        for outcome in self.outcomes:
            counts[outcome.kind.value] += 1
        return counts

    def write_artifacts(self, directory: Path | str) -> list[Path]:
        return write_artifacts(self.plan, self.walkthrough, directory)

    def to_dict(self, include_output: bool = False) -> dict[str, Any]:
        return {
            "skill": self.skill,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "counts": self.counts(),
            "failed": self.failed,
            "skipped": [{"package": name, "reason": reason} for name, reason in self.skipped],
            "outcomes": [o.to_dict(include_output=include_output) for o in self.outcomes],
            "artifacts_error": self.artifacts_error,
        }


@dataclass
class _Plan:
    skill: Skill
    order: list[Package]
    to_run: list[Package]
    unsupported: list[Package]
    env: EnvironmentContext
    concurrency: int
    timeout: float | None
    record: ImplementationPlan


class _OutcomeLog:
    """Append-only outcome accumulator; the only mutable shared structure."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._entries: list[ExecutionOutcome] = []
        self._by_package: dict[str, ExecutionOutcome] = {}

    async def record(self, outcome: ExecutionOutcome) -> None:
        async with self._lock:
            if outcome.package in self._by_package:
                raise OrchestratorStateError(f"Outcome already recorded for package: {outcome.package}")
            self._entries.append(outcome)
            self._by_package[outcome.package] = outcome

    def get(self, package: str) -> ExecutionOutcome | None:
        return self._by_package.get(package)

    def __contains__(self, package: object) -> bool:
        return package in self._by_package

    def entries(self) -> list[ExecutionOutcome]:
        return list(self._entries)


def _aggregate_status(outcomes: Iterable[ExecutionOutcome], cancelled: bool) -> RunStatus:
    if cancelled:
        return RunStatus.CANCELLED
    kinds = {outcome.kind for outcome in outcomes}
    if OutcomeKind.FAILURE in kinds:
        return RunStatus.FAILURE
    if OutcomeKind.SUCCESS in kinds:
        return RunStatus.SUCCESS
    return RunStatus.NO_OP


class Orchestrator:
    """Runs one skill over a package graph. Single use: one ``run`` per instance."""

    def __init__(
        self,
        graph: PackageGraph,
        registry: SkillRegistry,
        *,
        runner: Runner | None = None,
        environment: EnvironmentContext | None = None,
        config: Config | None = None,
        workspace_root: Path | str | None = None,
        artifacts_dir: Path | str | None = None,
        on_outcome: Callable[[ExecutionOutcome], None] | None = None,
    ):
        cfg = config or get_config()
        self._config = cfg
        self._graph = graph
        self._registry = registry
        self._workspace_root = (
            Path(workspace_root).expanduser().resolve() if workspace_root else cfg.resolved_workspace_root()
        )
        self._runner = runner or Runner.from_config(cfg, workspace_root=self._workspace_root)
        self._environment = environment
        artifacts = artifacts_dir or cfg.orchestrator.artifacts_dir
        self._artifacts_dir = Path(artifacts).expanduser() if artifacts else None
        self._on_outcome = on_outcome
        self._state = OrchestratorState.IDLE
        self._abort_event = asyncio.Event()
        self._cancelled = False

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def cancel(self) -> None:
        """Request cancellation; outstanding subprocesses are terminated."""
        if self._state in (OrchestratorState.AGGREGATING, OrchestratorState.DONE):
            return
        log.warning("Cancellation requested", state=self._state.value)
        self._cancelled = True
        self._abort_event.set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _resolve_root(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self._workspace_root / path

    def _build_environment(self, skill: Skill) -> EnvironmentContext:
        env_cfg = self._config.environment
        if skill.environment is not None:
            roots: SkillEnvironment | None = skill.environment
        elif self._environment is not None:
            return self._environment
        elif env_cfg.base_root:
            roots = SkillEnvironment(base_root=env_cfg.base_root, overlays=tuple(env_cfg.overlays))
        else:
            roots = None

        if roots is None:
            return EnvironmentContext.ambient()
        return EnvironmentContext.build(
            self._resolve_root(roots.base_root),
            [self._resolve_root(overlay) for overlay in roots.overlays],
            inherit_ambient=env_cfg.inherit_ambient,
            env_file=env_cfg.env_file,
        )

    def _concurrency_limit(self, options: RunOptions) -> int:
        if options.concurrency_limit:
            return max(1, int(options.concurrency_limit))
        if self._config.orchestrator.concurrency > 0:
            return self._config.orchestrator.concurrency
        return os.cpu_count() or 1

    def _plan(
        self,
        skill_name: str,
        targets: Iterable[PackageRef] | None,
        options: RunOptions,
    ) -> _Plan:
        skill = self._registry.resolve(skill_name)
        requested = sorted({self._graph.get(ref).name for ref in (targets or [])})

        if options.only_affected and requested:
            selected = sorted(p.name for p in self._graph.affected_by(requested))
        else:
            selected = requested
        order = self._graph.topological_order(selected or None)

        to_run = [p for p in order if skill.applies_to(p)]
        unsupported = [p for p in order if not skill.applies_to(p)]
        env = self._build_environment(skill)
        concurrency = self._concurrency_limit(options)
        timeout = options.timeout_per_package if options.timeout_per_package is not None else self._runner.timeout

        record = ImplementationPlan(
            skill=skill.name,
            description=skill.description,
            requested_targets=tuple(requested),
            only_affected=options.only_affected,
            affected=tuple(selected) if selected else tuple(p.name for p in order),
            order=tuple(p.name for p in order),
            to_run=tuple(p.name for p in to_run),
            unsupported=tuple(p.name for p in unsupported),
            concurrency_limit=concurrency,
            timeout_per_package=timeout,
            environment_roots=tuple(root.name for root in env.roots),
        )
        log.info(
            "Run planned",
            skill=skill.name,
            packages=len(order),
            to_run=len(to_run),
            unsupported=len(unsupported),
            concurrency=concurrency,
        )
        return _Plan(skill, order, to_run, unsupported, env, concurrency, timeout, record)

    def plan(
        self,
        skill_name: str,
        targets: Iterable[PackageRef] | None = None,
        options: RunOptions | None = None,
    ) -> ImplementationPlan:
        """Planning phase only; nothing is executed and the instance stays usable.

        Raises:
            ConfigError: for unknown skills or packages and missing environment roots
        """
        return self._plan(skill_name, targets, options or RunOptions()).record

    # ------------------------------------------------------------------
    # Executing
    # ------------------------------------------------------------------

    async def _record(self, outcomes: _OutcomeLog, outcome: ExecutionOutcome) -> None:
        await outcomes.record(outcome)
        if self._on_outcome is not None:
            self._on_outcome(outcome)

    async def _run_package(self, plan: _Plan, package: Package, retry: RetryPolicy | None) -> ExecutionOutcome:
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._runner.execute(
                plan.skill,
                package,
                plan.env,
                timeout=plan.timeout,
                abort_event=self._abort_event,
            )
            if attempt > 1:
                outcome = replace(outcome, attempts=attempt)
            if retry is None or self._abort_event.is_set() or not retry.should_retry(outcome, attempt):
                return outcome
            log.warning(
                "Retrying package",
                skill=plan.skill.name,
                package=package.name,
                attempt=attempt + 1,
                reason=outcome.reason,
            )

    def _outcome_from_task(self, plan: _Plan, package: Package, task: asyncio.Task[ExecutionOutcome]) -> ExecutionOutcome:
        error = task.exception()
        if error is None:
            return task.result()
        log.error("Runner raised unexpectedly", package=package.name, error=str(error))
        return ExecutionOutcome(
            package=package.name,
            skill=plan.skill.name,
            kind=OutcomeKind.FAILURE,
            reason=f"Internal error: {error}",
            command=tuple(plan.skill.render_command(package, self._workspace_root)),
        )

    async def _execute(self, plan: _Plan, outcomes: _OutcomeLog, options: RunOptions) -> None:
        closure = {p.name for p in plan.order}
        unsupported = {p.name for p in plan.unsupported}
        # Unsupported packages never run but still sit between their
        # dependencies and dependents; upstream failures are relayed through them.
        relayed: dict[str, list[str]] = {}
        pending = list(plan.order)
        running: dict[asyncio.Task[ExecutionOutcome], Package] = {}
        abort_wait = asyncio.create_task(self._abort_event.wait())
        try:
            while pending or running:
                if self._abort_event.is_set():
                    break

                for package in list(pending):
                    deps = sorted(d for d in package.dependencies if d in closure)
                    finished = [outcomes.get(d) for d in deps]
                    if any(outcome is None for outcome in finished):
                        continue
                    blocking: list[str] = []
                    for outcome in finished:
                        if outcome is None:
                            continue
                        if outcome.kind in _BLOCKING_KINDS:
                            blocking.append(outcome.package)
                        else:
                            blocking.extend(relayed.get(outcome.package, []))
                    blocking = sorted(set(blocking))

                    if package.name in unsupported:
                        pending.remove(package)
                        if blocking:
                            relayed[package.name] = blocking
                        await self._record(outcomes, self._unsupported_outcome(plan, package))
                        continue
                    if blocking:
                        pending.remove(package)
                        log.info("Skipping package after upstream failure", package=package.name, upstream=blocking)
                        await self._record(
                            outcomes,
                            ExecutionOutcome.skipped(
                                package.name,
                                plan.skill.name,
                                OutcomeKind.SKIPPED_UPSTREAM_FAILURE,
                                "upstream failure: " + ", ".join(blocking),
                            ),
                        )
                        continue
                    if len(running) >= plan.concurrency:
                        continue
                    pending.remove(package)
                    task = asyncio.create_task(self._run_package(plan, package, options.retry))
                    running[task] = package

                if not running:
                    if pending:
                        raise OrchestratorStateError(
                            "No runnable package but work remains: " + ", ".join(p.name for p in pending)
                        )
                    break

                done, _ = await asyncio.wait(
                    set(running) | {abort_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in [t for t in running if t in done]:
                    package = running.pop(task)
                    await self._record(outcomes, self._outcome_from_task(plan, package, task))

            if running:
                # Cancelled: runners observe the abort event and terminate their processes.
                await asyncio.wait(set(running))
                for task, package in list(running.items()):
                    await self._record(outcomes, self._outcome_from_task(plan, package, task))
                running.clear()
            for package in pending:
                if package.name in unsupported:
                    outcome = self._unsupported_outcome(plan, package)
                else:
                    outcome = ExecutionOutcome.skipped(
                        package.name, plan.skill.name, OutcomeKind.CANCELLED, f"{CANCELLED_REASON} before start"
                    )
                await self._record(outcomes, outcome)
        except asyncio.CancelledError:
            self._abort_event.set()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            raise
        finally:
            abort_wait.cancel()

    @staticmethod
    def _unsupported_outcome(plan: _Plan, package: Package) -> ExecutionOutcome:
        return ExecutionOutcome.skipped(
            package.name,
            plan.skill.name,
            OutcomeKind.SKIPPED_UNSUPPORTED,
            f"package does not support '{plan.skill.name}'",
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _walkthrough(self, plan: _Plan, ordered: list[ExecutionOutcome], status: RunStatus) -> VerificationWalkthrough:
        steps = []
        for outcome in ordered:
            command = outcome.command
            if not command and outcome.kind is not OutcomeKind.SKIPPED_UNSUPPORTED:
                command = tuple(plan.skill.render_command(self._graph.get(outcome.package), self._workspace_root))
            steps.append(
                WalkthroughStep(
                    package=outcome.package,
                    outcome=outcome.kind.value,
                    command=command,
                    reason=outcome.reason,
                    exit_code=outcome.exit_code,
                    duration=outcome.duration,
                )
            )
        return VerificationWalkthrough(
            skill=plan.skill.name,
            status=status.value,
            working_directory=str(self._workspace_root),
            environment=tuple(sorted(plan.env.defined.items())),
            steps=tuple(steps),
        )

    async def run(
        self,
        skill_name: str,
        targets: Iterable[PackageRef] | None = None,
        options: RunOptions | None = None,
    ) -> RunSummary:
        """Run ``skill_name`` over ``targets`` (whole workspace when empty).

        Raises:
            ConfigError: unknown skill or package, or missing environment root;
                raised before any subprocess starts
            OrchestratorStateError: if this instance already ran
        """
        if self._state is not OrchestratorState.IDLE:
            raise OrchestratorStateError("Orchestrator already used; create a new instance per run")
        with run_context(run_id=uuid.uuid4().hex[:8]):
            return await self._run(skill_name, targets, options or RunOptions())

    async def _run(
        self,
        skill_name: str,
        targets: Iterable[PackageRef] | None,
        options: RunOptions,
    ) -> RunSummary:
        started = time.monotonic()
        self._state = OrchestratorState.PLANNING
        try:
            plan = self._plan(skill_name, targets, options)
        except ConfigError as e:
            self._state = OrchestratorState.DONE
            log.error("Run aborted during planning", skill=skill_name, error=str(e))
            raise

        self._state = OrchestratorState.EXECUTING
        outcomes = _OutcomeLog()
        try:
            await self._execute(plan, outcomes, options)
        except BaseException:
            self._state = OrchestratorState.DONE
            raise

        self._state = OrchestratorState.AGGREGATING
        try:
            position = {p.name: index for index, p in enumerate(plan.order)}
            ordered = sorted(outcomes.entries(), key=lambda o: position[o.package])
            status = _aggregate_status(ordered, self._cancelled)
            summary = RunSummary(
                skill=plan.skill.name,
                status=status,
                outcomes=tuple(ordered),
                plan=plan.record,
                walkthrough=self._walkthrough(plan, ordered, status),
                duration=time.monotonic() - started,
            )
            if self._artifacts_dir is not None:
                try:
                    summary.write_artifacts(self._artifacts_dir)
                except OSError as e:
                    log.error("Failed to write artifacts", directory=str(self._artifacts_dir), error=str(e))
                    summary = replace(summary, artifacts_error=str(e))
        finally:
            self._state = OrchestratorState.DONE

        log.info(
            "Run finished",
            skill=plan.skill.name,
            status=status.value,
            failed=len(summary.failed),
            duration=round(summary.duration, 3),
        )
        return summary
