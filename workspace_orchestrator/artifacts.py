"""Implementation-plan and verification-walkthrough records.

Both render as Markdown for humans and JSON for reporting tools.
"""

from __future__ import annotations

import json
import shlex
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from workspace_orchestrator.logging import get_logger

log = get_logger(__name__)

PLAN_BASENAME = "implementation_plan"
WALKTHROUGH_BASENAME = "verification_walkthrough"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _cell(text: str) -> str:
    """Make text safe inside a Markdown table cell."""
    return " ".join(text.splitlines()).replace("|", "\\|")


def _bullets(items: tuple[str, ...] | list[str]) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- `{item}`" for item in items)


@dataclass(frozen=True)
class ImplementationPlan:
    """What a run will touch: affected packages and the skill applied to them."""

    skill: str
    description: str = ""
    requested_targets: tuple[str, ...] = ()
    only_affected: bool = False
    affected: tuple[str, ...] = ()
    order: tuple[str, ...] = ()
    to_run: tuple[str, ...] = ()
    unsupported: tuple[str, ...] = ()
    concurrency_limit: int = 1
    timeout_per_package: float | None = None
    environment_roots: tuple[str, ...] = ()
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def to_markdown(self) -> str:
        targets = ", ".join(f"`{t}`" for t in self.requested_targets) or "whole workspace"
        timeout = f"{self.timeout_per_package:g}s" if self.timeout_per_package else "none"
        lines = [
            f"# Implementation plan: `{self.skill}`",
            "",
            f"Created: {self.created_at}",
            "",
        ]
        if self.description:
            lines += [self.description, ""]
        lines += [
            f"- Requested targets: {targets}",
            f"- Only affected: {'yes' if self.only_affected else 'no'}",
            f"- Concurrency limit: {self.concurrency_limit}",
            f"- Timeout per package: {timeout}",
            "",
            "## Affected packages",
            "",
            _bullets(self.affected),
            "",
            "## Execution order",
            "",
        ]
        if self.order:
            lines += [f"{index}. `{name}`" for index, name in enumerate(self.order, start=1)]
        else:
            lines.append("(empty)")
        lines += [
            "",
            f"## Packages to run `{self.skill}`",
            "",
            _bullets(self.to_run),
            "",
            "## Skipped (skill not supported)",
            "",
            _bullets(self.unsupported),
            "",
            "## Environment roots",
            "",
            _bullets(self.environment_roots),
            "",
        ]
        return "\n".join(lines)


@dataclass(frozen=True)
class WalkthroughStep:
    """One re-runnable command and the outcome it produced."""

    package: str
    outcome: str
    command: tuple[str, ...] = ()
    reason: str | None = None
    exit_code: int | None = None
    duration: float = 0.0

    @property
    def command_line(self) -> str:
        return shlex.join(self.command) if self.command else ""


@dataclass(frozen=True)
class VerificationWalkthrough:
    """Literal commands a human or downstream tool can re-run to confirm a run."""

    skill: str
    status: str
    working_directory: str = "."
    environment: tuple[tuple[str, str], ...] = ()
    steps: tuple[WalkthroughStep, ...] = ()
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill": self.skill,
            "status": self.status,
            "working_directory": self.working_directory,
            "environment": dict(self.environment),
            "steps": [
                {
                    "package": step.package,
                    "outcome": step.outcome,
                    "command": step.command_line,
                    "argv": list(step.command),
                    "reason": step.reason,
                    "exit_code": step.exit_code,
                    "duration": round(step.duration, 3),
                }
                for step in self.steps
            ],
            "created_at": self.created_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def shell_script(self) -> str:
        """Commands as a POSIX shell snippet (environment exports, then one line per package)."""
        lines = [f"cd {shlex.quote(self.working_directory)}"]
        lines += [f"export {key}={shlex.quote(value)}" for key, value in self.environment]
        lines += [step.command_line for step in self.steps if step.command]
        return "\n".join(lines)

    def to_markdown(self) -> str:
        lines = [
            f"# Verification walkthrough: `{self.skill}`",
            "",
            f"Overall status: **{self.status}**",
            "",
            f"Created: {self.created_at}",
            "",
            "## Re-run",
            "",
            "```sh",
            self.shell_script(),
            "```",
            "",
            "## Results",
            "",
            "| Package | Outcome | Exit code | Reason | Command |",
            "|---|---|---|---|---|",
        ]
        for step in self.steps:
            exit_code = "" if step.exit_code is None else str(step.exit_code)
            command = f"`{_cell(step.command_line)}`" if step.command else ""
            reason = _cell(step.reason or "")
            lines.append(f"| `{step.package}` | {step.outcome} | {exit_code} | {reason} | {command} |")
        lines.append("")
        return "\n".join(lines)


def write_artifacts(
    plan: ImplementationPlan,
    walkthrough: VerificationWalkthrough,
    directory: Path | str,
) -> list[Path]:
    """Write both records as Markdown and JSON; returns the written paths."""
    target = Path(directory).expanduser()
    target.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for basename, record in ((PLAN_BASENAME, plan), (WALKTHROUGH_BASENAME, walkthrough)):
        md_path = target / f"{basename}.md"
        md_path.write_text(record.to_markdown(), encoding="utf-8")
        json_path = target / f"{basename}.json"
        json_path.write_text(record.to_json(), encoding="utf-8")
        written += [md_path, json_path]
    log.info("Artifacts written", directory=str(target), files=len(written))
    return written
