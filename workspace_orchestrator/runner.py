"""Runs one skill against one package as a subprocess."""

from __future__ import annotations

import asyncio
import codecs
import os
import shlex
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from workspace_orchestrator.config import Config, get_config
from workspace_orchestrator.environment import EnvironmentContext
from workspace_orchestrator.logging import get_logger
from workspace_orchestrator.package_graph import Package
from workspace_orchestrator.skills import Skill

log = get_logger(__name__)

TIMEOUT_REASON = "Timeout"
CANCELLED_REASON = "Cancelled"

_READ_CHUNK_BYTES = 65536


class OutcomeKind(str, Enum):
    """Terminal state of one (package, skill) pair."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_UNSUPPORTED = "skipped-unsupported"
    SKIPPED_UPSTREAM_FAILURE = "skipped-upstream-failure"
    CANCELLED = "cancelled"

    @property
    def attempted(self) -> bool:
        return self in (OutcomeKind.SUCCESS, OutcomeKind.FAILURE)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one (package, skill) pair; never mutated after creation."""

    package: str
    skill: str
    kind: OutcomeKind
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    output: str = ""
    duration: float = 0.0
    reason: str | None = None
    command: tuple[str, ...] = ()
    attempts: int = 0

    @classmethod
    def skipped(cls, package: str, skill: str, kind: OutcomeKind, reason: str) -> ExecutionOutcome:
        return cls(package=package, skill=skill, kind=kind, reason=reason)

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def to_dict(self, include_output: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "package": self.package,
            "skill": self.skill,
            "kind": self.kind.value,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "duration": round(self.duration, 3),
            "command": list(self.command),
            "attempts": self.attempts,
        }
        if include_output:
            payload["stdout"] = self.stdout
            payload["stderr"] = self.stderr
        return payload


@dataclass
class _CapturedOutput:
    """Output chunks in arrival order, tagged with their stream."""

    chunks: list[tuple[str, str]] = field(default_factory=list)

    def text(self, stream: str | None = None) -> str:
        return "".join(text for name, text in self.chunks if stream is None or name == stream)


def _truncate(text: str, max_chars: int) -> str:
    """Keep the tail of long output; toolchains print the errors last."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"... [truncated {dropped} chars]\n" + text[-max_chars:]


class Runner:
    """Execute skills as subprocesses with timeout and abort handling.

    The runner never interprets or retries failures; it only classifies them.
    """

    def __init__(
        self,
        timeout: float | None = None,
        terminate_grace_seconds: float = 5.0,
        max_output_chars: int = 100000,
        workspace_root: Path | str | None = None,
    ):
        self.timeout = timeout
        self.terminate_grace_seconds = max(0.0, float(terminate_grace_seconds))
        self.max_output_chars = int(max_output_chars)
        self.workspace_root = Path(workspace_root).expanduser().resolve() if workspace_root else None

    @classmethod
    def from_config(cls, config: Config | None = None, workspace_root: Path | str | None = None) -> Runner:
        cfg = config or get_config()
        return cls(
            timeout=cfg.runner.timeout,
            terminate_grace_seconds=cfg.runner.terminate_grace_seconds,
            max_output_chars=cfg.runner.max_output_chars,
            workspace_root=workspace_root or cfg.resolved_workspace_root(),
        )

    # ------------------------------------------------------------------
    # Process helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        """Signal the whole process group so toolchain children stop too."""
        if process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after the grace period."""
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except asyncio.TimeoutError:
            log.warning("Process ignored SIGTERM, killing", pid=process.pid)
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader | None,
        name: str,
        captured: _CapturedOutput,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    captured.chunks.append((name, tail))
                return
            text = decoder.decode(chunk)
            if text:
                captured.chunks.append((name, text))

    async def _collect(self, process: asyncio.subprocess.Process, captured: _CapturedOutput) -> int:
        await asyncio.gather(
            self._read_stream(process.stdout, "stdout", captured),
            self._read_stream(process.stderr, "stderr", captured),
        )
        return await process.wait()

    async def _settle(self, task: asyncio.Task[Any]) -> None:
        """Give the reader a grace period to drain closed pipes, then cancel it."""
        try:
            await asyncio.wait_for(task, timeout=max(self.terminate_grace_seconds, 0.1))
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        skill: Skill,
        package: Package,
        env: EnvironmentContext,
        *,
        timeout: float | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionOutcome:
        """Run ``skill`` for ``package`` under ``env``.

        Args:
            skill: Skill to execute
            package: Target package
            env: Complete environment for the subprocess
            timeout: Per-subprocess timeout override (seconds)
            abort_event: Set by the caller to terminate the subprocess

        Returns:
            ExecutionOutcome with ``success``, ``failure`` or ``cancelled``
        """
        argv = skill.render_command(package, self.workspace_root)
        command = tuple(argv)
        limit = timeout if timeout is not None else self.timeout
        started = time.monotonic()

        def _outcome(kind: OutcomeKind, attempts: int = 1, **kwargs: Any) -> ExecutionOutcome:
            return ExecutionOutcome(
                package=package.name,
                skill=skill.name,
                kind=kind,
                command=command,
                duration=time.monotonic() - started,
                attempts=attempts,
                **kwargs,
            )

        if abort_event is not None and abort_event.is_set():
            return _outcome(OutcomeKind.CANCELLED, reason=CANCELLED_REASON, attempts=0)
        if not argv:
            return _outcome(OutcomeKind.FAILURE, reason="Empty command")

        log.info("Executing skill", skill=skill.name, package=package.name, command=shlex.join(argv), timeout=limit)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env.as_dict(),
                cwd=str(self.workspace_root) if self.workspace_root else None,
                start_new_session=True,
            )
        except FileNotFoundError:
            log.error("Command not found", skill=skill.name, package=package.name, executable=argv[0])
            return _outcome(OutcomeKind.FAILURE, reason="Command not found", stderr=f"{argv[0]}: command not found")
        except OSError as e:
            log.error("Failed to launch command", skill=skill.name, package=package.name, error=str(e))
            return _outcome(OutcomeKind.FAILURE, reason=f"Launch failed: {e}", stderr=str(e))

        captured = _CapturedOutput()
        collect_task = asyncio.create_task(self._collect(process, captured))
        abort_wait_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_wait_task = asyncio.create_task(abort_event.wait())
        status = "finished"
        try:
            wait_tasks: set[asyncio.Task[Any]] = {collect_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=limit,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if collect_task in done:
                await collect_task
            else:
                status = "aborted" if abort_wait_task is not None and abort_wait_task in done else "timeout"
                await self._terminate(process)
                await self._settle(collect_task)
        except asyncio.CancelledError:
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()
            collect_task.cancel()
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass
            if not collect_task.done():
                collect_task.cancel()

        full_output = captured.text()
        streams = {
            "stdout": _truncate(captured.text("stdout"), self.max_output_chars),
            "stderr": _truncate(captured.text("stderr"), self.max_output_chars),
            "output": _truncate(full_output, self.max_output_chars),
        }
        exit_code = process.returncode

        if status == "aborted":
            log.info("Skill cancelled", skill=skill.name, package=package.name)
            return _outcome(OutcomeKind.CANCELLED, exit_code=exit_code, reason=CANCELLED_REASON, **streams)
        if status == "timeout":
            log.warning("Skill timed out", skill=skill.name, package=package.name, timeout=limit)
            return _outcome(OutcomeKind.FAILURE, exit_code=exit_code, reason=TIMEOUT_REASON, **streams)

        succeeded, reason = skill.classify(exit_code, full_output)
        kind = OutcomeKind.SUCCESS if succeeded else OutcomeKind.FAILURE
        log.info(
            "Skill finished",
            skill=skill.name,
            package=package.name,
            kind=kind.value,
            exit_code=exit_code,
            reason=reason,
        )
        return _outcome(kind, exit_code=exit_code, reason=reason, **streams)
