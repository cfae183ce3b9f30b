"""Command-line entry point.

Exit status: 0 when the run succeeded or had nothing to do, 1 when a package
failed, 2 on configuration errors, 130 when the run was cancelled.
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from workspace_orchestrator.config import Config, set_config
from workspace_orchestrator.exceptions import ConfigError
from workspace_orchestrator.logging import configure_logging, get_logger
from workspace_orchestrator.orchestrator import Orchestrator, RunOptions, RunStatus, RunSummary
from workspace_orchestrator.package_graph import PackageGraph
from workspace_orchestrator.runner import ExecutionOutcome, OutcomeKind
from workspace_orchestrator.skills import SkillRegistry

log = get_logger(__name__)

EXIT_OK = 0
EXIT_EXECUTION_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130

_KIND_STYLES = {
    OutcomeKind.SUCCESS: "green",
    OutcomeKind.FAILURE: "bold red",
    OutcomeKind.SKIPPED_UNSUPPORTED: "dim",
    OutcomeKind.SKIPPED_UPSTREAM_FAILURE: "yellow",
    OutcomeKind.CANCELLED: "magenta",
}

app = typer.Typer(
    help="Run build, test, lint and dependency skills across workspace packages.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def exit_code_for(status: RunStatus) -> int:
    """Map a run status to the process exit status."""
    if status in (RunStatus.SUCCESS, RunStatus.NO_OP):
        return EXIT_OK
    if status is RunStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_EXECUTION_FAILURE


def _setup(config_path: str, verbose: bool) -> Config:
    cfg = Config.from_yaml(Path(config_path)) if config_path else Config.load()
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _load_workspace(cfg: Config) -> tuple[PackageGraph, SkillRegistry]:
    graph = PackageGraph.from_manifest_file(cfg.resolved_manifest_path(), cfg.resolved_workspace_root())
    return graph, SkillRegistry.from_config(cfg)


def _fail_config(error: ConfigError) -> None:
    err_console.print(f"[bold red]Configuration error:[/] {error}")
    raise typer.Exit(code=EXIT_CONFIG_ERROR)


def _print_outcome(outcome: ExecutionOutcome) -> None:
    style = _KIND_STYLES.get(outcome.kind, "")
    reason = f" ({outcome.reason})" if outcome.reason else ""
    err_console.print(f"  [{style}]{outcome.kind.value}[/] {outcome.package}{reason}")


def _render_summary(summary: RunSummary) -> None:
    table = Table(title=f"{summary.skill}: {summary.status.value}")
    table.add_column("Package")
    table.add_column("Outcome")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")
    for outcome in summary.outcomes:
        style = _KIND_STYLES.get(outcome.kind, "")
        table.add_row(
            outcome.package,
            f"[{style}]{outcome.kind.value}[/]",
            "" if outcome.exit_code is None else str(outcome.exit_code),
            f"{outcome.duration:.1f}s" if outcome.kind.attempted else "",
            outcome.reason or "",
        )
    console.print(table)
    for outcome in summary.outcomes:
        if outcome.kind is OutcomeKind.FAILURE and outcome.output.strip():
            console.rule(f"{outcome.package} output")
            console.print(outcome.output.rstrip(), markup=False, highlight=False)


async def _run_with_signals(orchestrator: Orchestrator, skill: str, targets: list[str], options: RunOptions) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        log.debug("Signal handlers unavailable; Ctrl-C aborts without a summary")
    try:
        return await orchestrator.run(skill, targets, options)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)


@app.command()
def run(
    skill: str = typer.Argument(..., help="Skill to run (build, test, lint, deps, ...)"),
    targets: Optional[List[str]] = typer.Argument(None, help="Target packages (default: whole workspace)"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    concurrency: int = typer.Option(0, "-j", "--concurrency", help="Parallel subprocesses (0 = config/CPU count)"),
    timeout: float = typer.Option(0.0, "--timeout", help="Per-package timeout in seconds (0 = config default)"),
    only_affected: bool = typer.Option(False, "--only-affected", help="Also run packages depending on the targets"),
    changed: Optional[List[str]] = typer.Option(None, "--changed", help="Changed file; its package becomes a target"),
    artifacts_dir: str = typer.Option("", "--artifacts-dir", help="Write plan and walkthrough here"),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run a skill over the target packages and their dependencies."""
    cfg = _setup(config, verbose)
    try:
        graph, registry = _load_workspace(cfg)
        names = list(targets or [])
        if changed:
            touched = graph.packages_for_paths(changed, cfg.resolved_workspace_root())
            if not touched and not names:
                err_console.print("No package contains the changed files; nothing to do.")
                raise typer.Exit(code=EXIT_OK)
            names += sorted(p.name for p in touched)
            only_affected = True

        orchestrator = Orchestrator(
            graph,
            registry,
            config=cfg,
            artifacts_dir=artifacts_dir or None,
            on_outcome=None if json_output else _print_outcome,
        )
        options = RunOptions(
            concurrency_limit=concurrency or None,
            timeout_per_package=timeout or None,
            only_affected=only_affected,
        )
        summary = asyncio.run(_run_with_signals(orchestrator, skill, names, options))
    except ConfigError as e:
        _fail_config(e)
        return

    if json_output:
        console.print_json(json.dumps(summary.to_dict()))
    else:
        _render_summary(summary)
    if summary.artifacts_error:
        err_console.print(f"[yellow]Artifacts not written:[/] {summary.artifacts_error}")
    raise typer.Exit(code=exit_code_for(summary.status))


@app.command()
def plan(
    skill: str = typer.Argument(..., help="Skill to plan"),
    targets: Optional[List[str]] = typer.Argument(None, help="Target packages (default: whole workspace)"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    only_affected: bool = typer.Option(False, "--only-affected", help="Also include packages depending on the targets"),
    json_output: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Print the implementation plan without running anything."""
    cfg = _setup(config, verbose)
    try:
        graph, registry = _load_workspace(cfg)
        record = Orchestrator(graph, registry, config=cfg).plan(
            skill,
            list(targets or []),
            RunOptions(only_affected=only_affected),
        )
    except ConfigError as e:
        _fail_config(e)
        return
    if json_output:
        console.print_json(record.to_json())
    else:
        console.print(record.to_markdown(), markup=False, highlight=False)


@app.command()
def graph(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show packages in dependency-first order."""
    cfg = _setup(config, False)
    try:
        package_graph, _ = _load_workspace(cfg)
    except ConfigError as e:
        _fail_config(e)
        return
    table = Table(title="Workspace packages")
    table.add_column("#", justify="right")
    table.add_column("Package")
    table.add_column("Depends on")
    table.add_column("Capabilities")
    for index, package in enumerate(package_graph.topological_order(), start=1):
        table.add_row(
            str(index),
            package.name,
            ", ".join(sorted(package.dependencies)),
            ", ".join(sorted(package.capabilities)),
        )
    console.print(table)


@app.command()
def skills(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List the skill catalog."""
    cfg = _setup(config, False)
    try:
        registry = SkillRegistry.from_config(cfg)
    except ConfigError as e:
        _fail_config(e)
        return
    table = Table(title="Skills")
    table.add_column("Skill")
    table.add_column("Requires")
    table.add_column("Command")
    table.add_column("Description")
    for entry in registry:
        command = entry.command if isinstance(entry.command, str) else " ".join(entry.command)
        table.add_row(entry.name, ", ".join(sorted(entry.required_capabilities)), command, entry.description)
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from workspace_orchestrator import __version__

    console.print(f"workspace-orchestrator v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
