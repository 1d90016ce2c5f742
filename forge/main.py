"""Forge CLI entrypoint."""

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click

from .agents.claude import ClaudeAgent
from .config.loader import (
    DEV_FLOW,
    ConfigError,
    create_default_config,
    load_config,
    load_execution_config,
    load_state_machine,
)
from .config.models import CommitStrategy, ForgeConfig
from .errors import ForgeError
from .executor.orchestrator import ExecutionDeps, ExecutionOrchestrator, LoopOutcome
from .executor.use_cases import (
    StartOptions,
    abort_execution,
    apply_version_event,
    approve_review,
    get_execution_status,
    pause_execution,
    resume_execution,
    retry_task,
    skip_task,
    start_execution,
)
from .observability.events import ExecutionEvents, TerminalReporter
from .recovery.stale import StaleDecision, find_stale_executions, resolve_stale_execution
from .state.machine import InvalidConfigError, StateMachine
from .state.persistence import DevStatus, Execution
from .state.store import Stores
from .tasks.document import load_plan
from .tasks.plan import get_next_task, get_progress
from .utils.logging import configure_from_settings, setup_logging

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}


@dataclass
class Runtime:
    """Loaded configuration and wired collaborators."""

    config: ForgeConfig
    stores: Stores
    orchestrator: ExecutionOrchestrator

    @property
    def deps(self) -> ExecutionDeps:
        return self.orchestrator.deps


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _load_runtime(ctx: click.Context) -> Runtime:
    """Load configuration and build the orchestrator; exit on config errors."""
    config_path: Path = ctx.obj["config_path"]
    verbose: bool = ctx.obj["verbose"]

    try:
        config = load_config(config_path)
        dev_flow = StateMachine(load_state_machine(config.state_machines_dir, DEV_FLOW))
        settings = load_execution_config(config.execution_file)
    except (ConfigError, InvalidConfigError) as e:
        _fail(f"Configuration error: {e}")

    configure_from_settings(config.logging, verbose=verbose)

    stores = Stores(config.store.path)
    deps = ExecutionDeps(
        projects=stores.projects,
        versions=stores.versions,
        executions=stores.executions,
        attempts=stores.attempts,
        agent=ClaudeAgent(config.agent.model_dump()),
        dev_flow=dev_flow,
        settings=settings,
        events=ExecutionEvents([TerminalReporter(verbose=verbose)]),
    )
    return Runtime(config=config, stores=stores, orchestrator=ExecutionOrchestrator(deps))


def _notify_stale(runtime: Runtime, exclude: Optional[str] = None) -> None:
    stale = [s for s in find_stale_executions(runtime.deps) if s.execution.id != exclude]
    if not stale:
        return
    click.echo(f"⚠ {len(stale)} interrupted execution(s) need a decision:", err=True)
    for item in stale:
        click.echo(f"  {item.describe()}", err=True)
    click.echo("  Run: forge recover", err=True)


def _print_execution(execution: Execution) -> None:
    state = execution.status.value
    if execution.is_paused and state != "paused":
        state += " (pause requested)"
    click.echo(f"Execution: {execution.id}")
    click.echo(f"Version:   {execution.version_id}")
    click.echo(f"Status:    {state}")
    click.echo(f"Progress:  {execution.completed_tasks}/{execution.total_tasks}")
    click.echo(f"Strategy:  {execution.commit_strategy.value}")
    if execution.current_task_id:
        click.echo(f"Task:      {execution.current_task_id}")
    if execution.pre_execution_commit:
        click.echo(f"Checkpoint: {execution.pre_execution_commit[:12]}")
    if execution.last_error:
        click.echo(f"Last error: {execution.last_error}")


def _report_outcome(outcome: Optional[LoopOutcome], execution_id: str) -> None:
    if outcome == LoopOutcome.COMPLETED:
        click.echo(f"✓ Execution {execution_id} completed")
    elif outcome in (LoopOutcome.FAILED, LoopOutcome.BLOCKED):
        click.echo(f"Execution {execution_id} halted; use `forge retry` or `forge skip`")
    elif outcome == LoopOutcome.PAUSED:
        click.echo(f"Execution {execution_id} paused; use `forge resume {execution_id}`")
    elif outcome == LoopOutcome.ERROR:
        click.echo(f"✗ Execution {execution_id} failed; see logs", err=True)
    elif outcome == LoopOutcome.DETACHED:
        click.echo(f"Execution {execution_id} continues in the process already running it")


async def _drive(runtime: Runtime, coro, execution_id: str) -> Optional[LoopOutcome]:
    """Await a use case, then stay in the foreground until its loop stops."""
    await coro
    return await runtime.orchestrator.wait(execution_id)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".forge/config.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """Forge - drive a coding agent through a project's task list."""
    setup_logging(level="DEBUG" if verbose else "INFO")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize Forge configuration."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        _fail(f"Failed to create configuration: {e}")

    click.echo(f"✓ Created configuration: {config_path}")
    click.echo("\nNext steps:")
    click.echo("  1. forge project add <path>")
    click.echo("  2. forge version add <project-id> --name <name> --status ready")
    click.echo("  3. forge start <version-id>")


@cli.group()
def project() -> None:
    """Manage projects."""


@project.command("add")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--name", "-n", help="Project name (defaults to directory name)")
@click.pass_context
def project_add(ctx: click.Context, path: Path, name: Optional[str]) -> None:
    """Register a local project directory."""
    runtime = _load_runtime(ctx)
    path = path.resolve()
    created = runtime.stores.projects.create(name or path.name, str(path))
    click.echo(f"✓ Project {created.id}: {created.name} ({created.path})")


@project.command("list")
@click.pass_context
def project_list(ctx: click.Context) -> None:
    """List projects."""
    runtime = _load_runtime(ctx)
    projects = runtime.stores.projects.list_all()
    if not projects:
        click.echo("No projects")
    for item in projects:
        click.echo(f"{item.id}  {item.name}  {item.path}")


@cli.group()
def version() -> None:
    """Manage versions."""


@version.command("add")
@click.argument("project_id")
@click.option("--name", "-n", required=True, help="Version name")
@click.option("--branch", "-b", help="Branch name")
@click.option(
    "--status",
    type=click.Choice([s.value for s in DevStatus]),
    default=None,
    help="Initial dev status (defaults to the dev flow's initial state)",
)
@click.pass_context
def version_add(
    ctx: click.Context, project_id: str, name: str, branch: Optional[str], status: Optional[str]
) -> None:
    """Add a version to a project."""
    runtime = _load_runtime(ctx)
    if runtime.stores.projects.find_by_id(project_id) is None:
        _fail(f"Project not found: {project_id}")
    created = runtime.stores.versions.create(
        project_id,
        name,
        branch_name=branch,
        dev_status=status or runtime.deps.dev_flow.initial_state,
    )
    click.echo(f"✓ Version {created.id}: {created.name} [{created.dev_status.value}]")


@version.command("list")
@click.argument("project_id")
@click.pass_context
def version_list(ctx: click.Context, project_id: str) -> None:
    """List versions of a project."""
    runtime = _load_runtime(ctx)
    versions = runtime.stores.versions.list_by_project(project_id)
    if not versions:
        click.echo("No versions")
    for item in versions:
        click.echo(f"{item.id}  {item.name}  [{item.dev_status.value}]")


@version.command("event")
@click.argument("version_id")
@click.argument("event")
@click.pass_context
def version_event(ctx: click.Context, version_id: str, event: str) -> None:
    """Apply a dev-flow event (e.g. SCAFFOLD, SCAFFOLD_COMPLETE) to a version."""
    runtime = _load_runtime(ctx)
    try:
        updated = apply_version_event(version_id, event, runtime.deps)
    except ForgeError as e:
        _fail(e.message)
    click.echo(f"✓ Version {updated.id} is now {updated.dev_status.value}")


@version.command("approve")
@click.argument("version_id")
@click.pass_context
def version_approve(ctx: click.Context, version_id: str) -> None:
    """Approve a reviewed version for execution."""
    runtime = _load_runtime(ctx)
    try:
        updated = approve_review(version_id, runtime.deps)
    except ForgeError as e:
        _fail(e.message)
    click.echo(f"✓ Version {updated.id} is now {updated.dev_status.value}")


@cli.command()
@click.argument("version_id")
@click.pass_context
def plan(ctx: click.Context, version_id: str) -> None:
    """Show progress, the next eligible task and blocked tasks."""
    runtime = _load_runtime(ctx)
    deps = runtime.deps
    version_record = deps.versions.find_by_id(version_id)
    if version_record is None:
        _fail(f"Version not found: {version_id}")
    project_record = deps.projects.find_by_id(version_record.project_id)
    if project_record is None:
        _fail(f"Project not found: {version_record.project_id}")

    try:
        document = load_plan(Path(project_record.path), deps.settings)
    except ForgeError as e:
        _fail(e.message)

    progress = get_progress(document.milestones)
    decision = get_next_task(document.milestones)
    click.echo(f"Progress: {progress.completed}/{progress.total} ({progress.percent}%)")
    if decision.task:
        click.echo(f"Next:     {decision.task.id}. {decision.task.description}")
    else:
        click.echo(f"Next:     none ({decision.reason.value})")
    if decision.blocked:
        click.echo(f"Blocked:  {', '.join(decision.blocked)}")


@cli.command()
@click.argument("version_id")
@click.option(
    "--commit-strategy",
    type=click.Choice([s.value for s in CommitStrategy]),
    default=None,
    help="When to commit (defaults to execution.yml)",
)
@click.option("--open-editor", is_flag=True, help="Open the project in the configured editor")
@click.pass_context
def start(
    ctx: click.Context, version_id: str, commit_strategy: Optional[str], open_editor: bool
) -> None:
    """Start executing a ready version and follow it until it stops."""
    runtime = _load_runtime(ctx)
    _notify_stale(runtime)

    async def _start() -> tuple[Execution, Optional[LoopOutcome]]:
        execution = await start_execution(
            version_id,
            StartOptions(commit_strategy=commit_strategy, open_in_editor=open_editor),
            runtime.orchestrator,
        )
        click.echo(f"✓ Execution {execution.id} ({execution.status.value})")
        return execution, await runtime.orchestrator.wait(execution.id)

    try:
        execution, outcome = asyncio.run(_start())
    except ForgeError as e:
        _fail(e.message)
    except KeyboardInterrupt:
        click.echo("\nInterrupted; the execution will be listed by `forge recover`", err=True)
        sys.exit(130)
    if outcome is None:
        click.echo("Execution is not running in this process; see `forge status`")
    _report_outcome(outcome, execution.id)


@cli.command()
@click.argument("execution_id")
@click.pass_context
def pause(ctx: click.Context, execution_id: str) -> None:
    """Pause an execution after its current task."""
    runtime = _load_runtime(ctx)
    try:
        asyncio.run(pause_execution(execution_id, runtime.deps))
    except ForgeError as e:
        _fail(e.message)
    click.echo(f"✓ Pause requested for {execution_id}")


@cli.command()
@click.argument("execution_id")
@click.pass_context
def resume(ctx: click.Context, execution_id: str) -> None:
    """Resume a paused execution and follow it until it stops."""
    runtime = _load_runtime(ctx)
    _notify_stale(runtime, exclude=execution_id)
    try:
        outcome = asyncio.run(
            _drive(runtime, resume_execution(execution_id, runtime.orchestrator), execution_id)
        )
    except ForgeError as e:
        _fail(e.message)
    except KeyboardInterrupt:
        sys.exit(130)
    _report_outcome(outcome, execution_id)


@cli.command()
@click.argument("execution_id")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def abort(ctx: click.Context, execution_id: str, yes: bool) -> None:
    """Abort an execution and reset the project to its checkpoint."""
    runtime = _load_runtime(ctx)
    if not yes:
        click.confirm(
            f"Abort {execution_id} and discard changes since its checkpoint?", abort=True
        )
    try:
        result = asyncio.run(abort_execution(execution_id, runtime.deps))
    except ForgeError as e:
        _fail(e.message)

    click.echo(f"✓ Execution {execution_id} aborted")
    if result.reset_failed:
        click.echo(f"✗ Working tree reset failed: {result.reset_error}", err=True)
    if result.forced_ready:
        click.echo("Version had no abort transition; it was set to ready")


@cli.command()
@click.argument("execution_id")
@click.pass_context
def status(ctx: click.Context, execution_id: str) -> None:
    """Show execution status."""
    runtime = _load_runtime(ctx)
    try:
        execution = get_execution_status(execution_id, runtime.deps)
    except ForgeError as e:
        _fail(e.message)
    _print_execution(execution)


@cli.command()
@click.pass_context
def stale(ctx: click.Context) -> None:
    """List executions interrupted by an earlier shutdown."""
    runtime = _load_runtime(ctx)
    items = find_stale_executions(runtime.deps)
    if not items:
        click.echo("No interrupted executions")
        return
    for item in items:
        click.echo(item.describe())


@cli.command()
@click.option("--execution", "execution_id", help="Only this execution")
@click.option(
    "--decision",
    type=click.Choice([d.value for d in StaleDecision]),
    help="Apply without prompting",
)
@click.pass_context
def recover(ctx: click.Context, execution_id: Optional[str], decision: Optional[str]) -> None:
    """Resume or abort each interrupted execution."""
    runtime = _load_runtime(ctx)
    items = find_stale_executions(runtime.deps)
    if execution_id:
        items = [i for i in items if i.execution.id == execution_id]
    if not items:
        click.echo("No interrupted executions")
        return

    choices = {}
    for item in items:
        click.echo(item.describe())
        choices[item.execution.id] = decision or click.prompt(
            "Resume or abort?",
            type=click.Choice([d.value for d in StaleDecision]),
        )

    async def _recover() -> dict[str, Optional[LoopOutcome]]:
        for stale_id, choice in choices.items():
            result = await resolve_stale_execution(stale_id, choice, runtime.orchestrator)
            if result is not None:
                click.echo(f"✓ Aborted {stale_id}")
                if result.reset_failed:
                    click.echo(f"✗ Reset failed: {result.reset_error}", err=True)
        resumed = [i for i, c in choices.items() if c == StaleDecision.RESUME.value]
        outcomes = await asyncio.gather(*(runtime.orchestrator.wait(i) for i in resumed))
        return dict(zip(resumed, outcomes))

    try:
        outcomes = asyncio.run(_recover())
    except ForgeError as e:
        _fail(e.message)
    except KeyboardInterrupt:
        sys.exit(130)
    for stale_id, outcome in outcomes.items():
        _report_outcome(outcome, stale_id)


@cli.command()
@click.argument("execution_id")
@click.argument("task_id")
@click.pass_context
def retry(ctx: click.Context, execution_id: str, task_id: str) -> None:
    """Retry a failed task and follow the execution."""
    runtime = _load_runtime(ctx)
    _notify_stale(runtime, exclude=execution_id)
    try:
        outcome = asyncio.run(
            _drive(runtime, retry_task(execution_id, task_id, runtime.orchestrator), execution_id)
        )
    except ForgeError as e:
        _fail(e.message)
    except KeyboardInterrupt:
        sys.exit(130)
    _report_outcome(outcome, execution_id)


@cli.command()
@click.argument("execution_id")
@click.argument("task_id")
@click.pass_context
def skip(ctx: click.Context, execution_id: str, task_id: str) -> None:
    """Skip a task and continue the execution."""
    runtime = _load_runtime(ctx)
    _notify_stale(runtime, exclude=execution_id)
    try:
        outcome = asyncio.run(
            _drive(runtime, skip_task(execution_id, task_id, runtime.orchestrator), execution_id)
        )
    except ForgeError as e:
        _fail(e.message)
    except KeyboardInterrupt:
        sys.exit(130)
    _report_outcome(outcome, execution_id)


if __name__ == "__main__":
    cli()
