"""Entry points for controlling executions.

Each function validates its input, loads records from the stores in
``ExecutionDeps``, asks the dev-flow state machine for the version's next
status and hands process control to the orchestrator.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config.models import CommitStrategy, ExecutionConfig
from ..errors import InvalidTransition, NotFoundError, ValidationError
from ..state.persistence import (
    AttemptStatus,
    DevStatus,
    Execution,
    ExecutionStatus,
    Project,
    Version,
)
from ..tasks.document import load_plan, todo_path, write_task_status
from ..tasks.parser import Task, TaskStatus
from ..tasks.plan import SATISFIED, find_task, get_progress, task_index
from ..utils.git import GitError
from .orchestrator import ExecutionDeps, ExecutionOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class StartOptions:
    """Options for starting an execution."""

    commit_strategy: CommitStrategy | str | None = None
    open_in_editor: bool = False


@dataclass
class CleanupOutcome:
    """Result of one best-effort abort step."""

    attempted: bool
    success: bool
    error: Optional[str] = None


@dataclass
class AbortResult:
    """What abort achieved; ``success`` is always True once it returns."""

    success: bool
    reset_failed: bool = False
    reset_error: Optional[str] = None
    agent_stopped: bool = False
    # Version had no ABORT transition and was set to ready directly
    forced_ready: bool = False


def _require(value: Optional[str], field: str, label: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{label} is required", field)
    return value.strip()


def _get_execution(deps: ExecutionDeps, execution_id: str) -> Execution:
    execution_id = _require(execution_id, "execution_id", "Execution ID")
    execution = deps.executions.find_by_id(execution_id)
    if execution is None:
        raise NotFoundError("Execution", execution_id)
    return execution


def _get_version(deps: ExecutionDeps, version_id: str) -> tuple[Version, Project]:
    version_id = _require(version_id, "version_id", "Version ID")
    version = deps.versions.find_by_id(version_id)
    if version is None:
        raise NotFoundError("Version", version_id)
    project = deps.projects.find_by_id(version.project_id)
    if project is None:
        raise NotFoundError("Project", version.project_id)
    return version, project


def _parse_strategy(value: CommitStrategy | str | None, settings: ExecutionConfig) -> CommitStrategy:
    if value is None:
        return settings.default_commit_strategy
    try:
        return CommitStrategy(value)
    except ValueError:
        choices = ", ".join(s.value for s in CommitStrategy)
        raise ValidationError(
            f"Invalid commit strategy '{value}'; expected one of: {choices}",
            "commit_strategy",
        )


def _require_paused(execution: Execution, action: str) -> None:
    if execution.is_halted:
        raise ValidationError(
            f"Cannot {action} a {execution.status.value} execution", "status"
        )
    if not (execution.is_paused or execution.status == ExecutionStatus.PAUSED):
        raise ValidationError(f"Cannot {action}: execution is not paused", "status")


def _unpause(deps: ExecutionDeps, execution: Execution, version: Version, event: str) -> None:
    """Clear the pause flag and move the version back to executing."""
    new_status = None
    if version.dev_status == DevStatus.PAUSED or event == "RETRY":
        new_status = deps.dev_flow.transition(version.dev_status.value, event)

    if not deps.executions.set_paused(execution.id, False):
        raise ValidationError("Execution changed state concurrently; try again", "status")
    if new_status is not None and new_status != version.dev_status.value:
        deps.versions.update_status(version.id, dev_status=new_status)


async def _open_in_editor(project_path: Path, command: str) -> bool:
    editor = shutil.which(command)
    if editor is None:
        logger.warning(f"Editor '{command}' not found; not opening {project_path}")
        return False
    try:
        await asyncio.create_subprocess_exec(
            editor,
            str(project_path),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"Failed to open editor: {e}")
        return False
    return True


async def start_execution(
    version_id: str,
    options: Optional[StartOptions],
    orchestrator: ExecutionOrchestrator,
) -> Execution:
    """Start executing a ready version.

    Returns the running or paused execution of the version instead of
    creating a second one.

    Args:
        version_id: Version to execute
        options: Commit strategy and editor options
        orchestrator: Orchestrator that will run the task loop

    Returns:
        The execution

    Raises:
        ValidationError: Version not ready, agent missing, no tasks, dirty tree
        NotFoundError: Version or project missing
        MalformedDocument: Task document unparsable
    """
    deps = orchestrator.deps
    options = options or StartOptions()
    strategy = _parse_strategy(options.commit_strategy, deps.settings)
    version, project = _get_version(deps, version_id)

    active = deps.executions.find_active_for_version(version.id)
    if active is not None:
        logger.info(f"Version {version.id} already has execution {active.id} ({active.status.value})")
        return active

    if version.dev_status != DevStatus.READY:
        raise ValidationError(
            f"Cannot start execution from state '{version.dev_status.value}'. "
            "Must be in 'ready' state.",
            "dev_status",
        )
    executing = deps.dev_flow.transition(version.dev_status.value, "START")

    if not await deps.agent.is_available():
        raise ValidationError("Coding agent is not available", "agent")

    project_path = Path(project.path)
    if not todo_path(project_path, deps.settings).exists():
        raise ValidationError(
            f"Task document not found: {deps.settings.todo_path}", "todo_path"
        )
    document = load_plan(project_path, deps.settings)
    progress = get_progress(document.milestones)
    if progress.total == 0:
        raise ValidationError("No tasks found in the task document", "tasks")

    pre_execution_commit = await _capture_checkpoint(deps, project_path, version)

    execution = deps.executions.create(
        version.id,
        total_tasks=progress.total,
        completed_tasks=progress.completed,
        pre_execution_commit=pre_execution_commit,
        commit_strategy=strategy,
    )
    deps.versions.update_status(version.id, dev_status=executing)
    logger.info(
        f"Started execution {execution.id} for version {version.id} "
        f"({progress.completed}/{progress.total} done, {strategy.value})"
    )

    if options.open_in_editor:
        await _open_in_editor(project_path, deps.settings.editor_command)

    orchestrator.launch(execution.id)
    return execution


async def _capture_checkpoint(
    deps: ExecutionDeps, project_path: Path, version: Version
) -> Optional[str]:
    """Record the commit to roll back to on abort.

    Raises:
        ValidationError: If the tree is dirty and auto-commit is off
    """
    git = deps.git(project_path)
    if not await git.is_repo():
        logger.info(f"{project_path} is not a git repository; abort will not roll back")
        return None

    if await git.has_changes():
        if not deps.settings.auto_commit_before_execution:
            raise ValidationError(
                "Working tree has uncommitted changes; commit or stash them first",
                "working_tree",
            )
        await git.commit_all(f"chore: snapshot before executing {version.name or version.id}")

    head = await git.get_head()
    if head is None:
        try:
            head = await git.commit("chore: pre-execution checkpoint", allow_empty=True)
        except GitError as e:
            logger.warning(f"Could not create pre-execution checkpoint: {e}")
            return None
    return head


async def pause_execution(execution_id: str, deps: ExecutionDeps) -> None:
    """Request a pause; the loop stops after the task in flight.

    Raises:
        ValidationError: Execution halted or already paused
        NotFoundError: Execution missing
    """
    execution = _get_execution(deps, execution_id)
    if execution.is_halted:
        raise ValidationError(f"Cannot pause a {execution.status.value} execution", "status")
    if execution.is_paused:
        raise ValidationError("Execution is already paused", "is_paused")

    version, _ = deps.load_context(execution)
    new_status = None
    if version.dev_status == DevStatus.EXECUTING:
        new_status = deps.dev_flow.transition(version.dev_status.value, "PAUSE")

    if not deps.executions.set_paused(execution.id, True):
        raise ValidationError("Execution changed state concurrently; try again", "status")
    if new_status is not None:
        deps.versions.update_status(version.id, dev_status=new_status)
    logger.info(f"Pause requested for execution {execution.id}")


async def resume_execution(execution_id: str, orchestrator: ExecutionOrchestrator) -> None:
    """Clear the pause and re-enter the task loop.

    If another process still holds the execution's loop (it was paused
    mid-task), that loop carries on and the one launched here returns
    ``DETACHED`` without dispatching.

    Raises:
        ValidationError: Execution not paused or halted
        NotFoundError: Execution, version or project missing
    """
    deps = orchestrator.deps
    execution = _get_execution(deps, execution_id)
    _require_paused(execution, "resume")
    version, _ = deps.load_context(execution)

    _unpause(deps, execution, version, "RESUME")
    logger.info(f"Resuming execution {execution.id}")
    orchestrator.launch(execution.id)


async def _stop_agent(deps: ExecutionDeps, execution_id: str) -> CleanupOutcome:
    try:
        stopped = await deps.agent.abort(execution_id)
    except Exception as e:
        logger.warning(f"Failed to stop agent for {execution_id}: {e}")
        return CleanupOutcome(attempted=True, success=False, error=str(e))
    return CleanupOutcome(attempted=True, success=bool(stopped))


async def _reset_working_tree(
    deps: ExecutionDeps, project_path: Path, commit: Optional[str]
) -> CleanupOutcome:
    if not commit:
        return CleanupOutcome(attempted=False, success=True)
    try:
        git = deps.git(project_path)
        if not await git.is_repo():
            return CleanupOutcome(attempted=False, success=True)
        await git.reset(commit, mode="hard")
    except Exception as e:
        logger.error(f"Failed to reset {project_path} to {commit}: {e}")
        return CleanupOutcome(attempted=True, success=False, error=str(e))
    return CleanupOutcome(attempted=True, success=True)


async def abort_execution(execution_id: str, deps: ExecutionDeps) -> AbortResult:
    """Abort an execution and roll the working tree back.

    Stopping the agent and resetting the tree are best-effort; their
    failures are reported in the result. The execution always ends up
    aborted and the version always leaves executing/paused.

    Args:
        execution_id: Execution to abort
        deps: Collaborators

    Returns:
        AbortResult

    Raises:
        ValidationError: Execution already completed or aborted
        NotFoundError: Execution, version or project missing
    """
    execution = _get_execution(deps, execution_id)
    if execution.is_terminal:
        raise ValidationError(
            f"Cannot abort execution in '{execution.status.value}' state", "status"
        )
    version, project = deps.load_context(execution)

    stop = await _stop_agent(deps, execution.id)
    reset = await _reset_working_tree(deps, Path(project.path), execution.pre_execution_commit)

    if not deps.executions.complete(execution.id, ExecutionStatus.ABORTED):
        raise ValidationError("Execution was completed or aborted concurrently", "status")

    version = deps.versions.find_by_id(version.id) or version
    forced_ready = False
    try:
        new_status = deps.dev_flow.transition(version.dev_status.value, "ABORT")
    except InvalidTransition as e:
        logger.warning(f"ABORT rejected for version {version.id} ({e}); forcing ready")
        new_status = DevStatus.READY.value
        forced_ready = True
    deps.versions.update_status(version.id, dev_status=new_status)
    deps.events.aborted(execution.id)

    return AbortResult(
        success=True,
        reset_failed=reset.attempted and not reset.success,
        reset_error=reset.error,
        agent_stopped=stop.success,
        forced_ready=forced_ready,
    )


def get_execution_status(execution_id: str, deps: ExecutionDeps) -> Execution:
    return _get_execution(deps, execution_id)


def get_stale_executions(deps: ExecutionDeps) -> list[Execution]:
    """Executions left running or paused with no live task loop.

    Rows whose loop lease is held by a live process are in use, not stale.
    """
    ttl = deps.settings.loop_lease_ttl_sec
    return [e for e in deps.executions.find_running_or_paused() if not e.loop_is_live(ttl)]


def _load_task(deps: ExecutionDeps, project: Project, task_id: str) -> tuple[Task, dict[str, Task]]:
    task_id = _require(task_id, "task_id", "Task ID")
    document = load_plan(Path(project.path), deps.settings)
    task, _ = find_task(document.milestones, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task, task_index(document.milestones)


async def retry_task(
    execution_id: str, task_id: str, orchestrator: ExecutionOrchestrator
) -> None:
    """Dispatch a failed task again.

    Raises:
        ValidationError: Execution not paused, task finished, dependencies
            unmet or retry limit reached
        NotFoundError: Execution or task missing
    """
    deps = orchestrator.deps
    execution = _get_execution(deps, execution_id)
    _require_paused(execution, "retry a task of")
    version, project = deps.load_context(execution)
    task, index = _load_task(deps, project, task_id)

    if task.status in SATISFIED:
        raise ValidationError(f"Task {task.id} is already {task.status.value}", "task_id")
    unmet = [d for d in task.depends_on if d not in index or index[d].status not in SATISFIED]
    if unmet:
        raise ValidationError(
            f"Task {task.id} has unmet dependencies: {', '.join(unmet)}", "task_id"
        )

    failures = deps.attempts.count_failures(execution.id, task.id)
    if not deps.retry_policy.can_retry(failures):
        raise ValidationError(
            f"Task {task.id} failed {failures} times; retry limit is "
            f"{deps.settings.max_retries}",
            "task_id",
        )

    if task.status != TaskStatus.PENDING:
        write_task_status(todo_path(Path(project.path), deps.settings), task.id, TaskStatus.PENDING)

    _unpause(deps, execution, version, "RETRY")
    logger.info(f"Retrying task {task.id} of execution {execution.id}")
    orchestrator.launch(execution.id)


async def skip_task(
    execution_id: str, task_id: str, orchestrator: ExecutionOrchestrator
) -> None:
    """Mark a task skipped and continue with the next eligible one.

    Skipped tasks satisfy their dependents.

    Raises:
        ValidationError: Execution not paused or task already finished
        NotFoundError: Execution or task missing
    """
    deps = orchestrator.deps
    execution = _get_execution(deps, execution_id)
    _require_paused(execution, "skip a task of")
    version, project = deps.load_context(execution)
    task, _ = _load_task(deps, project, task_id)

    if task.status in SATISFIED:
        raise ValidationError(f"Task {task.id} is already {task.status.value}", "task_id")

    project_path = Path(project.path)
    write_task_status(todo_path(project_path, deps.settings), task.id, TaskStatus.SKIPPED)
    deps.attempts.create(execution.id, task.id, status=AttemptStatus.SKIPPED)

    progress = get_progress(load_plan(project_path, deps.settings).milestones)
    deps.executions.update_progress(
        execution.id,
        completed_tasks=progress.completed,
        total_tasks=progress.total,
        last_error=None,
    )

    _unpause(deps, execution, version, "RESUME")
    logger.info(f"Skipped task {task.id} of execution {execution.id}")
    orchestrator.launch(execution.id)


def apply_version_event(version_id: str, event: str, deps: ExecutionDeps) -> Version:
    """Apply a dev-flow event to a version.

    Raises:
        InvalidTransition: If the event isn't allowed from the current state
        NotFoundError: Version or project missing
    """
    version, _ = _get_version(deps, version_id)
    event = _require(event, "event", "Event").upper()
    new_status = deps.dev_flow.transition(version.dev_status.value, event)
    return deps.versions.update_status(version.id, dev_status=new_status)


def approve_review(version_id: str, deps: ExecutionDeps) -> Version:
    """Approve a reviewed version once its task document has tasks.

    Raises:
        ValidationError: Version not in review, or no tasks to execute
        NotFoundError: Version or project missing
    """
    version, project = _get_version(deps, version_id)
    if version.dev_status != DevStatus.REVIEWING:
        raise ValidationError(
            f"Cannot approve from state '{version.dev_status.value}'. "
            "Must be in 'reviewing' state.",
            "dev_status",
        )

    project_path = Path(project.path)
    if not todo_path(project_path, deps.settings).exists():
        raise ValidationError("Cannot approve: task document does not exist", "todo_path")
    if get_progress(load_plan(project_path, deps.settings).milestones).total == 0:
        raise ValidationError("Cannot approve: no tasks found in task document", "tasks")

    new_status = deps.dev_flow.transition(version.dev_status.value, "APPROVE")
    return deps.versions.update_status(version.id, dev_status=new_status)
