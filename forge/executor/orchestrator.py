"""Per-execution task loop."""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..agents.base import AgentError, AgentOutcome, CodingAgent, TaskRequest
from ..config.models import CommitStrategy, ExecutionConfig
from ..errors import InvalidTransition, NotFoundError
from ..observability.events import ExecutionEvents
from ..recovery.policies import TaskRetryPolicy, classify_failure
from ..state.machine import StateMachine
from ..state.persistence import AttemptStatus, Execution, ExecutionStatus, Project, Version
from ..state.store import ExecutionStore, ProjectStore, TaskAttemptStore, VersionStore
from ..tasks.document import load_plan, todo_path, write_task_status
from ..tasks.parser import Milestone, Task, TaskStatus, TodoDocument
from ..tasks.plan import PlanDecision, PlanReason, get_next_task, get_progress, milestone_complete
from ..utils.git import GitError, GitOps
from ..utils.logging import execution_logger

logger = logging.getLogger(__name__)


@dataclass
class ExecutionDeps:
    """Collaborators of the orchestration core, passed explicitly."""

    projects: ProjectStore
    versions: VersionStore
    executions: ExecutionStore
    attempts: TaskAttemptStore
    agent: CodingAgent
    dev_flow: StateMachine
    settings: ExecutionConfig
    git_factory: Callable[[Path], GitOps] = GitOps
    events: ExecutionEvents = field(default_factory=ExecutionEvents)

    def git(self, path: Path | str) -> GitOps:
        return self.git_factory(Path(path))

    @property
    def retry_policy(self) -> TaskRetryPolicy:
        return TaskRetryPolicy(self.settings.max_retries)

    def load_context(self, execution: Execution) -> tuple[Version, Project]:
        """Version and project owning an execution.

        Raises:
            NotFoundError: If either record is gone
        """
        version = self.versions.find_by_id(execution.version_id)
        if version is None:
            raise NotFoundError("Version", execution.version_id)
        project = self.projects.find_by_id(version.project_id)
        if project is None:
            raise NotFoundError("Project", version.project_id)
        return version, project


class LoopOutcome(str, Enum):
    """Why a task loop stopped."""

    COMPLETED = "completed"
    PAUSED = "paused"
    BLOCKED = "blocked"
    FAILED = "failed"
    ABORTED = "aborted"
    ERROR = "error"
    # Another process runs this execution's loop
    DETACHED = "detached"


# Outcomes that leave the execution paused, so a resume may overtake them
PAUSING_OUTCOMES = frozenset({LoopOutcome.PAUSED, LoopOutcome.BLOCKED, LoopOutcome.FAILED})


def build_task_prompt(
    task: Task,
    milestone: Milestone,
    project_path: Path,
    settings: ExecutionConfig,
) -> str:
    """Prompt handed to the coding agent for one task."""
    sections = [
        f"You are working in the project at {project_path}.",
        "Implement exactly one task from the project plan.",
        "",
        f"## Milestone {milestone.id}: {milestone.title}",
        "",
        f"## Task {task.id}: {task.description}",
    ]
    if task.details:
        sections += ["", task.details]
    if task.verification:
        sections += ["", "### Verification", task.verification]

    context_path = Path(project_path) / settings.context_file
    if context_path.is_file():
        sections += ["", "## Project Context", context_path.read_text(encoding="utf-8").strip()]

    sections += [
        "",
        f"Do not edit {settings.todo_path}; task status is tracked for you.",
        "Stop when the task is complete.",
    ]
    return "\n".join(sections)


class ExecutionOrchestrator:
    """Drives executions task by task.

    Each execution has at most one loop task. The loop re-reads the
    execution row and re-parses the task document before every decision,
    so pause, abort and hand edits take effect at the next task boundary.
    """

    def __init__(self, deps: ExecutionDeps):
        """Initialize orchestrator.

        Args:
            deps: Stores, agent, state machine and settings
        """
        self.deps = deps
        self.owner_id = f"{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._loops: dict[str, asyncio.Task] = {}
        self._rearm: set[str] = set()

    def launch(self, execution_id: str) -> asyncio.Task:
        """Start the task loop for an execution unless one is running.

        When a loop is already running it is told to take one more look
        before exiting, so a resume that races its shutdown isn't lost.

        Returns:
            The loop task
        """
        existing = self._loops.get(execution_id)
        if existing is not None and not existing.done():
            self._rearm.add(execution_id)
            return existing

        task = asyncio.create_task(self.run(execution_id), name=f"forge-exec-{execution_id}")
        self._loops[execution_id] = task
        task.add_done_callback(lambda t: self._forget(execution_id, t))
        return task

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        if self._loops.get(execution_id) is task:
            del self._loops[execution_id]

    def is_running(self, execution_id: str) -> bool:
        task = self._loops.get(execution_id)
        return task is not None and not task.done()

    async def wait(self, execution_id: str) -> Optional[LoopOutcome]:
        """Wait for the execution's loop to stop, if one is running."""
        task = self._loops.get(execution_id)
        if task is None:
            return None
        return await task

    async def run(self, execution_id: str) -> LoopOutcome:
        """Run the task loop until it completes, halts or is paused.

        The loop first claims the execution's lease in the store. When a
        live process already holds it, nothing is dispatched here and
        ``DETACHED`` is returned; that process picks up a resume on its own.

        Unexpected errors mark the execution failed instead of escaping the
        background task.
        """
        log = execution_logger(logger, execution_id)
        executions = self.deps.executions
        ttl = self.deps.settings.loop_lease_ttl_sec

        if not executions.claim_loop(execution_id, self.owner_id, os.getpid(), ttl):
            holder = executions.find_by_id(execution_id)
            if holder is None:
                log.error("Execution not found")
                self.deps.events.error(execution_id, f"Execution not found: {execution_id}")
                return LoopOutcome.ERROR
            log.info(f"Task loop is running in process {holder.loop_pid}; not starting another")
            return LoopOutcome.DETACHED

        heartbeat = asyncio.create_task(self._keep_lease(execution_id, ttl / 3, log))
        try:
            while True:
                self._rearm.discard(execution_id)
                try:
                    outcome = await self._run_loop(execution_id, log)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.exception(f"Execution loop crashed: {e}")
                    executions.complete(execution_id, ExecutionStatus.FAILED, error=str(e))
                    self.deps.events.error(execution_id, str(e))
                    return LoopOutcome.ERROR

                if execution_id in self._rearm:
                    continue
                if outcome not in PAUSING_OUTCOMES or executions.release_loop(
                    execution_id, self.owner_id, keep_if_resumed=True
                ):
                    log.info(f"Task loop stopped: {outcome.value}")
                    return outcome
                log.info("Execution resumed while the loop was stopping; continuing")
        finally:
            heartbeat.cancel()
            executions.release_loop(execution_id, self.owner_id)

    async def _keep_lease(self, execution_id: str, interval: float, log: logging.LoggerAdapter) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self.deps.executions.renew_loop(execution_id, self.owner_id):
                log.warning("Task loop lease lost")
                return

    async def _run_loop(self, execution_id: str, log: logging.LoggerAdapter) -> LoopOutcome:
        deps = self.deps
        while True:
            execution = deps.executions.find_by_id(execution_id)
            if execution is None:
                raise NotFoundError("Execution", execution_id)
            if execution.is_halted:
                log.info(f"Execution is {execution.status.value}; nothing to run")
                if execution.status == ExecutionStatus.COMPLETED:
                    return LoopOutcome.COMPLETED
                return LoopOutcome.ABORTED
            if execution.is_paused:
                deps.events.paused(execution_id)
                return LoopOutcome.PAUSED

            version, project = deps.load_context(execution)
            project_path = Path(project.path)
            document = load_plan(project_path, deps.settings)
            decision = get_next_task(document.milestones)

            if decision.reason == PlanReason.ALL_COMPLETED:
                return self._finish(execution, document)

            if decision.task is None:
                reason = "No pending task is eligible"
                if decision.blocked:
                    reason = f"Blocked tasks: {', '.join(decision.blocked)}"
                deps.executions.update_progress(execution_id, last_error=reason)
                deps.executions.set_paused(execution_id, True)
                deps.events.blocked(execution_id, decision.blocked)
                return LoopOutcome.BLOCKED

            if not deps.executions.renew_loop(execution_id, self.owner_id):
                log.warning(f"Lost the task loop lease before dispatching {decision.task.id}")
                return LoopOutcome.DETACHED

            outcome = await self._execute_task(execution, project_path, decision, log)
            if outcome is not None:
                return outcome

    async def _execute_task(
        self,
        execution: Execution,
        project_path: Path,
        decision: PlanDecision,
        log: logging.LoggerAdapter,
    ) -> Optional[LoopOutcome]:
        """Dispatch one task and record the result.

        Returns:
            None to keep looping, otherwise why the loop has to stop
        """
        deps = self.deps
        task, milestone = decision.task, decision.milestone
        execution_id = execution.id

        attempt = deps.attempts.create(execution_id, task.id)
        deps.executions.update_progress(execution_id, current_task_id=task.id)
        deps.events.task_started(execution_id, task.id, task.description)

        request = TaskRequest(
            execution_id=execution_id,
            task_id=task.id,
            prompt=build_task_prompt(task, milestone, project_path, deps.settings),
            work_dir=project_path,
            timeout_sec=deps.settings.task_timeout_sec,
        )
        try:
            outcome = await asyncio.wait_for(
                deps.agent.dispatch(request), timeout=deps.settings.task_timeout_sec
            )
        except asyncio.TimeoutError:
            outcome = AgentOutcome(
                success=False,
                timed_out=True,
                error=f"Task {task.id} timed out after {deps.settings.task_timeout_sec}s",
            )
        except AgentError as e:
            outcome = AgentOutcome(success=False, error=str(e))

        current = deps.executions.find_by_id(execution_id)
        if outcome.aborted or current is None or current.is_halted:
            deps.attempts.complete(attempt.id, AttemptStatus.ABORTED)
            log.info(f"Task {task.id} interrupted by abort")
            return LoopOutcome.ABORTED

        if not outcome.success:
            failure = classify_failure(outcome)
            deps.attempts.complete(attempt.id, AttemptStatus.FAILED, failure.message)
            deps.executions.update_progress(execution_id, last_error=f"{task.id}: {failure.message}")
            deps.executions.set_paused(execution_id, True)
            deps.events.task_failed(execution_id, task.id, failure.message)
            return LoopOutcome.FAILED

        write_task_status(todo_path(project_path, deps.settings), task.id, TaskStatus.DONE)
        deps.attempts.complete(attempt.id, AttemptStatus.COMPLETED)

        document = load_plan(project_path, deps.settings)
        progress = get_progress(document.milestones)
        deps.executions.update_progress(
            execution_id,
            completed_tasks=progress.completed,
            total_tasks=progress.total,
            current_task_id=None,
            last_error=None,
        )
        deps.events.task_done(execution_id, task.id)
        deps.events.progress(execution_id, progress.completed, progress.total)

        try:
            await self._checkpoint(current, project_path, task, milestone, document, log)
        except GitError as e:
            deps.executions.update_progress(execution_id, last_error=str(e))
            deps.executions.set_paused(execution_id, True)
            deps.events.error(execution_id, str(e))
            return LoopOutcome.FAILED

        return None

    async def _checkpoint(
        self,
        execution: Execution,
        project_path: Path,
        task: Task,
        milestone: Milestone,
        document: TodoDocument,
        log: logging.LoggerAdapter,
    ) -> Optional[str]:
        """Apply the execution's commit strategy after a task is done.

        Returns:
            Commit hash, or None when nothing was committed
        """
        settings = self.deps.settings
        strategy = execution.commit_strategy
        if strategy == CommitStrategy.MANUAL:
            return None
        if strategy == CommitStrategy.EACH_MILESTONE:
            if not milestone_complete(document.milestones, milestone.id):
                return None
            template = settings.milestone_commit_message
        else:
            template = settings.task_commit_message

        git = self.deps.git(project_path)
        if not await git.is_repo():
            log.debug(f"{project_path} is not a git repository; skipping commit")
            return None

        message = template.format(
            milestone_id=milestone.id,
            milestone_title=milestone.title,
            task_id=task.id,
            task_title=task.description,
        )
        return await git.commit_all(message)

    def _finish(self, execution: Execution, document: TodoDocument) -> LoopOutcome:
        deps = self.deps
        progress = get_progress(document.milestones)
        deps.executions.update_progress(
            execution.id,
            completed_tasks=progress.completed,
            total_tasks=progress.total,
            current_task_id=None,
        )
        if not deps.executions.complete(execution.id, ExecutionStatus.COMPLETED, unless_paused=True):
            current = deps.executions.find_by_id(execution.id)
            if current is not None and current.is_paused and not current.is_halted:
                # Pause landed after the last check; resume will complete it
                deps.events.paused(execution.id)
                return LoopOutcome.PAUSED
            return LoopOutcome.ABORTED

        version = deps.versions.find_by_id(execution.version_id)
        if version is not None:
            try:
                new_status = deps.dev_flow.transition(version.dev_status.value, "COMPLETE")
                deps.versions.update_status(version.id, dev_status=new_status)
            except InvalidTransition as e:
                logger.warning(f"Version {version.id} left in {version.dev_status.value}: {e}")

        deps.events.completed(execution.id)
        return LoopOutcome.COMPLETED
