"""Recovery of executions interrupted by an ungraceful shutdown."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ValidationError
from ..executor.orchestrator import ExecutionDeps, ExecutionOrchestrator
from ..executor.use_cases import AbortResult, abort_execution, get_stale_executions
from ..state.persistence import DevStatus, Execution, ExecutionStatus, Project, Version

logger = logging.getLogger(__name__)


class StaleDecision(str, Enum):
    """Operator's choice for a stale execution."""

    RESUME = "resume"
    ABORT = "abort"


@dataclass
class StaleExecution:
    """A stale execution with the records needed to describe it."""

    execution: Execution
    version: Optional[Version]
    project: Optional[Project]

    def describe(self) -> str:
        execution = self.execution
        version = self.version.name or self.version.id if self.version else execution.version_id
        project = self.project.name if self.project else "unknown project"
        state = "paused" if execution.is_paused else execution.status.value
        return (
            f"{execution.id} ({project} / {version}): {state}, "
            f"{execution.completed_tasks}/{execution.total_tasks} tasks, "
            f"started {execution.started_at}"
        )


def find_stale_executions(deps: ExecutionDeps) -> list[StaleExecution]:
    """Executions left running or paused, with their version and project.

    Nothing is changed; each one needs an explicit resume or abort.
    """
    stale = []
    for execution in get_stale_executions(deps):
        version = deps.versions.find_by_id(execution.version_id)
        project = deps.projects.find_by_id(version.project_id) if version else None
        stale.append(StaleExecution(execution=execution, version=version, project=project))

    if stale:
        logger.warning(f"Found {len(stale)} interrupted execution(s) awaiting a decision")
    return stale


async def resolve_stale_execution(
    execution_id: str,
    decision: StaleDecision | str,
    orchestrator: ExecutionOrchestrator,
) -> Optional[AbortResult]:
    """Apply the operator's decision to a stale execution.

    Resume works for executions left ``running`` as well as paused ones,
    since the loop that owned them is gone. Executions whose loop owner is
    still alive are refused.

    Args:
        execution_id: Stale execution
        decision: resume or abort
        orchestrator: Orchestrator to run a resumed loop

    Returns:
        AbortResult for abort, None for resume

    Raises:
        ValidationError: Unknown decision, or the execution isn't stale
        NotFoundError: Execution, version or project missing
    """
    deps = orchestrator.deps
    try:
        decision = StaleDecision(decision)
    except ValueError:
        raise ValidationError(f"Unknown decision '{decision}'", "decision")

    current = deps.executions.find_by_id(execution_id)
    if current is not None and current.loop_is_live(deps.settings.loop_lease_ttl_sec):
        raise ValidationError(
            f"Execution {execution_id} is still running in process {current.loop_pid}",
            "execution_id",
        )

    stale_ids = {e.id for e in get_stale_executions(deps)}
    if execution_id not in stale_ids:
        raise ValidationError(f"Execution {execution_id} is not running or paused", "execution_id")

    if decision == StaleDecision.ABORT:
        logger.info(f"Aborting interrupted execution {execution_id}")
        return await abort_execution(execution_id, deps)

    if orchestrator.is_running(execution_id):
        raise ValidationError(f"Execution {execution_id} is already running here", "execution_id")

    execution = deps.executions.find_by_id(execution_id)
    version, _ = deps.load_context(execution)
    if version.dev_status == DevStatus.PAUSED:
        new_status = deps.dev_flow.transition(version.dev_status.value, "RESUME")
        deps.versions.update_status(version.id, dev_status=new_status)
    if execution.is_paused or execution.status == ExecutionStatus.PAUSED:
        if not deps.executions.set_paused(execution.id, False):
            raise ValidationError("Execution changed state concurrently; try again", "status")

    logger.info(f"Resuming interrupted execution {execution_id}")
    orchestrator.launch(execution_id)
    return None
