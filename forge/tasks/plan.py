"""Plan calculation over a parsed task document."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .parser import Milestone, Task, TaskStatus

logger = logging.getLogger(__name__)

SATISFIED = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED})


class PlanReason(str, Enum):
    """Why the calculator returned what it returned."""

    TASK_FOUND = "task_found"
    ALL_COMPLETED = "all_completed"
    BLOCKED = "blocked"
    NO_PENDING = "no_pending"


@dataclass
class PlanDecision:
    """Next unit of work, or the reason there is none."""

    reason: PlanReason
    task: Optional[Task] = None
    milestone: Optional[Milestone] = None
    blocked: list[str] = field(default_factory=list)


@dataclass
class Progress:
    """Task counts across all milestones."""

    total: int
    done: int
    skipped: int
    pending: int

    @property
    def completed(self) -> int:
        return self.done + self.skipped

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        return round(self.completed * 100 / self.total)


def task_index(milestones: list[Milestone]) -> dict[str, Task]:
    index: dict[str, Task] = {}
    for milestone in milestones:
        for task in milestone.tasks:
            index.setdefault(task.id, task)
    return index


def is_eligible(task: Task, index: dict[str, Task]) -> bool:
    """Pending, with every dependency present and done or skipped."""
    if task.status != TaskStatus.PENDING:
        return False
    for dep_id in task.depends_on:
        dep = index.get(dep_id)
        if dep is None or dep.status not in SATISFIED:
            return False
    return True


def next_eligible_task(milestones: list[Milestone]) -> Optional[Task]:
    """First eligible task in document order.

    Args:
        milestones: Parsed milestones

    Returns:
        Task, or None when nothing can run
    """
    index = task_index(milestones)
    for milestone in milestones:
        for task in milestone.tasks:
            if is_eligible(task, index):
                return task
    return None


def blocked_tasks(milestones: list[Milestone]) -> list[str]:
    """Unfinished tasks that can never become eligible without intervention.

    Computes the set of tasks that can eventually be satisfied by
    repeatedly admitting any pending task whose dependencies are all
    admitted. Whatever is left unfinished outside that set is blocked:
    cycles, missing dependencies, dependencies on explicitly blocked
    tasks, and everything downstream of those.

    Args:
        milestones: Parsed milestones

    Returns:
        Blocked task ids in document order
    """
    index = task_index(milestones)
    tasks = list(index.values())
    reachable = {task.id for task in tasks if task.status in SATISFIED}

    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.id in reachable:
                continue
            if task.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                continue
            if all(dep in reachable for dep in task.depends_on):
                reachable.add(task.id)
                changed = True

    return [task.id for task in tasks if task.id not in reachable]


def is_all_completed(milestones: list[Milestone]) -> bool:
    return all(task.status in SATISFIED for m in milestones for task in m.tasks)


def find_task(milestones: list[Milestone], task_id: str) -> tuple[Optional[Task], Optional[Milestone]]:
    """Locate a task and the milestone owning it."""
    for milestone in milestones:
        for task in milestone.tasks:
            if task.id == task_id:
                return task, milestone
    return None, None


def milestone_complete(milestones: list[Milestone], milestone_id: str) -> bool:
    """True when every task of the milestone is done or skipped."""
    for milestone in milestones:
        if milestone.id == milestone_id:
            return all(task.status in SATISFIED for task in milestone.tasks)
    return False


def get_progress(milestones: list[Milestone]) -> Progress:
    tasks = [task for m in milestones for task in m.tasks]
    return Progress(
        total=len(tasks),
        done=sum(1 for t in tasks if t.status == TaskStatus.DONE),
        skipped=sum(1 for t in tasks if t.status == TaskStatus.SKIPPED),
        pending=sum(1 for t in tasks if t.status not in SATISFIED),
    )


def get_next_task(milestones: list[Milestone]) -> PlanDecision:
    """Decide what the execution loop should do next.

    Args:
        milestones: Parsed milestones

    Returns:
        PlanDecision with the task to run or the reason there is none
    """
    task = next_eligible_task(milestones)
    if task is not None:
        _, milestone = find_task(milestones, task.id)
        return PlanDecision(reason=PlanReason.TASK_FOUND, task=task, milestone=milestone)

    if is_all_completed(milestones):
        return PlanDecision(reason=PlanReason.ALL_COMPLETED)

    blocked = blocked_tasks(milestones)
    if blocked:
        logger.info(f"No eligible task; blocked: {', '.join(blocked)}")
        return PlanDecision(reason=PlanReason.BLOCKED, blocked=blocked)

    return PlanDecision(reason=PlanReason.NO_PENDING)
