"""Unit tests for plan calculation."""

from forge.tasks.parser import Milestone, Task, TaskStatus, parse_todo_document
from forge.tasks.plan import (
    SATISFIED,
    PlanReason,
    blocked_tasks,
    find_task,
    get_next_task,
    get_progress,
    milestone_complete,
    task_index,
)


def _plan(text: str) -> list[Milestone]:
    return parse_todo_document(text).milestones


def test_next_task_in_document_order():
    """Test the first eligible task wins even if a later one is also eligible."""
    milestones = _plan(
        "## M1: A\n"
        "- [x] 001. Done\n"
        "- [ ] 002. Waits (depends: 003)\n"
        "- [ ] 003. Free\n"
        "## M2: B\n"
        "- [ ] 004. Also free\n"
    )
    decision = get_next_task(milestones)

    assert decision.reason == PlanReason.TASK_FOUND
    assert decision.task.id == "003"
    assert decision.milestone.id == "M1"


def test_skipped_dependency_is_satisfied():
    """Test a skipped dependency unblocks its dependents."""
    milestones = _plan("## M1: A\n- [-] 001. Skipped\n- [ ] 002. Next (depends: 001)\n")
    assert get_next_task(milestones).task.id == "002"


def test_all_completed():
    """Test done and skipped tasks count as complete."""
    milestones = _plan("## M1: A\n- [x] 001. One\n- [-] 002. Two\n")
    decision = get_next_task(milestones)
    assert decision.reason == PlanReason.ALL_COMPLETED
    assert decision.task is None


def test_cycle_is_blocked():
    """Test a dependency cycle is reported instead of dispatched."""
    milestones = _plan(
        "## M1: A\n"
        "- [ ] 001. First (depends: 002)\n"
        "- [ ] 002. Second (depends: 001)\n"
        "- [ ] 003. Downstream (depends: 002)\n"
    )
    decision = get_next_task(milestones)

    assert decision.reason == PlanReason.BLOCKED
    assert decision.task is None
    assert decision.blocked == ["001", "002", "003"]


def test_missing_dependency_is_blocked():
    """Test a dependency on an unknown id blocks the task."""
    milestones = _plan("## M1: A\n- [ ] 001. Needs ghost (depends: 999)\n")
    assert blocked_tasks(milestones) == ["001"]


def test_blocked_marker_propagates():
    """Test tasks depending on an explicitly blocked task are blocked."""
    milestones = _plan(
        "## M1: A\n"
        "- [!] 001. Stuck\n"
        "- [ ] 002. After stuck (depends: 001)\n"
        "- [x] 003. Unrelated\n"
    )
    assert blocked_tasks(milestones) == ["001", "002"]


def test_no_pending_when_only_in_progress():
    """Test an in-progress task with satisfied deps is neither eligible nor blocked."""
    milestones = _plan("## M1: A\n- [x] 001. Done\n- [~] 002. Running (depends: 001)\n")
    decision = get_next_task(milestones)
    assert decision.reason == PlanReason.NO_PENDING
    assert decision.blocked == []


def test_decision_is_deterministic():
    """Test the same plan always yields the same decision."""
    text = "## M1: A\n- [ ] 002. B (depends: 001)\n- [ ] 001. A\n- [ ] 003. C\n"
    first = get_next_task(_plan(text))
    second = get_next_task(_plan(text))
    assert first.task.id == second.task.id == "001"


def test_returned_task_dependencies_are_satisfied():
    """Test every chosen task is pending with satisfied dependencies."""
    milestones = [
        Milestone(
            id="M1",
            title="A",
            tasks=[
                Task(id="1", description="a"),
                Task(id="2", description="b", depends_on=["1"]),
                Task(id="3", description="c", depends_on=["1", "2"]),
                Task(id="4", description="d", depends_on=["3"]),
            ],
        )
    ]
    order = []
    while True:
        decision = get_next_task(milestones)
        if decision.task is None:
            break
        index = task_index(milestones)
        assert decision.task.status == TaskStatus.PENDING
        assert all(index[d].status in SATISFIED for d in decision.task.depends_on)
        decision.task.status = TaskStatus.DONE
        order.append(decision.task.id)

    assert order == ["1", "2", "3", "4"]
    assert get_next_task(milestones).reason == PlanReason.ALL_COMPLETED


def test_progress_and_milestone_helpers():
    """Test progress counts and milestone completion."""
    milestones = _plan(
        "## M1: A\n- [x] 001. One\n- [-] 002. Two\n"
        "## M2: B\n- [ ] 003. Three\n- [x] 004. Four\n"
    )
    progress = get_progress(milestones)

    assert (progress.total, progress.done, progress.skipped, progress.pending) == (4, 2, 1, 1)
    assert progress.completed == 3
    assert progress.percent == 75
    assert milestone_complete(milestones, "M1")
    assert not milestone_complete(milestones, "M2")
    assert not milestone_complete(milestones, "M9")

    task, milestone = find_task(milestones, "003")
    assert task.description == "Three" and milestone.id == "M2"
    assert find_task(milestones, "404") == (None, None)
