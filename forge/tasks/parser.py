"""Task document parser."""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import MalformedDocument, NotFoundError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Task status as recorded by the checklist marker."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


MARKERS = {
    " ": TaskStatus.PENDING,
    "x": TaskStatus.DONE,
    "X": TaskStatus.DONE,
    "-": TaskStatus.SKIPPED,
    "~": TaskStatus.IN_PROGRESS,
    "!": TaskStatus.BLOCKED,
}

STATUS_MARKERS = {
    TaskStatus.PENDING: " ",
    TaskStatus.DONE: "x",
    TaskStatus.SKIPPED: "-",
    TaskStatus.IN_PROGRESS: "~",
    TaskStatus.BLOCKED: "!",
}

TITLE_RE = re.compile(r"^#\s+(.+?)\s*$")
PROJECT_RE = re.compile(r"^>\s*Project:\s*(.+?)\s*$", re.IGNORECASE)
MILESTONE_RE = re.compile(r"^##\s+(?:Milestone\s+)?([A-Za-z]*\d[\w.-]*?)\s*:\s*(.+?)\s*$")
TASK_RE = re.compile(
    r"^(?P<indent>\s*)[-*]\s+\[(?P<marker>.)\]\s+"
    r"(?P<id>[A-Za-z]*\d[\w-]*(?:\.\d+)*)[.:]?\s+(?P<text>.+?)\s*$"
)
DEPENDS_RE = re.compile(r"\s*\((?:depends(?:\s+on)?|deps)\s*:\s*([^)]*)\)\s*$", re.IGNORECASE)

DETAIL_HEADING_RE = re.compile(r"^###\s+([A-Za-z]*\d[\w-]*(?:\.\d+)*)[.:]?\s+(.+?)\s*$", re.MULTILINE)
DETAIL_FIELD_RE = re.compile(r"^\*\*(Description|Verification|Depends):\*\*\s*(.*)$", re.IGNORECASE)


@dataclass
class Task:
    """One checklist entry."""

    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    milestone_id: str = ""
    line_number: int = 0
    details: str = ""
    verification: str = ""


@dataclass
class Milestone:
    """Milestone heading and its tasks in document order."""

    id: str
    title: str
    tasks: list[Task] = field(default_factory=list)


@dataclass
class TodoDocument:
    """Parsed task document."""

    milestones: list[Milestone] = field(default_factory=list)
    title: Optional[str] = None
    project: Optional[str] = None

    def all_tasks(self) -> list[Task]:
        return [task for milestone in self.milestones for task in milestone.tasks]


@dataclass
class TaskDetail:
    """Task section of a milestone detail file."""

    task_id: str
    title: str
    description: str = ""
    verification: str = ""
    depends_on: Optional[list[str]] = None


def parse_dependencies(raw: str) -> list[str]:
    """Split a dependency list such as ``001, 002`` or ``none``."""
    items = [item.strip() for item in re.split(r"[,\s]+", raw) if item.strip()]
    if len(items) == 1 and items[0].lower() in ("none", "-", "n/a"):
        return []
    return items


def parse_todo_document(content: str) -> TodoDocument:
    """Parse the task checklist.

    Lines that don't match the checklist grammar are skipped. Tasks found
    before the first milestone heading are ignored.

    Args:
        content: Document text

    Returns:
        TodoDocument with milestones and tasks in document order

    Raises:
        MalformedDocument: If the document has no milestone heading
    """
    document = TodoDocument()
    current: Optional[Milestone] = None

    for line_number, line in enumerate(content.splitlines(), start=1):
        milestone_match = MILESTONE_RE.match(line)
        if milestone_match:
            current = Milestone(id=milestone_match.group(1), title=milestone_match.group(2))
            document.milestones.append(current)
            continue

        task_match = TASK_RE.match(line)
        if task_match:
            if current is None:
                logger.debug(f"Line {line_number}: task outside a milestone, ignored")
                continue
            status = MARKERS.get(task_match.group("marker"))
            if status is None:
                logger.warning(
                    f"Line {line_number}: unknown marker [{task_match.group('marker')}], ignored"
                )
                continue

            text = task_match.group("text")
            depends_on: list[str] = []
            depends_match = DEPENDS_RE.search(text)
            if depends_match:
                depends_on = parse_dependencies(depends_match.group(1))
                text = text[: depends_match.start()].rstrip()

            current.tasks.append(
                Task(
                    id=task_match.group("id"),
                    description=text,
                    status=status,
                    depends_on=depends_on,
                    milestone_id=current.id,
                    line_number=line_number,
                )
            )
            continue

        if document.title is None and not document.milestones:
            title_match = TITLE_RE.match(line)
            if title_match:
                document.title = title_match.group(1)
                continue
        project_match = PROJECT_RE.match(line)
        if project_match and document.project is None:
            document.project = project_match.group(1)

    if not document.milestones:
        raise MalformedDocument("Task document has no milestone headings")

    seen: set[str] = set()
    for task in document.all_tasks():
        if task.id in seen:
            logger.warning(f"Duplicate task id {task.id}; first occurrence wins for lookups")
        seen.add(task.id)

    return document


def parse_milestone_detail(content: str) -> dict[str, TaskDetail]:
    """Parse a milestone detail file into per-task details.

    Each task section starts with ``### <id>. <title>`` and may carry
    ``**Description:**``, ``**Verification:**`` and ``**Depends:**`` fields.
    A field's text continues on following lines until the next field,
    separator or heading.

    Args:
        content: Detail file text

    Returns:
        Mapping of task id to TaskDetail
    """
    details: dict[str, TaskDetail] = {}
    headings = list(DETAIL_HEADING_RE.finditer(content))

    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(content)
        body = content[heading.end():end]
        detail = TaskDetail(task_id=heading.group(1), title=heading.group(2))

        fields: dict[str, list[str]] = {}
        current_field: Optional[str] = None
        for line in body.splitlines():
            stripped = line.strip()
            if stripped == "---" or stripped.startswith("#"):
                current_field = None
                continue
            field_match = DETAIL_FIELD_RE.match(stripped)
            if field_match:
                current_field = field_match.group(1).lower()
                fields[current_field] = [field_match.group(2)]
            elif current_field and stripped:
                fields[current_field].append(stripped)

        detail.description = "\n".join(fields.get("description", [])).strip()
        detail.verification = "\n".join(fields.get("verification", [])).strip()
        if "depends" in fields:
            detail.depends_on = parse_dependencies(" ".join(fields["depends"]))
        details[detail.task_id] = detail

    return details


def serialize_task(task: Task) -> str:
    line = f"- [{STATUS_MARKERS[task.status]}] {task.id}. {task.description}"
    if task.depends_on:
        line += f" (depends: {', '.join(task.depends_on)})"
    return line


def serialize_document(document: TodoDocument) -> str:
    """Render a document back to checklist text.

    The output parses to the same milestones, tasks, statuses and
    dependencies. Whitespace follows a canonical layout rather than the
    original text.
    """
    lines: list[str] = []
    if document.title:
        lines.append(f"# {document.title}")
    if document.project:
        lines.append(f"> Project: {document.project}")

    for milestone in document.milestones:
        if lines:
            lines.append("")
        lines.append(f"## {milestone.id}: {milestone.title}")
        lines.extend(serialize_task(task) for task in milestone.tasks)

    return "\n".join(lines) + "\n"


def update_task_status(content: str, task_id: str, status: TaskStatus) -> str:
    """Rewrite one task's marker, leaving every other byte untouched.

    Args:
        content: Document text
        task_id: Task to update
        status: New status

    Returns:
        Updated document text

    Raises:
        NotFoundError: If no checklist line carries task_id
    """
    status = TaskStatus(status)
    lines = content.splitlines(keepends=True)
    in_milestone = False

    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        if MILESTONE_RE.match(body):
            in_milestone = True
            continue
        match = TASK_RE.match(body)
        if not (in_milestone and match and match.group("id") == task_id):
            continue
        marker_at = match.start("marker")
        lines[index] = line[:marker_at] + STATUS_MARKERS[status] + line[marker_at + 1:]
        return "".join(lines)

    raise NotFoundError("Task", task_id)
