"""Loading and updating the task document on disk."""

import logging
import os
from pathlib import Path

from ..config.models import ExecutionConfig
from ..errors import MalformedDocument
from .parser import (
    TaskStatus,
    TodoDocument,
    parse_milestone_detail,
    parse_todo_document,
    update_task_status,
)

logger = logging.getLogger(__name__)


def todo_path(project_path: Path, settings: ExecutionConfig) -> Path:
    return Path(project_path) / settings.todo_path


def load_plan(project_path: Path, settings: ExecutionConfig) -> TodoDocument:
    """Parse the task document and merge milestone detail files.

    Called for every planning decision; nothing is cached so hand edits
    made while an execution is paused are picked up.

    Args:
        project_path: Project working directory
        settings: Execution settings locating the documents

    Returns:
        Parsed document

    Raises:
        MalformedDocument: If the document is missing or has no milestones
    """
    path = todo_path(project_path, settings)
    if not path.exists():
        raise MalformedDocument(f"Task document not found: {path}")

    document = parse_todo_document(path.read_text(encoding="utf-8"))

    details_dir = Path(project_path) / settings.milestones_dir
    if details_dir.is_dir():
        details = {}
        for detail_file in sorted(details_dir.glob("*.md")):
            details.update(parse_milestone_detail(detail_file.read_text(encoding="utf-8")))

        for task in document.all_tasks():
            detail = details.get(task.id)
            if detail is None:
                continue
            task.details = detail.description
            task.verification = detail.verification
            # Inline checklist dependencies take precedence.
            if not task.depends_on and detail.depends_on:
                task.depends_on = list(detail.depends_on)

    return document


def write_task_status(path: Path, task_id: str, status: TaskStatus) -> None:
    """Atomically rewrite one task's marker in the document.

    Raises:
        NotFoundError: If the task isn't in the document
    """
    path = Path(path)
    content = path.read_bytes().decode("utf-8")
    updated = update_task_status(content, task_id, status)

    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(temp_path, "w", encoding="utf-8", newline="") as f:
        f.write(updated)
        f.flush()
    temp_path.replace(path)
    logger.debug(f"Marked task {task_id} {TaskStatus(status).value} in {path}")
