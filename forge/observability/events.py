"""Execution events and terminal reporting."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import click

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of execution events."""

    TASK_STARTED = "task_started"
    TASK_DONE = "task_done"
    TASK_FAILED = "task_failed"
    PROGRESS = "progress"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


class StatusSymbol(str, Enum):
    """Symbols for status display."""

    DONE = "✅"
    RUNNING = "🔄"
    PENDING = "⏳"
    FAILED = "❌"
    BLOCKED = "🚫"


@dataclass
class ExecutionEvent:
    """Something that happened during an execution."""

    kind: EventKind
    execution_id: str
    message: str
    task_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ExecutionEvent], None]

_LEVELS = {
    EventKind.TASK_FAILED: logging.WARNING,
    EventKind.BLOCKED: logging.WARNING,
    EventKind.ERROR: logging.ERROR,
}


class ExecutionEvents:
    """Logs execution events and forwards them to listeners."""

    def __init__(self, listeners: Optional[list[Listener]] = None):
        self.listeners: list[Listener] = list(listeners or [])

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def emit(
        self,
        kind: EventKind,
        execution_id: str,
        message: str,
        task_id: Optional[str] = None,
        **data: Any,
    ) -> ExecutionEvent:
        event = ExecutionEvent(
            kind=kind, execution_id=execution_id, message=message, task_id=task_id, data=data
        )
        logger.log(
            _LEVELS.get(kind, logging.INFO),
            message,
            extra={"execution_id": execution_id},
        )
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {kind.value}")
        return event

    def task_started(self, execution_id: str, task_id: str, description: str) -> None:
        self.emit(EventKind.TASK_STARTED, execution_id, f"Task {task_id} started: {description}", task_id)

    def task_done(self, execution_id: str, task_id: str) -> None:
        self.emit(EventKind.TASK_DONE, execution_id, f"Task {task_id} done", task_id)

    def task_failed(self, execution_id: str, task_id: str, error: str) -> None:
        self.emit(EventKind.TASK_FAILED, execution_id, f"Task {task_id} failed: {error}", task_id, error=error)

    def progress(self, execution_id: str, completed: int, total: int) -> None:
        self.emit(
            EventKind.PROGRESS,
            execution_id,
            f"Progress {completed}/{total}",
            completed=completed,
            total=total,
        )

    def paused(self, execution_id: str) -> None:
        self.emit(EventKind.PAUSED, execution_id, "Execution paused")

    def blocked(self, execution_id: str, task_ids: list[str]) -> None:
        message = "No eligible task"
        if task_ids:
            message += f"; blocked: {', '.join(task_ids)}"
        self.emit(EventKind.BLOCKED, execution_id, message, blocked=task_ids)

    def completed(self, execution_id: str) -> None:
        self.emit(EventKind.COMPLETED, execution_id, "All tasks completed")

    def aborted(self, execution_id: str) -> None:
        self.emit(EventKind.ABORTED, execution_id, "Execution aborted")

    def error(self, execution_id: str, error: str) -> None:
        self.emit(EventKind.ERROR, execution_id, f"Execution error: {error}", error=error)


class TerminalReporter:
    """Prints execution events to the terminal."""

    SYMBOLS = {
        EventKind.TASK_STARTED: StatusSymbol.RUNNING,
        EventKind.TASK_DONE: StatusSymbol.DONE,
        EventKind.TASK_FAILED: StatusSymbol.FAILED,
        EventKind.PAUSED: StatusSymbol.PENDING,
        EventKind.BLOCKED: StatusSymbol.BLOCKED,
        EventKind.COMPLETED: StatusSymbol.DONE,
        EventKind.ABORTED: StatusSymbol.FAILED,
        EventKind.ERROR: StatusSymbol.FAILED,
    }

    def __init__(self, verbose: bool = False):
        """Initialize terminal reporter.

        Args:
            verbose: Also print progress events
        """
        self.verbose = verbose

    def __call__(self, event: ExecutionEvent) -> None:
        if event.kind == EventKind.PROGRESS:
            if self.verbose:
                click.echo(f"   {event.data['completed']}/{event.data['total']} tasks")
            return

        symbol = self.SYMBOLS.get(event.kind, StatusSymbol.PENDING).value
        err = event.kind in (EventKind.TASK_FAILED, EventKind.ERROR)
        click.echo(f"{symbol} {event.message}", err=err)
