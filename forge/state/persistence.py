"""Persisted records with atomic writes."""

import json
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..config.models import CommitStrategy
from ..utils.subprocess import process_exists


class DevStatus(str, Enum):
    """Development flow states of a version."""

    DRAFTING = "drafting"
    SCAFFOLDING = "scaffolding"
    REVIEWING = "reviewing"
    READY = "ready"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class RuntimeStatus(str, Enum):
    """Runtime flow states of a version."""

    NOT_CONFIGURED = "not_configured"
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Execution lifecycle states."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


# Rows in these states can no longer be aborted or resumed.
TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.ABORTED})
# Rows in these states never run the task loop again.
HALTED_STATUSES = TERMINAL_STATUSES | {ExecutionStatus.FAILED}


class AttemptStatus(str, Enum):
    """Outcome of one dispatch of a task."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    SKIPPED = "skipped"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Project(BaseModel):
    """A local project checkout."""

    id: str
    name: str
    path: str = Field(description="Local working directory")
    created_at: str = Field(default_factory=utc_now)


class Version(BaseModel):
    """A unit of development work on a project."""

    id: str
    project_id: str
    name: str = Field(default="")
    branch_name: Optional[str] = Field(default=None)
    dev_status: DevStatus = Field(default=DevStatus.DRAFTING)
    runtime_status: RuntimeStatus = Field(default=RuntimeStatus.NOT_CONFIGURED)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class Execution(BaseModel):
    """One run of the task-execution phase for a version."""

    id: str
    version_id: str
    status: ExecutionStatus = Field(default=ExecutionStatus.RUNNING)
    # Tracked separately from status; see DESIGN.md.
    is_paused: bool = Field(default=False)
    pre_execution_commit: Optional[str] = Field(default=None)
    commit_strategy: CommitStrategy = Field(default=CommitStrategy.EACH_TASK)
    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)
    current_task_id: Optional[str] = Field(default=None)
    last_error: Optional[str] = Field(default=None)
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = Field(default=None)
    # Lease held by the process running the task loop
    loop_owner: Optional[str] = Field(default=None)
    loop_pid: Optional[int] = Field(default=None)
    loop_heartbeat: Optional[str] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_halted(self) -> bool:
        return self.status in HALTED_STATUSES

    def loop_is_live(self, ttl_sec: float, now: Optional[datetime] = None) -> bool:
        """Whether a live process holds the task loop lease.

        The owner counts as gone once its process has exited or its
        heartbeat is older than ``ttl_sec``.
        """
        if self.loop_owner is None or self.loop_pid is None or self.loop_heartbeat is None:
            return False
        if not process_exists(self.loop_pid):
            return False
        now = now or datetime.now(timezone.utc)
        age = now - datetime.fromisoformat(self.loop_heartbeat)
        return age.total_seconds() < ttl_sec


class TaskAttempt(BaseModel):
    """Audit record of one task dispatch."""

    id: str
    execution_id: str
    task_id: str
    attempt_number: int = Field(default=1)
    status: AttemptStatus = Field(default=AttemptStatus.RUNNING)
    error_message: Optional[str] = Field(default=None)
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = Field(default=None)


class StoreData(BaseModel):
    """Whole-store document."""

    projects: dict[str, Project] = Field(default_factory=dict)
    versions: dict[str, Version] = Field(default_factory=dict)
    executions: dict[str, Execution] = Field(default_factory=dict)
    attempts: dict[str, TaskAttempt] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utc_now)


def load_store_data(store_path: Path) -> StoreData:
    """Load store document.

    Args:
        store_path: Path to store JSON file

    Returns:
        StoreData, empty if the file doesn't exist
    """
    if not store_path.exists():
        return StoreData()

    with open(store_path, "r") as f:
        data = json.load(f)

    return StoreData(**data)


def save_store_data(data: StoreData, store_path: Path) -> None:
    """Save store document with atomic write.

    Args:
        data: Store document
        store_path: Destination path
    """
    data.updated_at = utc_now()
    store_path.parent.mkdir(parents=True, exist_ok=True)

    # Atomic write: temp file -> rename
    temp_path = store_path.with_name(f"{store_path.name}.{os.getpid()}.tmp")
    with open(temp_path, "w") as f:
        json.dump(data.model_dump(mode="json"), f, indent=2)
        f.flush()
    temp_path.replace(store_path)


def generate_id(prefix: str) -> str:
    """Generate a short unique identifier.

    Returns:
        ID such as ``exec_1a2b3c4d5e6f``
    """
    return f"{prefix}_{uuid.uuid4().hex[:12]}"
