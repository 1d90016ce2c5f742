"""JSON-file record store with single-row update operations."""

import fcntl
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..config.models import CommitStrategy
from .persistence import (
    AttemptStatus,
    DevStatus,
    Execution,
    ExecutionStatus,
    Project,
    RuntimeStatus,
    StoreData,
    TaskAttempt,
    Version,
    generate_id,
    load_store_data,
    save_store_data,
    utc_now,
)

logger = logging.getLogger(__name__)


class JsonStore:
    """All records in one JSON document.

    Every operation re-reads the file under an exclusive lock, so a
    ``pause`` issued from a second process is visible to the process that
    runs the task loop.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[StoreData]:
        """Read-modify-write the whole document.

        Yields:
            StoreData to mutate; saved when the block exits without error
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_name(f"{self.path.name}.lock")
        with self._lock, open(lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                data = load_store_data(self.path)
                yield data
                save_store_data(data, self.path)
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def read(self) -> StoreData:
        with self._lock:
            return load_store_data(self.path)


class ProjectStore:
    """Project records."""

    def __init__(self, store: JsonStore):
        self.store = store

    def create(self, name: str, path: str) -> Project:
        project = Project(id=generate_id("proj"), name=name, path=str(path))
        with self.store.transaction() as data:
            data.projects[project.id] = project
        return project

    def find_by_id(self, project_id: str) -> Optional[Project]:
        return self.store.read().projects.get(project_id)

    def list_all(self) -> list[Project]:
        return list(self.store.read().projects.values())


class VersionStore:
    """Version records."""

    def __init__(self, store: JsonStore):
        self.store = store

    def create(
        self,
        project_id: str,
        name: str,
        branch_name: Optional[str] = None,
        dev_status: DevStatus = DevStatus.DRAFTING,
    ) -> Version:
        version = Version(
            id=generate_id("ver"),
            project_id=project_id,
            name=name,
            branch_name=branch_name,
            dev_status=dev_status,
        )
        with self.store.transaction() as data:
            data.versions[version.id] = version
        return version

    def find_by_id(self, version_id: str) -> Optional[Version]:
        return self.store.read().versions.get(version_id)

    def list_by_project(self, project_id: str) -> list[Version]:
        return [v for v in self.store.read().versions.values() if v.project_id == project_id]

    def update_status(
        self,
        version_id: str,
        dev_status: DevStatus | str | None = None,
        runtime_status: RuntimeStatus | str | None = None,
    ) -> Optional[Version]:
        """Write new status values for a version.

        Returns:
            Updated version, or None if it doesn't exist
        """
        with self.store.transaction() as data:
            version = data.versions.get(version_id)
            if version is None:
                return None
            if dev_status is not None:
                version.dev_status = DevStatus(dev_status)
            if runtime_status is not None:
                version.runtime_status = RuntimeStatus(runtime_status)
            version.updated_at = utc_now()
            return version.model_copy()


class ExecutionStore:
    """Execution records.

    ``complete`` and ``set_paused`` are compare-and-set updates: they
    check the row's current status inside the same transaction that writes
    it and report whether the write happened. The ``*_loop`` methods
    manage the lease that lets only one process run an execution's task
    loop at a time.
    """

    def __init__(self, store: JsonStore):
        self.store = store

    def create(
        self,
        version_id: str,
        total_tasks: int,
        completed_tasks: int = 0,
        pre_execution_commit: Optional[str] = None,
        commit_strategy: CommitStrategy = CommitStrategy.EACH_TASK,
    ) -> Execution:
        execution = Execution(
            id=generate_id("exec"),
            version_id=version_id,
            status=ExecutionStatus.RUNNING,
            is_paused=False,
            pre_execution_commit=pre_execution_commit,
            commit_strategy=commit_strategy,
            total_tasks=total_tasks,
            completed_tasks=completed_tasks,
        )
        with self.store.transaction() as data:
            data.executions[execution.id] = execution
        return execution

    def find_by_id(self, execution_id: str) -> Optional[Execution]:
        return self.store.read().executions.get(execution_id)

    def find_by_version(self, version_id: str) -> list[Execution]:
        executions = [
            e for e in self.store.read().executions.values() if e.version_id == version_id
        ]
        return sorted(executions, key=lambda e: e.started_at)

    def find_active_for_version(self, version_id: str) -> Optional[Execution]:
        """Latest running or paused execution for a version."""
        active = [
            e
            for e in self.find_by_version(version_id)
            if e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        ]
        return active[-1] if active else None

    def find_running_or_paused(self) -> list[Execution]:
        executions = self.store.read().executions.values()
        return [
            e
            for e in executions
            if e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
            or (e.is_paused and not e.is_halted)
        ]

    def update_progress(self, execution_id: str, **fields) -> Optional[Execution]:
        """Update progress fields (completed_tasks, current_task_id, ...).

        Returns:
            Updated execution, or None if it doesn't exist
        """
        allowed = {"completed_tasks", "total_tasks", "current_task_id", "last_error"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update execution fields: {sorted(unknown)}")

        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None:
                return None
            for key, value in fields.items():
                setattr(execution, key, value)
            return execution.model_copy()

    def complete(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: Optional[str] = None,
        unless_paused: bool = False,
    ) -> bool:
        """Move an execution to a final status.

        Args:
            execution_id: Execution to finish
            status: Final status
            error: Optional last error to record
            unless_paused: Refuse while a pause is requested

        Returns:
            False if the execution is missing, already completed/aborted,
            or paused with ``unless_paused`` set
        """
        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None or execution.is_terminal:
                return False
            if unless_paused and execution.is_paused:
                return False
            execution.status = ExecutionStatus(status)
            execution.is_paused = False
            execution.completed_at = utc_now()
            if error is not None:
                execution.last_error = error
            logger.debug(f"Execution {execution_id} -> {execution.status.value}")
            return True

    def set_paused(self, execution_id: str, paused: bool) -> bool:
        """Set the pause flag and the matching status.

        Returns:
            False if the execution is missing or halted
        """
        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None or execution.is_halted:
                return False
            execution.is_paused = paused
            execution.status = ExecutionStatus.PAUSED if paused else ExecutionStatus.RUNNING
            return True

    def claim_loop(self, execution_id: str, owner: str, pid: int, ttl_sec: float) -> bool:
        """Take the task loop lease for ``owner``.

        Succeeds when the lease is free, already held by ``owner``, or held
        by a process that is gone.

        Returns:
            False if the execution is missing or another live owner holds it
        """
        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None:
                return False
            if execution.loop_owner not in (None, owner) and execution.loop_is_live(ttl_sec):
                return False
            if execution.loop_owner not in (None, owner):
                logger.warning(
                    f"Taking over task loop of {execution_id} from dead owner {execution.loop_owner}"
                )
            execution.loop_owner = owner
            execution.loop_pid = pid
            execution.loop_heartbeat = utc_now()
            return True

    def renew_loop(self, execution_id: str, owner: str) -> bool:
        """Refresh the lease heartbeat.

        Returns:
            False if ``owner`` no longer holds the lease
        """
        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None or execution.loop_owner != owner:
                return False
            execution.loop_heartbeat = utc_now()
            return True

    def release_loop(self, execution_id: str, owner: str, keep_if_resumed: bool = False) -> bool:
        """Give up the task loop lease.

        Args:
            execution_id: Execution whose lease to release
            owner: Current holder
            keep_if_resumed: Keep the lease when the execution is neither
                halted nor paused, i.e. it was resumed after the loop
                decided to stop

        Returns:
            False if the lease was kept; the holder must keep running
        """
        with self.store.transaction() as data:
            execution = data.executions.get(execution_id)
            if execution is None or execution.loop_owner != owner:
                return True
            if keep_if_resumed and not (execution.is_halted or execution.is_paused):
                execution.loop_heartbeat = utc_now()
                return False
            execution.loop_owner = None
            execution.loop_pid = None
            execution.loop_heartbeat = None
            return True


class TaskAttemptStore:
    """Task attempt records."""

    def __init__(self, store: JsonStore):
        self.store = store

    def create(
        self,
        execution_id: str,
        task_id: str,
        status: AttemptStatus = AttemptStatus.RUNNING,
    ) -> TaskAttempt:
        with self.store.transaction() as data:
            number = 1 + sum(
                1
                for a in data.attempts.values()
                if a.execution_id == execution_id and a.task_id == task_id
            )
            attempt = TaskAttempt(
                id=generate_id("att"),
                execution_id=execution_id,
                task_id=task_id,
                attempt_number=number,
                status=status,
            )
            if status != AttemptStatus.RUNNING:
                attempt.completed_at = utc_now()
            data.attempts[attempt.id] = attempt
        return attempt

    def complete(
        self, attempt_id: str, status: AttemptStatus, error_message: Optional[str] = None
    ) -> None:
        with self.store.transaction() as data:
            attempt = data.attempts.get(attempt_id)
            if attempt is None:
                return
            attempt.status = AttemptStatus(status)
            attempt.error_message = error_message
            attempt.completed_at = utc_now()

    def list_for_task(self, execution_id: str, task_id: str) -> list[TaskAttempt]:
        attempts = [
            a
            for a in self.store.read().attempts.values()
            if a.execution_id == execution_id and a.task_id == task_id
        ]
        return sorted(attempts, key=lambda a: a.attempt_number)

    def count_failures(self, execution_id: str, task_id: str) -> int:
        return sum(
            1
            for a in self.list_for_task(execution_id, task_id)
            if a.status == AttemptStatus.FAILED
        )


class Stores:
    """Store views sharing one JSON document."""

    def __init__(self, path: Path):
        self.backend = JsonStore(path)
        self.projects = ProjectStore(self.backend)
        self.versions = VersionStore(self.backend)
        self.executions = ExecutionStore(self.backend)
        self.attempts = TaskAttemptStore(self.backend)
