"""Shared fixtures for Forge tests."""

import asyncio
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from forge.agents.base import AgentOutcome, CodingAgent, TaskRequest
from forge.config.loader import DEFAULT_DEV_FLOW, clear_config_cache
from forge.config.models import ExecutionConfig, StateMachineConfig
from forge.executor.orchestrator import ExecutionDeps, ExecutionOrchestrator
from forge.state.machine import StateMachine
from forge.state.persistence import DevStatus
from forge.state.store import Stores

TODO_DOC = """# Demo Project
> Project: demo

## M1: Setup
- [ ] 001. Create package layout
- [ ] 002. Add config loader (depends: 001)

## M2: Features
- [ ] 003. Implement parser (depends: 002)
"""


class FakeAgent(CodingAgent):
    """Agent double returning queued outcomes per task id."""

    def __init__(self, outcomes=None, available=True, delay=0.0, block=False):
        super().__init__({})
        self.outcomes = {task_id: list(queue) for task_id, queue in (outcomes or {}).items()}
        self.available = available
        self.delay = delay
        self.block = block
        self.requests: list[TaskRequest] = []
        self.aborted: list[str] = []
        self._released = asyncio.Event()

    @property
    def dispatched(self) -> list[str]:
        return [r.task_id for r in self.requests]

    async def is_available(self) -> bool:
        return self.available

    async def dispatch(self, request: TaskRequest) -> AgentOutcome:
        self.requests.append(request)
        if self.block:
            await self._released.wait()
            return AgentOutcome(success=False, aborted=True, error="Aborted")
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.outcomes.get(request.task_id)
        if queue:
            return queue.pop(0)
        return AgentOutcome(success=True, output=f"done {request.task_id}", exit_code=0)

    async def abort(self, execution_id: str) -> bool:
        self.aborted.append(execution_id)
        self._released.set()
        return True


def make_git(is_repo: bool = True) -> MagicMock:
    """GitOps double with async methods."""
    git = MagicMock()
    git.is_repo = AsyncMock(return_value=is_repo)
    git.has_changes = AsyncMock(return_value=False)
    git.get_head = AsyncMock(return_value="abc123")
    git.commit = AsyncMock(return_value="def456")
    git.commit_all = AsyncMock(return_value="def456")
    git.reset = AsyncMock(return_value=None)
    return git


@pytest.fixture(autouse=True)
def _clear_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    (path / "META").mkdir(parents=True)
    (path / "META" / "TODO.md").write_text(TODO_DOC)
    return path


@pytest.fixture
def stores(tmp_path: Path) -> Stores:
    return Stores(tmp_path / "state" / "store.json")


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def git() -> MagicMock:
    return make_git()


@pytest.fixture
def dev_flow() -> StateMachine:
    return StateMachine(StateMachineConfig(**DEFAULT_DEV_FLOW))


@pytest.fixture
def settings() -> ExecutionConfig:
    return ExecutionConfig()


@pytest.fixture
def deps(stores, agent, dev_flow, settings, git) -> ExecutionDeps:
    return ExecutionDeps(
        projects=stores.projects,
        versions=stores.versions,
        executions=stores.executions,
        attempts=stores.attempts,
        agent=agent,
        dev_flow=dev_flow,
        settings=settings,
        git_factory=lambda path: git,
    )


@pytest.fixture
def orchestrator(deps) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(deps)


@pytest.fixture
def other_orchestrator(deps) -> ExecutionOrchestrator:
    """Second orchestrator on the same store, as a separate CLI process would be."""
    return ExecutionOrchestrator(replace(deps, agent=FakeAgent()))


@pytest.fixture
def project(stores, project_dir):
    return stores.projects.create("demo", str(project_dir))


@pytest.fixture
def ready_version(stores, project):
    return stores.versions.create(project.id, "v1", dev_status=DevStatus.READY)


@pytest.fixture
def running_execution(stores, ready_version):
    """Execution row for a version already moved to executing."""
    stores.versions.update_status(ready_version.id, dev_status=DevStatus.EXECUTING)
    return stores.executions.create(
        ready_version.id, total_tasks=3, pre_execution_commit="abc123"
    )
