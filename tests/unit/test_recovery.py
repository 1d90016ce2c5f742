"""Unit tests for retry policy and stale execution recovery."""

import asyncio
import os

import pytest

from forge.agents.base import AgentOutcome
from forge.errors import ValidationError
from forge.executor.orchestrator import LoopOutcome
from forge.recovery.policies import FailureKind, TaskRetryPolicy, classify_failure
from forge.recovery.stale import StaleDecision, find_stale_executions, resolve_stale_execution
from forge.state.persistence import DevStatus, ExecutionStatus


class TestTaskRetryPolicy:
    """Tests for TaskRetryPolicy."""

    def test_can_retry_up_to_limit(self):
        """Test retries are allowed while failures do not exceed the limit."""
        policy = TaskRetryPolicy(max_retries=2)
        assert policy.can_retry(0)
        assert policy.can_retry(1)
        assert policy.can_retry(2)
        assert not policy.can_retry(3)

    def test_remaining(self):
        """Test remaining retries count down after the first failure."""
        policy = TaskRetryPolicy(max_retries=2)
        assert policy.remaining(1) == 2
        assert policy.remaining(2) == 1
        assert policy.remaining(5) == 0


def test_classify_failure():
    """Test failed outcomes are classified by cause."""
    assert classify_failure(AgentOutcome(success=False, timed_out=True)).kind == FailureKind.TIMEOUT
    assert classify_failure(AgentOutcome(success=False, exit_code=2)).message == "Agent exited with code 2"
    assert classify_failure(AgentOutcome(success=False, error="oops")).kind == FailureKind.AGENT_ERROR
    assert classify_failure(AgentOutcome(success=False)).kind == FailureKind.UNKNOWN


def test_find_stale_executions(deps, stores, ready_version):
    """Test running and paused executions are found, final ones are not."""
    running = stores.executions.create(ready_version.id, total_tasks=3)
    paused = stores.executions.create(ready_version.id, total_tasks=3)
    stores.executions.set_paused(paused.id, True)
    done = stores.executions.create(ready_version.id, total_tasks=3)
    stores.executions.complete(done.id, ExecutionStatus.COMPLETED)

    stale = find_stale_executions(deps)

    assert {s.execution.id for s in stale} == {running.id, paused.id}
    described = {s.execution.id: s.describe() for s in stale}
    assert "demo / v1" in described[running.id]
    assert "paused" in described[paused.id]

    # Reporting changes nothing
    assert stores.executions.find_by_id(running.id).status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_resume_stale_running_execution(orchestrator, stores, agent, running_execution):
    """Test a running execution left by a dead process can be resumed."""
    result = await resolve_stale_execution(running_execution.id, "resume", orchestrator)

    assert result is None
    assert await orchestrator.wait(running_execution.id) == LoopOutcome.COMPLETED
    assert agent.dispatched == ["001", "002", "003"]


@pytest.mark.asyncio
async def test_resume_stale_paused_execution(orchestrator, stores, running_execution):
    """Test a paused execution resumes and the version returns to executing."""
    stores.executions.set_paused(running_execution.id, True)
    stores.versions.update_status(running_execution.version_id, dev_status=DevStatus.PAUSED)

    await resolve_stale_execution(running_execution.id, StaleDecision.RESUME, orchestrator)

    execution = stores.executions.find_by_id(running_execution.id)
    assert not execution.is_paused
    assert stores.versions.find_by_id(execution.version_id).dev_status == DevStatus.EXECUTING
    assert await orchestrator.wait(running_execution.id) == LoopOutcome.COMPLETED


@pytest.mark.asyncio
async def test_abort_stale_execution(orchestrator, stores, git, running_execution):
    """Test abort decision rolls back and marks the execution aborted."""
    result = await resolve_stale_execution(running_execution.id, "abort", orchestrator)

    assert result.success
    git.reset.assert_awaited_once_with("abc123", mode="hard")
    assert stores.executions.find_by_id(running_execution.id).status == ExecutionStatus.ABORTED


@pytest.mark.asyncio
async def test_resolve_rejects_bad_input(orchestrator, stores, running_execution):
    """Test unknown decisions and non-stale executions are rejected."""
    with pytest.raises(ValidationError, match="Unknown decision"):
        await resolve_stale_execution(running_execution.id, "ignore", orchestrator)

    stores.executions.complete(running_execution.id, ExecutionStatus.COMPLETED)
    with pytest.raises(ValidationError, match="not running or paused"):
        await resolve_stale_execution(running_execution.id, "resume", orchestrator)


@pytest.mark.asyncio
async def test_live_execution_is_not_stale(orchestrator, other_orchestrator, stores, agent, running_execution):
    """Test an execution whose loop runs elsewhere is neither listed nor resumable."""
    agent.delay = 0.2
    orchestrator.launch(running_execution.id)
    while not agent.requests:
        await asyncio.sleep(0.01)

    assert find_stale_executions(other_orchestrator.deps) == []
    with pytest.raises(ValidationError, match="still running in process"):
        await resolve_stale_execution(running_execution.id, "resume", other_orchestrator)

    assert await orchestrator.wait(running_execution.id) == LoopOutcome.COMPLETED
    assert agent.dispatched == ["001", "002", "003"]
    assert other_orchestrator.deps.agent.dispatched == []


@pytest.mark.asyncio
async def test_resume_takes_over_dead_owner(orchestrator, stores, agent, settings, running_execution):
    """Test a lease left by an exited process does not block recovery."""
    stores.executions.claim_loop(
        running_execution.id, "crashed", 99_999_999, settings.loop_lease_ttl_sec
    )

    assert [s.execution.id for s in find_stale_executions(orchestrator.deps)] == [running_execution.id]
    await resolve_stale_execution(running_execution.id, "resume", orchestrator)

    assert await orchestrator.wait(running_execution.id) == LoopOutcome.COMPLETED
    assert agent.dispatched == ["001", "002", "003"]
    assert stores.executions.find_by_id(running_execution.id).loop_owner is None
