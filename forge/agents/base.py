"""Coding agent interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import ExternalOperationFailure


class AgentError(ExternalOperationFailure):
    """Agent execution error."""

    def __init__(self, message: str):
        super().__init__("agent", message)


@dataclass
class TaskRequest:
    """One task handed to the coding agent."""

    execution_id: str
    task_id: str
    prompt: str
    work_dir: Path
    timeout_sec: float


@dataclass
class AgentOutcome:
    """Result of dispatching a task."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    aborted: bool = False


class CodingAgent(ABC):
    """Base coding agent interface."""

    def __init__(self, config: dict):
        """Initialize agent.

        Args:
            config: Agent configuration dict
        """
        self.config = config

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the agent can be run on this machine."""
        pass

    @abstractmethod
    async def dispatch(self, request: TaskRequest) -> AgentOutcome:
        """Run one task to completion.

        Args:
            request: Task to run

        Returns:
            AgentOutcome; ``aborted`` is set when abort() interrupted it

        Raises:
            AgentError: If the agent cannot be started
        """
        pass

    @abstractmethod
    async def abort(self, execution_id: str) -> bool:
        """Stop whatever the agent runs for an execution.

        Returns:
            True if something was stopped, False if nothing was running
        """
        pass
