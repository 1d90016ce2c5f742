"""Retry policy and failure classification for task dispatch."""

import logging
from dataclasses import dataclass
from enum import Enum

from ..agents.base import AgentOutcome

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Why a task dispatch failed."""

    TIMEOUT = "timeout"
    AGENT_ERROR = "agent_error"
    EXIT_CODE = "exit_code"
    UNKNOWN = "unknown"


@dataclass
class TaskFailure:
    """Failure details recorded on the attempt and the execution."""

    kind: FailureKind
    message: str


def classify_failure(outcome: AgentOutcome) -> TaskFailure:
    """Describe a failed outcome.

    Args:
        outcome: Failed agent outcome

    Returns:
        TaskFailure with a one-line message
    """
    if outcome.timed_out:
        return TaskFailure(FailureKind.TIMEOUT, outcome.error or "Task timed out")
    if outcome.exit_code not in (None, 0):
        return TaskFailure(
            FailureKind.EXIT_CODE,
            outcome.error or f"Agent exited with code {outcome.exit_code}",
        )
    if outcome.error:
        return TaskFailure(FailureKind.AGENT_ERROR, outcome.error)
    return TaskFailure(FailureKind.UNKNOWN, "Task failed without an error message")


class TaskRetryPolicy:
    """Limits operator retries of a failing task."""

    def __init__(self, max_retries: int = 3):
        """Initialize retry policy.

        Args:
            max_retries: Retries allowed after the first failed attempt
        """
        self.max_retries = max_retries

    def can_retry(self, failed_attempts: int) -> bool:
        """Check if a task may be dispatched again.

        Args:
            failed_attempts: Failed attempts recorded for the task

        Returns:
            True if another attempt is allowed
        """
        return failed_attempts <= self.max_retries

    def remaining(self, failed_attempts: int) -> int:
        used = max(0, failed_attempts - 1)
        return max(0, self.max_retries - used)
