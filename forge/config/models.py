"""Configuration models for Forge."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CommitStrategy(str, Enum):
    """When version-control checkpoints are created during execution."""

    EACH_TASK = "each_task"
    EACH_MILESTONE = "each_milestone"
    MANUAL = "manual"


class StateTransition(BaseModel):
    """One transition of a state machine configuration."""

    model_config = ConfigDict(populate_by_name=True)

    event: str = Field(description="Event name")
    from_states: list[str] = Field(alias="from", description="Allowed source states")
    to: str = Field(description="Destination state")

    @field_validator("from_states", mode="before")
    @classmethod
    def _coerce_from(cls, value):
        if isinstance(value, str):
            return [value]
        return value


class StateMachineConfig(BaseModel):
    """State machine definition loaded from YAML."""

    name: str = Field(description="State machine name")
    initial_state: str = Field(description="State new entities start in")
    states: list[str] = Field(description="Valid states")
    transitions: list[StateTransition] = Field(default_factory=list)


class ExecutionConfig(BaseModel):
    """Task execution settings."""

    default_commit_strategy: CommitStrategy = Field(
        default=CommitStrategy.EACH_TASK, description="Commit strategy when none is requested"
    )
    task_timeout_sec: int = Field(default=300, gt=0, description="Per-task agent timeout")
    max_retries: int = Field(default=3, ge=0, description="Max failed attempts per task")
    todo_path: str = Field(default="META/TODO.md", description="Task document, relative to project")
    milestones_dir: str = Field(
        default="META/MILESTONES", description="Milestone detail files, relative to project"
    )
    context_file: str = Field(
        default="META/CLAUDE.md", description="Project context passed to the agent"
    )
    auto_commit_before_execution: bool = Field(
        default=False, description="Commit a dirty working tree instead of refusing to start"
    )
    editor_command: str = Field(default="code", description="Editor opened on start when requested")
    loop_lease_ttl_sec: int = Field(
        default=60,
        gt=0,
        description="Seconds without a heartbeat before a task loop's owner is considered gone",
    )
    task_commit_message: str = Field(
        default="feat({milestone_id}): {task_id} {task_title}",
        description="Commit message template for each_task",
    )
    milestone_commit_message: str = Field(
        default="feat({milestone_id}): complete {milestone_title}",
        description="Commit message template for each_milestone",
    )


class StoreConfig(BaseModel):
    """Record store configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    path: Path = Field(default=Path("store.json"), description="JSON store file")


class AgentConfig(BaseModel):
    """Coding agent configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    cli_path: str = Field(default="claude", description="Path to Claude CLI")
    permission_mode: str = Field(
        default="bypassPermissions", description="Claude CLI permission mode"
    )
    allowed_tools: list[str] = Field(default_factory=list, description="Tools passed to the CLI")
    extra_args: list[str] = Field(default_factory=list, description="Extra CLI arguments")
    system_prompt: Optional[str] = Field(default=None, description="Appended system prompt")
    run_dir: Path = Field(default=Path("run"), description="Directory for pid files")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    log_dir: str = Field(default="logs", description="Log directory")
    rotation_mb: int = Field(default=10, ge=1, description="Rotate log after N MB")
    retention_days: int = Field(default=7, ge=0, description="Keep logs for N days")


class ForgeConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    store: StoreConfig = Field(default_factory=StoreConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_machines_dir: Path = Field(
        default=Path("state-machines"), description="State machine YAML directory"
    )
    execution_file: Path = Field(default=Path("execution.yml"), description="Execution settings")
    config_dir: Optional[Path] = Field(default=None, description="Set by the loader")
