"""Configuration loader with validation and caching."""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import ExecutionConfig, ForgeConfig, StateMachineConfig

logger = logging.getLogger(__name__)

DEV_FLOW = "dev-flow"
RUNTIME_FLOW = "runtime-flow"

_cache: dict[tuple[str, Path], object] = {}


class ConfigError(Exception):
    """Configuration error."""

    pass


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not data:
        raise ConfigError(f"Empty configuration file: {path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


def _resolve(base: Path, value: Path | str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def load_config(config_path: Path) -> ForgeConfig:
    """Load and validate the main configuration file.

    Relative paths inside the file are resolved against the directory
    holding it.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated ForgeConfig instance

    Raises:
        ConfigError: If config file missing or invalid
    """
    data = _read_yaml(config_path)

    try:
        config = ForgeConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")

    base = config_path.parent.resolve()
    config.config_dir = base
    config.store.path = _resolve(base, config.store.path)
    config.agent.run_dir = _resolve(base, config.agent.run_dir)
    config.logging.log_dir = str(_resolve(base, config.logging.log_dir))
    config.state_machines_dir = _resolve(base, config.state_machines_dir)
    config.execution_file = _resolve(base, config.execution_file)
    return config


def load_state_machine(machines_dir: Path, name: str) -> StateMachineConfig:
    """Load a state machine definition, cached per file.

    Args:
        machines_dir: Directory holding ``<name>.yml`` files
        name: State machine name (``dev-flow`` or ``runtime-flow``)

    Returns:
        Validated StateMachineConfig

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = (Path(machines_dir) / f"{name}.yml").resolve()
    key = ("state_machine", path)
    if key in _cache:
        return _cache[key]

    data = _read_yaml(path)
    try:
        config = StateMachineConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid state machine {name}: {e}")

    logger.debug(f"Loaded state machine {config.name} from {path}")
    _cache[key] = config
    return config


def load_execution_config(path: Path) -> ExecutionConfig:
    """Load execution settings, cached per file.

    Args:
        path: Path to execution YAML file

    Returns:
        Validated ExecutionConfig

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = Path(path).resolve()
    key = ("execution", path)
    if key in _cache:
        return _cache[key]

    data = _read_yaml(path)
    try:
        config = ExecutionConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid execution settings: {e}")

    _cache[key] = config
    return config


def clear_config_cache() -> None:
    """Drop cached state machine and execution settings."""
    _cache.clear()


DEFAULT_DEV_FLOW = {
    "name": DEV_FLOW,
    "initial_state": "drafting",
    "states": [
        "drafting",
        "scaffolding",
        "reviewing",
        "ready",
        "executing",
        "paused",
        "completed",
        "error",
    ],
    "transitions": [
        {"event": "SCAFFOLD", "from": "drafting", "to": "scaffolding"},
        {"event": "SCAFFOLD_COMPLETE", "from": "scaffolding", "to": "reviewing"},
        {"event": "REQUEST_CHANGES", "from": "reviewing", "to": "drafting"},
        {"event": "APPROVE", "from": "reviewing", "to": "ready"},
        {"event": "START", "from": "ready", "to": "executing"},
        {"event": "PAUSE", "from": "executing", "to": "paused"},
        {"event": "RESUME", "from": "paused", "to": "executing"},
        {"event": "RETRY", "from": ["executing", "paused"], "to": "executing"},
        {"event": "ABORT", "from": ["executing", "paused"], "to": "ready"},
        {"event": "COMPLETE", "from": "executing", "to": "completed"},
        {"event": "FAIL", "from": ["scaffolding", "executing", "paused"], "to": "error"},
    ],
}

DEFAULT_RUNTIME_FLOW = {
    "name": RUNTIME_FLOW,
    "initial_state": "not_configured",
    "states": ["not_configured", "idle", "running", "success", "failed"],
    "transitions": [
        {"event": "CONFIGURE", "from": "not_configured", "to": "idle"},
        {"event": "RUN", "from": ["idle", "success", "failed"], "to": "running"},
        {"event": "SUCCEED", "from": "running", "to": "success"},
        {"event": "FAIL", "from": "running", "to": "failed"},
        {"event": "RESET", "from": ["success", "failed"], "to": "idle"},
        {"event": "UNCONFIGURE", "from": ["idle", "success", "failed"], "to": "not_configured"},
    ],
}


def _dump(data: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def create_default_config(config_path: Path) -> None:
    """Create default configuration files next to ``config_path``.

    Writes the main config, execution settings and both state machines.

    Args:
        config_path: Path where the main config should be created
    """
    base = config_path.parent

    default_config = {
        "store": {"path": "store.json"},
        "agent": {
            "cli_path": "claude",
            "permission_mode": "bypassPermissions",
            "allowed_tools": [],
            "extra_args": [],
            "run_dir": "run",
        },
        "logging": {
            "level": "INFO",
            "log_dir": "logs",
            "rotation_mb": 10,
            "retention_days": 7,
        },
        "state_machines_dir": "state-machines",
        "execution_file": "execution.yml",
    }
    default_execution = ExecutionConfig().model_dump(mode="json")

    _dump(default_config, config_path)
    _dump(default_execution, base / "execution.yml")
    _dump(DEFAULT_DEV_FLOW, base / "state-machines" / f"{DEV_FLOW}.yml")
    _dump(DEFAULT_RUNTIME_FLOW, base / "state-machines" / f"{RUNTIME_FLOW}.yml")
