from __future__ import annotations

import logging
import re
import shutil
import stat
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from forge.main import cli

TODO = """# Smoke
## M1: Basics
- [ ] 001. First task
- [ ] 002. Second task (depends: 001)
## M2: More
- [ ] 003. Third task (depends: 002)
"""


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to the runner's streams after each test."""
    root = logging.getLogger()
    original_handlers = root.handlers.copy()
    yield
    root.handlers.clear()
    for handler in original_handlers:
        root.addHandler(handler)


def _invoke(runner: CliRunner, config_path: Path, *args: str):
    return runner.invoke(cli, ["--config", str(config_path), *args])


def _init_workspace(runner: CliRunner, root: Path) -> tuple[Path, str]:
    """Create config and a ready version; return config path and version id."""
    config_path = root / ".forge" / "config.yml"
    result = _invoke(runner, config_path, "init")
    assert result.exit_code == 0, result.output

    project_dir = root / "project"
    (project_dir / "META").mkdir(parents=True)
    (project_dir / "META" / "TODO.md").write_text(TODO)

    result = _invoke(runner, config_path, "project", "add", str(project_dir), "--name", "smoke")
    assert result.exit_code == 0, result.output
    project_id = re.search(r"Project (proj_\w+)", result.output).group(1)

    result = _invoke(runner, config_path, "version", "add", project_id, "--name", "v1", "--status", "ready")
    assert result.exit_code == 0, result.output
    version_id = re.search(r"Version (ver_\w+)", result.output).group(1)
    return config_path, version_id


def _use_fake_agent(root: Path, config_path: Path) -> None:
    script = root / "fake-claude"
    script.write_text(
        "#!/bin/sh\n"
        "cat > /dev/null\n"
        'echo \'{"type":"result","result":"ok","is_error":false}\'\n'
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)

    config = yaml.safe_load(config_path.read_text())
    config["agent"]["cli_path"] = str(script)
    config_path.write_text(yaml.safe_dump(config))


def test_cli_init_creates_config(tmp_path: Path) -> None:
    runner = CliRunner()
    config_path = tmp_path / ".forge" / "config.yml"
    result = _invoke(runner, config_path, "init")
    assert result.exit_code == 0, result.output
    assert config_path.exists()
    assert (config_path.parent / "state-machines" / "dev-flow.yml").exists()

    again = _invoke(runner, config_path, "init")
    assert again.exit_code != 0
    assert "--force" in again.output


def test_cli_requires_config(tmp_path: Path) -> None:
    runner = CliRunner()
    result = _invoke(runner, tmp_path / "missing.yml", "stale")
    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_cli_plan_and_versions(tmp_path: Path) -> None:
    runner = CliRunner()
    config_path, version_id = _init_workspace(runner, tmp_path)

    plan = _invoke(runner, config_path, "plan", version_id)
    assert plan.exit_code == 0, plan.output
    assert "Progress: 0/3 (0%)" in plan.output
    assert "001. First task" in plan.output

    bad = _invoke(runner, config_path, "version", "event", version_id, "SCAFFOLD")
    assert bad.exit_code == 1
    assert "cannot apply 'SCAFFOLD' in state 'ready'" in bad.output


def test_cli_unknown_execution(tmp_path: Path) -> None:
    runner = CliRunner()
    config_path, _ = _init_workspace(runner, tmp_path)

    result = _invoke(runner, config_path, "status", "exec_missing")
    assert result.exit_code == 1
    assert "Execution not found: exec_missing" in result.output

    stale = _invoke(runner, config_path, "stale")
    assert stale.exit_code == 0
    assert "No interrupted executions" in stale.output


@pytest.mark.skipif(shutil.which("sh") is None, reason="requires a POSIX shell")
def test_cli_start_runs_plan(tmp_path: Path) -> None:
    runner = CliRunner()
    config_path, version_id = _init_workspace(runner, tmp_path)
    _use_fake_agent(tmp_path, config_path)

    result = _invoke(runner, config_path, "start", version_id, "--commit-strategy", "manual")
    assert result.exit_code == 0, result.output
    execution_id = re.search(r"Execution (exec_\w+)", result.output).group(1)
    assert f"Execution {execution_id} completed" in result.output
    assert (tmp_path / "project" / "META" / "TODO.md").read_text().count("[x]") == 3

    status = _invoke(runner, config_path, "status", execution_id)
    assert "Status:    completed" in status.output
    assert "Progress:  3/3" in status.output

    abort = _invoke(runner, config_path, "abort", execution_id, "--yes")
    assert abort.exit_code == 1
    assert "Cannot abort execution in 'completed' state" in abort.output
