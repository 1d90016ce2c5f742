"""Unit tests for logging configuration."""

import logging
import os
import re
import sys
import time
from logging.handlers import RotatingFileHandler

import pytest

from forge.config.models import LoggingConfig
from forge.utils.logging import (
    ForgeFormatter,
    configure_from_settings,
    execution_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before and after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers.copy()

    yield

    root.setLevel(original_level)
    root.handlers.clear()
    for handler in original_handlers:
        root.addHandler(handler)


def _record(msg: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="forge.executor.orchestrator",
        level=level,
        pathname="orchestrator.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestForgeFormatter:
    """Tests for ForgeFormatter."""

    def test_plain_output(self):
        """Test no ANSI codes and expected structure without colors."""
        output = ForgeFormatter(use_colors=False).format(_record("Task 001 done"))

        assert not re.search(r"\033\[[0-9;]*m", output)
        assert re.match(r"\[\d{2}:\d{2}:\d{2}\] INFO\s+orchestrator\s+Task 001 done", output)

    def test_execution_id_appended(self):
        """Test records tagged with an execution id show it."""
        output = ForgeFormatter(use_colors=False).format(
            _record("Execution paused", execution_id="exec_123")
        )
        assert output.endswith("Execution paused [exec=exec_123]")

    def test_exception_text_included(self):
        """Test exception tracebacks are rendered."""
        try:
            raise RuntimeError("loop crashed")
        except RuntimeError:
            record = _record("failure", level=logging.ERROR)
            record.exc_info = sys.exc_info()

        output = ForgeFormatter(use_colors=False).format(record)
        assert "RuntimeError: loop crashed" in output


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_console_handler_created(self):
        """Test console handler uses ForgeFormatter."""
        setup_logging()
        root = logging.getLogger()
        assert any(isinstance(h.formatter, ForgeFormatter) for h in root.handlers)

    def test_rotating_file_handler_in_log_dir(self, tmp_path):
        """Test a rotating file handler is created under log_dir."""
        setup_logging(level="DEBUG", log_dir=tmp_path / "logs", rotation_mb=2, retention_days=3)

        root = logging.getLogger()
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 2 * 1024 * 1024
        assert file_handlers[0].backupCount == 3
        assert root.level == logging.DEBUG
        assert list((tmp_path / "logs").glob("forge_*.log"))

    def test_console_disabled(self, tmp_path):
        """Test console=False leaves only the file handler."""
        setup_logging(log_file=tmp_path / "forge.log", console=False)
        root = logging.getLogger()
        assert all(isinstance(h, RotatingFileHandler) for h in root.handlers)


def test_execution_logger_tags_records(caplog):
    """Test the adapter attaches execution_id to every record."""
    log = execution_logger(logging.getLogger("forge.test"), "exec_9")
    with caplog.at_level(logging.INFO, logger="forge.test"):
        log.info("Task loop stopped")

    assert caplog.records[-1].execution_id == "exec_9"


def test_old_logs_pruned(tmp_path):
    """Test log files past retention are removed when logging starts."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    stale = log_dir / "forge_20200101_000000.log"
    fresh = log_dir / "forge_20990101_000000.log"
    stale.write_text("old")
    fresh.write_text("new")
    ten_days_ago = time.time() - 10 * 86400
    os.utime(stale, (ten_days_ago, ten_days_ago))

    setup_logging(log_dir=log_dir, retention_days=7, console=False)

    assert not stale.exists()
    assert fresh.exists()


def test_configure_from_settings(tmp_path):
    """Test the logging section drives level and file rotation; verbose wins."""
    settings = LoggingConfig(level="WARNING", log_dir=str(tmp_path), rotation_mb=5, retention_days=2)

    configure_from_settings(settings)
    root = logging.getLogger()
    assert root.level == logging.WARNING
    handler = next(h for h in root.handlers if isinstance(h, RotatingFileHandler))
    assert handler.maxBytes == 5 * 1024 * 1024

    configure_from_settings(settings, verbose=True)
    assert root.level == logging.DEBUG
