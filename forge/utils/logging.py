"""Logging setup for the CLI and the execution loop."""

import logging
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from ..config.models import LoggingConfig

DEFAULT_LOG_DIR = Path(".forge/logs")
QUIET_LOGGERS = ("asyncio",)


class ForgeFormatter(logging.Formatter):
    """``[HH:MM:SS] LEVEL name message`` with an optional execution tag.

    Records logged through :func:`execution_logger` carry ``execution_id``,
    which is appended as ``[exec=<id>]`` so interleaved loops stay readable.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        """Initialize formatter.

        Args:
            use_colors: Color the level name when stderr is a terminal
        """
        super().__init__()
        self.use_colors = use_colors

    def _level(self, record: logging.LogRecord) -> str:
        if not (self.use_colors and sys.stderr.isatty()):
            return f"{record.levelname:8}"
        color = self.LEVEL_COLORS.get(record.levelno, "")
        # Pad before coloring so escape codes don't break alignment
        return f"{color}{record.levelname:8}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        source = record.name.rsplit(".", 1)[-1]

        text = record.getMessage()
        execution_id = getattr(record, "execution_id", None)
        if execution_id:
            text += f" [exec={execution_id}]"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)

        return f"[{stamp}] {self._level(record)} {source:12} {text}"


def _prune_logs(log_dir: Path, retention_days: int) -> int:
    """Delete log files older than the retention period.

    Returns:
        Number of files removed
    """
    if retention_days <= 0 or not log_dir.is_dir():
        return 0
    cutoff = time.time() - retention_days * 86400
    removed = 0
    for path in log_dir.glob("forge_*.log*"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    return removed


def _file_handler(log_file: Path, rotation_mb: int, retention_days: int) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=max(1, rotation_mb) * 1024 * 1024,
        backupCount=max(1, retention_days),
    )
    handler.setFormatter(ForgeFormatter(use_colors=False))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    rotation_mb: int = 10,
    retention_days: int = 7,
    use_colors: bool = True,
    console: bool = True,
) -> None:
    """Configure the root logger.

    Replaces any handlers installed earlier, so the CLI can call it once
    with defaults and again after the configuration file is loaded.

    Args:
        level: Log level name
        log_file: Explicit log file; wins over log_dir
        log_dir: Directory for a timestamped ``forge_<ts>.log`` file
        rotation_mb: Rotate the file after this many MB
        retention_days: Prune older log files (0 keeps everything)
        use_colors: Color console output on a TTY
        console: Log to stderr
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(ForgeFormatter(use_colors=use_colors))
        root.addHandler(stream)

    if log_file is None and log_dir is not None:
        log_file = Path(log_dir) / f"forge_{datetime.now():%Y%m%d_%H%M%S}.log"
    if log_file is not None:
        log_file = Path(log_file)
        removed = _prune_logs(log_file.parent, retention_days)
        root.addHandler(_file_handler(log_file, rotation_mb, retention_days))
        if removed:
            logging.getLogger(__name__).debug(f"Pruned {removed} old log file(s)")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_settings(settings: LoggingConfig, verbose: bool = False) -> None:
    """Apply the ``logging`` section of the configuration file."""
    setup_logging(
        level="DEBUG" if verbose else settings.level,
        log_dir=Path(settings.log_dir) if settings.log_dir else DEFAULT_LOG_DIR,
        rotation_mb=settings.rotation_mb,
        retention_days=settings.retention_days,
    )


def execution_logger(logger: logging.Logger, execution_id: str) -> logging.LoggerAdapter:
    """Wrap a logger so every record carries the execution id.

    Args:
        logger: Module logger
        execution_id: Execution to tag records with

    Returns:
        LoggerAdapter setting ``execution_id`` on each record
    """
    return logging.LoggerAdapter(logger, {"execution_id": execution_id})
