"""Logging configuration for ctxhook with log rotation.

Hooks run as short-lived processes whose stdout is read by the host assistant,
so log output goes to a rotating file by default and only reaches the console
(stderr) when asked for.

Log Rotation Policy:
- Max file size: 10 MB per log file
- Backup count: 5 (keeps ctxhook.log, ctxhook.log.1, ..., ctxhook.log.5)
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_DIR = "~/.ctxhook/logs"
DEFAULT_LOG_FILE = "ctxhook.log"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
DEFAULT_BACKUP_COUNT = 5
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def get_default_log_dir() -> str:
    """Get the default log directory, respecting the CTXHOOK_HOME env var."""
    home = os.environ.get("CTXHOOK_HOME")
    if home:
        return str(Path(home) / "logs")
    return DEFAULT_LOG_DIR


def configure_logging(
    log_dir: str | Path | None = None,
    log_file: str = DEFAULT_LOG_FILE,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    log_level: int | str = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    console_output: bool = False,
) -> logging.Logger:
    """Configure ctxhook logging with automatic log rotation.

    Args:
        log_dir: Directory for log files (default: $CTXHOOK_HOME/logs or ~/.ctxhook/logs)
        log_file: Log file name (default: ctxhook.log)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of backup files to keep (default: 5)
        log_level: Logging level, as an int or a level name
        log_format: Log message format
        console_output: Whether to also log to stderr (never stdout)

    Returns:
        The root ctxhook logger instance.
    """
    global _configured

    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), DEFAULT_LOG_LEVEL)

    log_path = Path(os.path.expanduser(str(log_dir or get_default_log_dir())))
    log_path.mkdir(parents=True, exist_ok=True)
    full_log_path = log_path / log_file

    root_logger = logging.getLogger("ctxhook")
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates on reconfiguration
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format)

    file_handler = RotatingFileHandler(
        full_log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.propagate = False

    _configured = True

    root_logger.debug(
        f"Logging configured: file={full_log_path}, "
        f"max_size={max_bytes // (1024*1024)}MB, "
        f"backups={backup_count}"
    )

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a ctxhook component.

    Args:
        name: Component name (e.g., 'registry', 'pipeline', 'dispatcher')

    Returns:
        A logger instance under the ctxhook namespace.

    Example:
        logger = get_logger("registry")
        logger.info("Rescan complete")
        # Logs as: ctxhook.registry - INFO - Rescan complete
    """
    if not _configured:
        configure_logging(console_output=False)

    return logging.getLogger(f"ctxhook.{name}")


def set_log_level(level: int | str) -> None:
    """Change the log level for all ctxhook loggers.

    Args:
        level: Logging level (e.g., logging.DEBUG, "DEBUG", logging.WARNING)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    root_logger = logging.getLogger("ctxhook")
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
