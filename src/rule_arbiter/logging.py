"""Logging infrastructure for rule-arbiter with per-user logs.

Once ``setup_logging()`` has run, log files are written with automatic rotation:
- rule-arbiter-error.log: Errors from all users and modules (ERROR+ only)
- rule-arbiter-user-{user}.log: Per-user engine activity

Before setup, module and user loggers simply propagate to whatever handlers the
host application configured, so importing the library never touches the disk.

Usage:
    from rule_arbiter.logging import setup_logging, get_user_logger

    # Initialize once at startup
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    logger = get_user_logger("user-42")
    logger.info("Prepared 12 rules")
    logger.error("Rule store unavailable")  # Also lands in the error log
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / ".local" / "state" / "rule-arbiter" / "logs"

# Default rotation settings
DEFAULT_MAX_BYTES = 5 * 1024 * 1024  # 5MB
DEFAULT_BACKUP_COUNT = 3

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Module-level state
_loggers: dict[str, logging.Logger] = {}
_error_logger: logging.Logger | None = None
_error_handler: RotatingFileHandler | None = None
_log_dir: Path = DEFAULT_LOG_DIR
_max_bytes: int = DEFAULT_MAX_BYTES
_backup_count: int = DEFAULT_BACKUP_COUNT
_initialized: bool = False


class ErrorPropagatingHandler(logging.Handler):
    """Handler that propagates ERROR+ messages to the error logger."""

    def __init__(self, user_id: str) -> None:
        super().__init__(level=logging.ERROR)
        self.user_id = user_id

    def emit(self, record: logging.LogRecord) -> None:
        """Forward error records to the error logger with user context."""
        error_logger = get_error_logger()
        prefixed_record = logging.LogRecord(
            name=record.name,
            level=record.levelno,
            pathname=record.pathname,
            lineno=record.lineno,
            msg=f"[{self.user_id}] {record.getMessage()}",
            args=(),  # Already formatted via getMessage()
            exc_info=record.exc_info,
        )
        error_logger.handle(prefixed_record)


def _rotating_handler(path: Path, level: int = logging.NOTSET) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_max_bytes, backupCount=_backup_count)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _shared_error_handler() -> RotatingFileHandler:
    """The one rotating handler for rule-arbiter-error.log, shared by every logger."""
    global _error_handler

    error_file = _log_dir / "rule-arbiter-error.log"
    if _error_handler is not None and _error_handler.baseFilename != os.path.abspath(error_file):
        _detach_error_handler()
    if _error_handler is None:
        _error_handler = _rotating_handler(error_file, logging.ERROR)
    return _error_handler


def _detach_error_handler() -> None:
    global _error_handler

    if _error_handler is None:
        return
    for name in ("rule_arbiter", "rule_arbiter.errors"):
        logging.getLogger(name).removeHandler(_error_handler)
    _error_handler.close()
    _error_handler = None


def setup_logging(
    log_dir: Path | None = None,
    log_level: str = "INFO",
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> None:
    """Initialize the logging system.

    Args:
        log_dir: Directory for log files (default: ~/.local/state/rule-arbiter/logs)
        log_level: Minimum log level (default: INFO)
        max_bytes: Max size per log file before rotation (default: 5MB)
        backup_count: Number of backup files to keep (default: 3)
    """
    global _log_dir, _max_bytes, _backup_count, _initialized

    _log_dir = log_dir or DEFAULT_LOG_DIR
    _max_bytes = max_bytes or DEFAULT_MAX_BYTES
    _backup_count = backup_count if backup_count is not None else DEFAULT_BACKUP_COUNT

    _log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger("rule_arbiter")
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    _initialized = True

    # Module loggers (rule_arbiter.rules.*) report errors to the shared log too
    handler = _shared_error_handler()
    if handler not in root_logger.handlers:
        root_logger.addHandler(handler)
    if _error_logger is not None and handler not in _error_logger.handlers:
        _error_logger.addHandler(handler)


def is_initialized() -> bool:
    """Whether setup_logging() has been called."""
    return _initialized


def get_error_logger() -> logging.Logger:
    """Get the shared error logger (ERROR+ level, all users).

    Returns:
        Logger that writes to rule-arbiter-error.log
    """
    global _error_logger

    if _error_logger is not None:
        return _error_logger

    logger = logging.getLogger("rule_arbiter.errors")
    logger.setLevel(logging.ERROR)
    # Don't propagate to avoid duplicate messages
    logger.propagate = False

    if _initialized:
        handler = _shared_error_handler()
        if handler not in logger.handlers:
            logger.addHandler(handler)

    _error_logger = logger
    return logger


def get_user_logger(user_id: str) -> logging.Logger:
    """Get or create a logger for a specific user's rule set.

    Args:
        user_id: Owner of the rules being processed.

    Returns:
        Logger that writes to rule-arbiter-user-{user}.log once logging is set up
    """
    if user_id in _loggers:
        return _loggers[user_id]

    # Sanitize user id for filename (replace non-alphanumeric with hyphen)
    safe_name = "".join(c if c.isalnum() else "-" for c in user_id)

    logger = logging.getLogger(f"rule_arbiter.user.{safe_name}")

    if not _initialized:
        # No files yet; let records flow to the host's handlers
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if not logger.handlers:
        logger.addHandler(_rotating_handler(_log_dir / f"rule-arbiter-user-{safe_name}.log"))
        logger.addHandler(ErrorPropagatingHandler(user_id))

    _loggers[user_id] = logger
    return logger


def reset_logging() -> None:
    """Reset logging state (primarily for testing)."""
    global _loggers, _error_logger, _initialized

    for logger in _loggers.values():
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        logger.propagate = True

    _detach_error_handler()
    if _error_logger:
        for handler in _error_logger.handlers[:]:
            handler.close()
            _error_logger.removeHandler(handler)

    _loggers = {}
    _error_logger = None
    _initialized = False
