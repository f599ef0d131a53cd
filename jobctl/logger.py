"""Logging setup shared by every jobctl module."""

import logging
import os
from typing import Optional

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# LogRecord attributes that are not user supplied extras
_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    ]
)


class StructuredFormatter(logging.Formatter):
    """Human-readable, pipe separated log lines with trailing key=value extras."""

    def format(self, record):
        timestamp = self.formatTime(record, self.datefmt or "%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)
        logger_name = record.name.split(".")[-1][:20].ljust(20)
        message = record.getMessage()

        log_line = f"{timestamp} | {level} | {logger_name} | {message}"

        extras = []
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or value is None:
                continue
            if isinstance(value, dict):
                extras.append(f"{key}={str(value)[:100]}")
            else:
                extras.append(f"{key}={value}")

        if extras:
            log_line += f" | {' '.join(extras)}"

        if record.exc_info:
            log_line += f"\n{self.formatException(record.exc_info)}"

        return log_line


# Set by set_log_level; takes precedence over JOBCTL_LOG_LEVEL
_level_override: Optional[str] = None


def _resolve_level(level: Optional[str]) -> int:
    level_str = (level or _level_override or os.getenv("JOBCTL_LOG_LEVEL", "INFO")).upper()
    return LOG_LEVELS.get(level_str, logging.INFO)


def configure_logger(name: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger with consistent formatting and level.

    The level is, in order of precedence: the level argument, the level
    last passed to set_log_level, the JOBCTL_LOG_LEVEL environment
    variable, INFO.

    Args:
        name: Logger name. If None, the module logger is returned.
        level: Level name such as "DEBUG".

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name if name else __name__)

    log_level = _resolve_level(level)
    logger.setLevel(log_level)

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)
    else:
        for handler in logger.handlers:
            handler.setLevel(log_level)

    return logger


def set_log_level(level: str) -> None:
    """Apply a level to every jobctl logger, including ones configured later."""
    global _level_override
    _level_override = level.upper()

    for name, existing in list(logging.Logger.manager.loggerDict.items()):
        if name.split(".")[0] == "jobctl" and isinstance(existing, logging.Logger):
            configure_logger(name)
