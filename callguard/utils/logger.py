"""
Logging configuration.

Library modules only create ``logging.getLogger(__name__)`` loggers; entry
points (the CLI, workers) call ``configure_logging`` once at startup.
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%H:%M:%S"

NOISY_LOGGERS = ["httpcore", "httpx", "openai", "urllib3"]


def _resolve_log_level(value: Optional[str]) -> int:
    """Resolve log level from a level name or numeric string."""
    if value is None:
        return logging.INFO

    stripped = value.strip().upper()
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    if stripped in level_map:
        return level_map[stripped]

    try:
        return int(value.strip())
    except ValueError:
        return logging.INFO


def configure_logging(
    level: Optional[int] = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    silence_noisy_libs: bool = True,
) -> None:
    """Send log records to stderr with the standard format.

    Args:
        level: Log level (default: from LOG_LEVEL env var or INFO)
        log_format: Format string for log messages
        date_format: Format string for timestamps
        silence_noisy_libs: If True, set HTTP client libraries to WARNING
    """
    if level is None:
        level = _resolve_log_level(os.getenv("LOG_LEVEL"))

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    if silence_noisy_libs:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
