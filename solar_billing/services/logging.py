"""Logging setup for the billing API server and CLI.

Two outputs:

- the server log (stdout + file), level from the LOG_LEVEL env var
  (default INFO; WARNING for production, DEBUG for provider request lines)
- the operations trail: every provider operation claim, outcome and
  reconciliation goes to the ``solar_billing.operations`` logger, which also
  writes to its own file at INFO regardless of LOG_LEVEL. Operators read it
  next to ``solar-billing unreconciled`` when an outcome is unknown.
"""

import logging
import os
import sys
from pathlib import Path

OPERATIONS_LOGGER = "solar_billing.operations"

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# [YYYY-MM-DD HH:MM:SS] logger - LEVEL - message
SERVER_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
OPERATIONS_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level() -> int:
    """Get logging level from LOG_LEVEL environment variable.

    Returns:
        Logging level constant (default: INFO)
    """
    level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    return LOG_LEVEL_MAP.get(level_str, logging.INFO)


def get_operations_logger() -> logging.Logger:
    """Logger for the provider operation trail."""
    return logging.getLogger(OPERATIONS_LOGGER)


def _file_handler(path: str, level: int, fmt: str) -> logging.FileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DATE_FORMAT))
    return handler


def setup_server_logging(
    log_file: str = "logs/server.log",
    operations_log_file: str | None = "logs/operations.log",
) -> None:
    """
    Configure the root logger and the operations trail.

    Args:
        log_file: Server log path (default: logs/server.log)
        operations_log_file: Operations trail path; None disables the file

    Behavior:
        - Root logger writes to stdout and log_file at LOG_LEVEL
        - Repeated calls replace handlers instead of stacking them
        - httpx request lines are hidden unless LOG_LEVEL is DEBUG
        - Operation records also propagate to the server log when LOG_LEVEL allows
    """
    log_level = get_log_level()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.setFormatter(logging.Formatter(fmt=SERVER_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(_file_handler(log_file, log_level, SERVER_FORMAT))

    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)

    operations_logger = get_operations_logger()
    for handler in operations_logger.handlers[:]:
        operations_logger.removeHandler(handler)
        handler.close()
    operations_logger.setLevel(logging.INFO)
    if operations_log_file:
        operations_logger.addHandler(
            _file_handler(operations_log_file, logging.INFO, OPERATIONS_FORMAT)
        )


__all__ = [
    "OPERATIONS_LOGGER",
    "get_log_level",
    "get_operations_logger",
    "setup_server_logging",
]
