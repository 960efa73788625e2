"""Logging setup for mcpwire processes."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler

from mcpwire.shared.settings import Settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def get_logger(name: str) -> logging.Logger:
    """Get a logger for an mcpwire module.

    Args:
        name: the name of the logger, normally ``__name__``

    Returns:
        a configured logger instance
    """
    return logging.getLogger(name)


def configure_logging(level: LogLevel | None = None) -> None:
    """Send log records to stderr through rich.

    stdout stays free for the stdio transport. Without an explicit level the
    ``MCPWIRE_LOG_LEVEL`` setting is used.

    Args:
        level: the log level to use
    """
    if level is None:
        level = Settings().log_level

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
