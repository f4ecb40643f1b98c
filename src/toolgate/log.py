"""
Logging configuration for Toolgate.

Every module gets its own logger via logging.getLogger(__name__); they all
hang off the "toolgate" logger, which this module configures. Output goes to
stderr through rich so it doesn't mix with command output on stdout.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "toolgate"

_logger = logging.getLogger(LOGGER_NAME)
_logger.addHandler(logging.NullHandler())


def setup_logging(level: str | int = "WARNING") -> logging.Logger:
    """
    Install a rich handler on the toolgate logger.

    Calling it again replaces the handler and updates the level.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or number

    Returns:
        The configured "toolgate" logger
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            msg = f"Unknown log level: {level}"
            raise ValueError(msg)
        level = resolved

    for handler in list(_logger.handlers):
        _logger.removeHandler(handler)
        handler.close()

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    _logger.addHandler(handler)
    _logger.setLevel(level)
    return _logger
