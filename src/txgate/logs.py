"""
Logging setup for txgate.

Library modules only call logging.getLogger(__name__). Handlers are
installed by the CLI through setup_logging(), never on import.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "txgate"


def setup_logging(level: str | int = "WARNING", console: Console | None = None) -> logging.Logger:
    """
    Route txgate log records to stderr through rich.

    Calling this again replaces the handler rather than stacking a second
    one.

    Args:
        level: Level name ("DEBUG", "info", ...) or number
        console: Console to write to; defaults to stderr

    Returns:
        The configured "txgate" logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    logger.debug("Logging configured at level %s", logging.getLevelName(level))
    return logger
