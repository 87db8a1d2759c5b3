"""Console output and logging configuration.

Provides:
    - console: Rich console for command output on stdout
    - stderr_console: Rich console for diagnostics on stderr
    - setup_logging(): Configure logging with a Rich handler
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()
stderr_console = Console(stderr=True)

LOGGER_NAME = "point_guard"


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure the package logger with a Rich handler on stderr.

    Warnings are always shown; ``verbose`` adds debug output such as every
    git and tmux invocation.
    """
    level = logging.DEBUG if verbose else logging.WARNING

    handler = RichHandler(
        console=stderr_console,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers = [h for h in logger.handlers if not isinstance(h, RichHandler)]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(handler)
    return logger
