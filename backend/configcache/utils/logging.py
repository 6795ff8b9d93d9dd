"""
Logging setup for command line entry points.

Library modules only create loggers; handlers are installed here, once,
by whatever process embeds the service.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", debug: bool = False, console: Optional[Console] = None) -> None:
    """
    Route all log records through a RichHandler on the root logger.

    Args:
        level: Standard level name
        debug: Force DEBUG level and show source locations
        console: Console to write to; stderr by default
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=debug,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else level.upper())

    # valkey and sqlalchemy are noisy at DEBUG
    if not debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
