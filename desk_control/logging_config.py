"""
Logging setup for the desk entry points.

Usage:
    from desk_control.logging_config import setup_logging

    setup_logging("INFO")
    setup_logging(debug=True)
"""

import logging
import warnings

from rich.logging import RichHandler

DEFAULT_FORMAT = "%(name)s: %(message)s"


def setup_logging(level: str | int = logging.INFO, *, debug: bool = False) -> None:
    """Configure the root logger once per entry point."""
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format=DEFAULT_FORMAT,
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )

    if not debug:
        # Suppress bleak's internal asyncio warnings (race condition in CoreBluetooth backend)
        warnings.filterwarnings("ignore", message=".*invalid state.*")
        logging.getLogger("bleak").setLevel(logging.ERROR)
