"""Logging and progress display helpers."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

logger = logging.getLogger(__name__)

# Shared between the log handler and the progress bar so that they don't overwrite each other
_console = Console()


def setup_logging(level: int = logging.INFO) -> None:
    """Configure the root logger to log through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_console, rich_tracebacks=True)],
    )
    # Quiet down noisy third party loggers
    for name in ("numexpr", "h5py", "silx"):
        logging.getLogger(name).setLevel(logging.WARNING)


def progress_bar() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=_console,
    )
