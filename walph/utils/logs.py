from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "walph"
TRANSCRIPT_LOGGER = "walph.transcript"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def session_log_path(log_dir: Path, tool_name: str, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return log_dir / f"{tool_name}_{stamp}.log"


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def configure_logging(console: Console, log_file: Path | None = None, verbose: bool = False) -> None:
    """Route package records to the console via rich and, optionally, to a session log.

    The session log captures everything at DEBUG; the raw assistant transcript
    goes only to the file.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    transcript_logger = logging.getLogger(TRANSCRIPT_LOGGER)
    _reset_handlers(package_logger)
    _reset_handlers(transcript_logger)

    package_logger.setLevel(logging.DEBUG)
    package_logger.propagate = False
    transcript_logger.setLevel(logging.DEBUG)
    transcript_logger.propagate = False

    console_handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        package_logger.addHandler(file_handler)

        transcript_handler = logging.FileHandler(log_file, encoding="utf-8")
        transcript_handler.setFormatter(logging.Formatter("%(message)s"))
        transcript_logger.addHandler(transcript_handler)


def log_transcript(iteration: int, output: str) -> None:
    transcript = logging.getLogger(TRANSCRIPT_LOGGER)
    transcript.debug("----- iteration %d output -----\n%s\n----- end iteration %d -----", iteration, output, iteration)
