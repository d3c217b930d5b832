"""
Rich-based logging for tunnel diagnostics
"""
import sys
import logging
from typing import Optional
from pathlib import Path

from rich.logging import RichHandler
from rich.console import Console

from .constants import LOG_FILE_FORMAT, LOG_LEVELS, NOISY_LOGGERS


# Command output goes to stdout; logs and errors to stderr
_stdout_console = Console(file=sys.stdout)
_stderr_console = Console(file=sys.stderr)


def parse_level(level: str) -> int:
    """
    Map a level name to its logging constant.

    Raises:
        ValueError: If the name is not one of LOG_LEVELS
    """
    name = level.strip().upper()
    if name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {', '.join(LOG_LEVELS)}")
    return getattr(logging, name)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    rich_tracebacks: bool = True,
) -> None:
    """
    Route tunnel logs to stderr and, optionally, a file.

    Forwarding threads log per connection, so the file format carries the
    thread name. SSH and AWS client libraries never log below WARNING,
    even at DEBUG.

    Args:
        level: One of LOG_LEVELS, case-insensitive
        log_file: Optional log file path
        rich_tracebacks: Enable rich tracebacks

    Raises:
        ValueError: If level is unknown
    """
    log_level = parse_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    rich_handler = RichHandler(
        console=_stderr_console,
        show_time=True,
        show_path=False,
        rich_tracebacks=rich_tracebacks,
        markup=False,
        show_level=True,
    )
    rich_handler.setLevel(log_level)
    root_logger.addHandler(rich_handler)

    if log_file:
        root_logger.addHandler(_file_handler(log_file, log_level))

    quiet = max(log_level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def _file_handler(log_file: Path, log_level: int) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding='utf-8')
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
    return handler


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, usually called with __name__"""
    return logging.getLogger(name)


def get_stdout_console() -> Console:
    """Get stdout console for user-facing output"""
    return _stdout_console


def get_stderr_console() -> Console:
    """Get stderr console for errors and logs"""
    return _stderr_console
