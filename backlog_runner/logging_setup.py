"""
Logging configuration for the backlog runner.

Console output goes to stderr so it does not interleave with the rich
progress output on stdout. An optional rotating log file captures
everything at DEBUG.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "%(module)s.%(funcName)s:%(lineno)d | %(message)s"
)
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

LOG_FILE_NAME = "backlog-runner.log"


def configure_logging(
    level: str | int = logging.INFO,
    log_dir: str | Path | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """
    Configure console and optional rotating file logging.

    Safe to call more than once: previously installed handlers are replaced.

    Args:
        level: Console logging level (name or number)
        log_dir: Directory for the rotating log file, None for console only
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated files to keep
    """
    console_level = logging.getLevelName(level) if isinstance(level, str) else level

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # handlers filter
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True, parents=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path / LOG_FILE_NAME,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        root_logger.addHandler(file_handler)

    # Third-party chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("backlog_runner").debug(
        f"Logging initialized (console: {logging.getLevelName(console_level)}, "
        f"files: {log_dir or 'none'})"
    )
