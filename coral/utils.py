"""
Utility functions for coral.

Includes logging setup, console helpers, and best-effort file removal.
"""

import errno
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

# Held for every line coral writes to the terminal: status lines, log
# records and multiplexed container output.
output_lock = threading.RLock()


class _OutputLocked:
    def emit(self, record: logging.LogRecord) -> None:
        with output_lock:
            super().emit(record)


class ConsoleLogHandler(_OutputLocked, RichHandler):
    pass


class PlainLogHandler(_OutputLocked, logging.StreamHandler):
    pass


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_format: str = "pretty",
) -> logging.Logger:
    """
    Set up logging for coral commands.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to a log file (JSON lines)
        log_format: "pretty" (rich console) or "plain"

    Returns:
        Configured "coral" logger
    """
    logger = logging.getLogger("coral")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers = []  # Clear existing handlers
    logger.propagate = False

    if log_format == "pretty":
        console_handler = ConsoleLogHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_time=False,
            show_path=False,
        )
    else:
        console_handler = PlainLogHandler()
        console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "instance"):
            log_data["instance"] = record.instance
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """Print a banner to console."""
    with output_lock:
        console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    with output_lock:
        console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    with output_lock:
        console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    with output_lock:
        console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    with output_lock:
        console.print(f"[bold cyan]ℹ[/bold cyan] {message}")


# =============================================================================
# Best-effort removal
# =============================================================================

def remove_file(path: Path, logger: Optional[logging.Logger] = None) -> bool:
    """
    Remove a file; a missing file is not an error.

    Returns:
        True if the file was removed by this call
    """
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        if logger:
            logger.warning(f"Failed to remove file {path}: {e}")
        return False


def remove_dir_if_empty(directory: Path, logger: Optional[logging.Logger] = None) -> bool:
    """Remove a directory only if it exists and is empty."""
    try:
        directory.rmdir()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        # Non-empty directories are expected and silent
        if logger and e.errno not in (errno.ENOTEMPTY, errno.EEXIST, errno.ENOTDIR):
            logger.warning(f"Failed to remove directory {directory}: {e}")
        return False


def prune_empty_parents(path: Path, stop_at: Path, logger: Optional[logging.Logger] = None) -> None:
    """
    Remove empty directories from path's parent upward.

    Stops at the first non-empty directory or at stop_at (never removed).
    """
    stop_at = stop_at.resolve()
    current = path.parent.resolve()
    while current != stop_at and stop_at in current.parents:
        # Already gone (concurrent cleanup): keep walking up
        if current.exists() and not remove_dir_if_empty(current, logger):
            return
        current = current.parent


def remove_file_and_prune(path: Path, stop_at: Path, logger: Optional[logging.Logger] = None) -> bool:
    """Remove a file, then prune any directories it leaves empty up to stop_at."""
    removed = remove_file(path, logger)
    prune_empty_parents(path, stop_at, logger)
    return removed
