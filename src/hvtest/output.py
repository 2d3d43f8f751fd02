"""
Centralized console output for hvtest.

All user-facing output is prefixed with the elapsed time since program launch
in MM:SS.cc format (minutes:seconds.centiseconds) followed by a level label.
Several targets may run in parallel, so writes are serialized with a lock.

Example output:
    00:00.12 [INFO] Loaded configuration: /work/component/.github/config.json
    00:00.15 [INFO] [1/3] Target: axvisor-qemu-aarch64-arceos
    00:01.23 [WARN]   Port 5555 is busy, terminating 1 process(es)
    00:41.67 [SUCCESS]   Success marker observed: 'Welcome to'

Usage:
    from hvtest.output import log, log_success, log_error, init_timer

    init_timer()
    log("Loading configuration...")
    log_success("All targets passed!")
"""

import threading
import time
from typing import Optional, TextIO

from rich.console import Console
from rich.markup import escape

# Shared by every worker thread
_start_time: Optional[float] = None
_console: Console = Console(highlight=False, soft_wrap=True)
_verbose: bool = False
_lock = threading.Lock()

_LABEL_STYLES = {
    "INFO": "blue",
    "SUCCESS": "green",
    "WARN": "yellow",
    "ERROR": "red",
    "DEBUG": "cyan",
}


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Initialize the program timer.

    Call this at program startup to set the reference time for all timestamps.
    If not called explicitly, it will be called automatically on first log.

    Args:
        output_stream: Optional output stream (defaults to the terminal)
    """
    global _start_time, _console
    _start_time = time.time()
    if output_stream is not None:
        _console = Console(file=output_stream, highlight=False, soft_wrap=True, no_color=True)


def set_verbose(verbose: bool) -> None:
    """Enable or disable debug messages (-v)."""
    global _verbose
    _verbose = verbose


def get_console() -> Console:
    """Return the console used for all output (for tables and rules)."""
    return _console


def get_elapsed() -> float:
    """Seconds since init_timer() (which runs on first use if needed)."""
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore


def format_timestamp() -> str:
    """
    Format the current elapsed time as MM:SS.cc.

    Returns:
        Formatted timestamp string
    """
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(label: str, message: str) -> None:
    style = _LABEL_STYLES.get(label, "white")
    line = f"{format_timestamp()} [{style}]\\[{label}][/{style}] {escape(message)}"
    with _lock:
        _console.print(line)


def log(message: str) -> None:
    """Log an informational message."""
    _print("INFO", message)


def log_phase(phase: int, total: int, message: str) -> None:
    """
    Log a progress message.

    Format: [N/M] message. The counter is omitted when only one item runs.

    Args:
        phase: Current item number
        total: Total number of items
        message: Description
    """
    if total > 1:
        _print("INFO", f"[{phase}/{total}] {message}")
    else:
        _print("INFO", message)


def log_debug(message: str) -> None:
    """
    Log a debug message, printed only in verbose mode.

    Args:
        message: Debug message
    """
    if not _verbose:
        return
    _print("DEBUG", message)


def log_error(message: str) -> None:
    _print("ERROR", message)


def log_warning(message: str) -> None:
    _print("WARN", message)


def log_success(message: str) -> None:
    _print("SUCCESS", message)


def log_banner(title: str, version: str) -> None:
    """
    Log the program banner.

    Args:
        title: Program title
        version: Version string
    """
    with _lock:
        _console.rule(f"{escape(title)} v{escape(version)}", style="cyan")
