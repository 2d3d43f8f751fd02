"""Subprocess utilities for process-group-safe execution.

This module wraps subprocess.Popen so every command hvtest starts:
- runs through `sh -c` with stdin redirected from /dev/null
- gets its own session/process group (POSIX) so the whole tree can be killed
- never flashes a console window on Windows

It also provides kill_process_tree(), which terminates a process and all of
its descendants bottom-up and reaps the root so no zombie is left behind.
Once the root has been reaped only its process group is signalled.
"""

import logging
import os
import signal
import subprocess
import sys
from typing import Any

import psutil

logger = logging.getLogger(__name__)

# Seconds to wait for graceful termination before SIGKILL.
TERMINATE_GRACE = 3.0


def get_subprocess_creation_flags() -> int:
    """Get platform-specific subprocess creation flags.

    Returns:
        - Windows: CREATE_NO_WINDOW | CREATE_NEW_PROCESS_GROUP
        - Other platforms: 0 (no special flags)
    """
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP
    return 0


def shell_argv(command: str) -> list[str]:
    """Return the argv that runs a command string through the platform shell."""
    if sys.platform == "win32":
        return ["cmd", "/c", command]
    return ["sh", "-c", command]


def safe_popen(command: str, **kwargs: Any) -> subprocess.Popen:
    """Start a shell command in its own process group.

    Automatically applies:
    - start_new_session=True on POSIX (own process group for tree kills)
    - CREATE_NO_WINDOW on Windows (prevents console window)
    - stdin=DEVNULL (emulators must not steal the terminal)

    Args:
        command: Shell command string
        **kwargs: Additional arguments passed to subprocess.Popen

    Returns:
        Popen process handle

    Note:
        - If 'creationflags' is explicitly provided in kwargs,
          it will be OR'd with platform defaults to preserve custom flags.
        - If 'stdin' is explicitly provided in kwargs, it will be used as-is.
    """
    default_flags = get_subprocess_creation_flags()

    if "creationflags" in kwargs:
        kwargs["creationflags"] = kwargs["creationflags"] | default_flags
    elif default_flags:
        kwargs["creationflags"] = default_flags

    if sys.platform != "win32":
        kwargs.setdefault("start_new_session", True)

    if "stdin" not in kwargs:
        kwargs["stdin"] = subprocess.DEVNULL

    return subprocess.Popen(shell_argv(command), **kwargs)


def kill_process_tree(proc: subprocess.Popen, grace: float = TERMINATE_GRACE) -> int:
    """Kill a process and all of its descendants, then reap the root.

    Children are terminated before parents; stragglers are force killed after
    the grace period. On POSIX the process group is also signalled so that
    descendants already re-parented away from the root are not missed.

    Args:
        proc: Process handle returned by safe_popen()
        grace: Seconds to wait for graceful termination

    Returns:
        Number of processes signalled
    """
    processes: list[psutil.Process] = []
    if proc.poll() is not None:
        # Root already reaped: its PID may belong to another process by now.
        logger.debug(f"Process {proc.pid} already exited, signalling its group only")
    else:
        try:
            root = psutil.Process(proc.pid)
            processes = root.children(recursive=True)
            processes.reverse()
            processes.append(root)
        except psutil.NoSuchProcess:
            logger.debug(f"Process {proc.pid} already gone")

    killed_count = 0
    for p in processes:
        try:
            p.terminate()
            killed_count += 1
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to terminate process {p.pid}: {e}")

    _gone, alive = psutil.wait_procs(processes, timeout=grace)
    for p in alive:
        try:
            p.kill()
            logger.warning(f"Force killed stubborn process {p.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to force kill process {p.pid}: {e}")

    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} did not exit after kill")

    logger.debug(f"Process tree of {proc.pid} terminated ({killed_count} processes)")
    return killed_count
