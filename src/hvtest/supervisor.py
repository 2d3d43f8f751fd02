"""Process supervisor for build and test commands.

Runs an external command under a deadline in one of two modes:

- Exit-code mode (no markers): combined output is appended to the target log
  and the outcome is classified by exit code. Deadline expiry kills the whole
  process tree and is reported as TIMEOUT, distinct from a non-zero exit.

- Marker-detection mode (markers given): a reader thread streams output lines
  into the log and a queue while the supervising thread races three arms:
  a success/failure marker appears, the deadline fires, or the process exits.
  Emulated guests never exit on their own, so a success marker ends the run.

Whatever the outcome, the process tree is gone when run() returns.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Iterable, Mapping, Optional, Sequence

from hvtest.subprocess_utils import kill_process_tree, safe_popen

logger = logging.getLogger(__name__)

# Seconds to wait for the reader thread to drain after the process is gone.
READER_JOIN_TIMEOUT = 5.0

# Reason of runs refused or killed after an interrupt.
INTERRUPTED_REASON = "interrupted"

# Console lines that mean a guest or board booted far enough to count as passing.
DEFAULT_SUCCESS_MARKERS = (
    "Welcome to",
    "All tests passed!",
    "Hello World!",
    "root@firefly:~#",
    "root@phytium-Ubuntu:~#",
    "Set hostname to",
    "starry:~#",
    "Last login:",
)


class OutcomeKind(Enum):
    """Classification of a supervised run."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Outcome:
    """Result of a supervised run.

    Attributes:
        kind: Success, failure or timeout
        exit_code: Process exit code, when the process exited by itself
        marker: The marker that decided the run, if any
        reason: Human-readable description
        pid: PID of the spawned process
        elapsed: Wall-clock duration in seconds
    """

    kind: OutcomeKind
    exit_code: Optional[int] = None
    marker: Optional[str] = None
    reason: str = ""
    pid: Optional[int] = None
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.kind is OutcomeKind.TIMEOUT


class ProcessRegistry:
    """Thread-safe set of live supervised processes.

    The CLI's interrupt handling calls kill_all() so that an aborted
    orchestrator leaves no emulator or build process behind. kill_all() also
    closes the registry: supervisors sharing it refuse to start new processes
    afterwards, so worker threads still finishing a target cannot spawn the
    next phase.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: dict[int, subprocess.Popen] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def add(self, proc: subprocess.Popen) -> bool:
        """Track a process; returns False (not tracked) once the registry is closed."""
        with self._lock:
            if self._closed:
                return False
            self._procs[proc.pid] = proc
            return True

    def discard(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.pop(proc.pid, None)

    def live_pids(self) -> list[int]:
        with self._lock:
            return list(self._procs)

    def kill_all(self) -> int:
        """Close the registry and kill every registered process tree.

        Returns:
            Number of process trees killed
        """
        with self._lock:
            self._closed = True
            procs = list(self._procs.values())
            self._procs.clear()
        for proc in procs:
            logger.info(f"Killing process tree of {proc.pid}")
            kill_process_tree(proc)
        return len(procs)


class ProcessSupervisor:
    """Runs commands under a deadline with optional live marker detection."""

    def __init__(self, registry: Optional[ProcessRegistry] = None):
        """Initialize the supervisor.

        Args:
            registry: Registry tracking live processes (a private one by default)
        """
        self.registry = registry if registry is not None else ProcessRegistry()

    def run(
        self,
        command: str,
        cwd: Path,
        timeout: float,
        log_path: Path,
        success_markers: Optional[Sequence[str]] = None,
        failure_markers: Optional[Sequence[str]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Outcome:
        """Run a command and classify its outcome.

        Args:
            command: Shell command string
            cwd: Working directory
            timeout: Deadline in seconds
            log_path: Log file receiving the combined output (appended)
            success_markers: Literal substrings that mean success; enables marker mode
            failure_markers: Literal substrings that mean failure (marker mode only)
            env: Extra environment variables layered over os.environ

        Returns:
            Outcome of the run
        """
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        if self.registry.closed:
            logger.debug(f"Not starting after interrupt: {command}")
            return _interrupted()

        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Running in {cwd}: {command} (timeout={timeout:.0f}s, markers={bool(success_markers)})")

        with open(log_path, "ab") as log_file:
            log_file.write(f"$ {command}\n".encode())
            log_file.flush()
            if success_markers:
                return self._run_with_markers(command, cwd, timeout, log_file, success_markers, failure_markers or (), full_env)
            return self._run_exit_code(command, cwd, timeout, log_file, full_env)

    def _run_exit_code(
        self,
        command: str,
        cwd: Path,
        timeout: float,
        log_file: IO[bytes],
        env: Optional[dict[str, str]],
    ) -> Outcome:
        start = time.monotonic()
        proc = self._spawn(command, cwd=str(cwd), env=env, stdout=log_file, stderr=subprocess.STDOUT)
        if proc is None:
            return _interrupted()
        try:
            try:
                exit_code = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Command exceeded {timeout:.0f}s deadline, killing process tree {proc.pid}")
                return Outcome(
                    OutcomeKind.TIMEOUT,
                    reason=f"deadline exceeded after {timeout:.0f}s",
                    pid=proc.pid,
                    elapsed=time.monotonic() - start,
                )
        finally:
            # Also reaps grandchildren the command left running in its group.
            kill_process_tree(proc)
            self.registry.discard(proc)

        elapsed = time.monotonic() - start
        if exit_code == 0:
            return Outcome(OutcomeKind.SUCCESS, exit_code=0, pid=proc.pid, elapsed=elapsed)
        return Outcome(
            OutcomeKind.FAILURE,
            exit_code=exit_code,
            reason=f"exit code {exit_code}",
            pid=proc.pid,
            elapsed=elapsed,
        )

    def _run_with_markers(
        self,
        command: str,
        cwd: Path,
        timeout: float,
        log_file: IO[bytes],
        success_markers: Sequence[str],
        failure_markers: Sequence[str],
        env: Optional[dict[str, str]],
    ) -> Outcome:
        start = time.monotonic()
        deadline = start + timeout
        proc = self._spawn(command, cwd=str(cwd), env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        if proc is None:
            return _interrupted()

        lines: queue.Queue[Optional[str]] = queue.Queue()
        reader = threading.Thread(
            target=_pump_lines,
            args=(proc.stdout, log_file, lines),
            name=f"hvtest-reader-{proc.pid}",
            daemon=True,
        )
        reader.start()

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return Outcome(
                        OutcomeKind.TIMEOUT,
                        reason=f"no success marker observed within {timeout:.0f}s",
                        pid=proc.pid,
                        elapsed=time.monotonic() - start,
                    )
                try:
                    line = lines.get(timeout=remaining)
                except queue.Empty:
                    continue

                if line is None:
                    # Output closed: classify by exit code, still under the deadline.
                    try:
                        exit_code = proc.wait(timeout=max(0.0, deadline - time.monotonic()))
                    except subprocess.TimeoutExpired:
                        return Outcome(
                            OutcomeKind.TIMEOUT,
                            reason=f"no success marker observed within {timeout:.0f}s (output closed)",
                            pid=proc.pid,
                            elapsed=time.monotonic() - start,
                        )
                    elapsed = time.monotonic() - start
                    if exit_code == 0:
                        return Outcome(OutcomeKind.SUCCESS, exit_code=0, reason="exited without marker", pid=proc.pid, elapsed=elapsed)
                    return Outcome(
                        OutcomeKind.FAILURE,
                        exit_code=exit_code,
                        reason=f"exit code {exit_code} before any success marker",
                        pid=proc.pid,
                        elapsed=elapsed,
                    )

                marker = first_match(line, failure_markers)
                if marker is not None:
                    return Outcome(
                        OutcomeKind.FAILURE,
                        marker=marker,
                        reason=f"failure marker observed: {marker!r}",
                        pid=proc.pid,
                        elapsed=time.monotonic() - start,
                    )
                marker = first_match(line, success_markers)
                if marker is not None:
                    return Outcome(
                        OutcomeKind.SUCCESS,
                        marker=marker,
                        reason=f"success marker observed: {marker!r}",
                        pid=proc.pid,
                        elapsed=time.monotonic() - start,
                    )
        finally:
            kill_process_tree(proc)
            self.registry.discard(proc)
            reader.join(timeout=READER_JOIN_TIMEOUT)
            if proc.stdout is not None:
                proc.stdout.close()

    def _spawn(self, command: str, **kwargs) -> Optional[subprocess.Popen]:
        """Start and register a process; None if the registry closed meanwhile."""
        proc = safe_popen(command, **kwargs)
        if not self.registry.add(proc):
            logger.debug(f"Registry closed while starting {proc.pid}, killing it")
            kill_process_tree(proc)
            return None
        return proc


def _interrupted() -> Outcome:
    return Outcome(OutcomeKind.FAILURE, reason=INTERRUPTED_REASON)


def first_match(line: str, markers: Iterable[str]) -> Optional[str]:
    """Return the first marker contained in a line, in table order."""
    for marker in markers:
        if marker in line:
            return marker
    return None


def _pump_lines(stream: Optional[IO[bytes]], log_file: IO[bytes], lines: "queue.Queue[Optional[str]]") -> None:
    """Copy process output to the log and the line queue; None marks EOF."""
    try:
        if stream is None:
            return
        for raw in stream:
            try:
                log_file.write(raw)
                log_file.flush()
            except ValueError:
                # Log already closed by the supervising thread.
                pass
            lines.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
    except (OSError, ValueError) as e:
        logger.debug(f"Output reader stopped: {e}")
    finally:
        lines.put(None)
