"""Contended port ownership.

Emulator sessions of different targets forward the same host port (the QEMU
monitor / ostool control port). Before a target starts, whatever process still
holds that port is killed so that at most one session owns it at a time.
"""

import logging
import os
import time
from typing import List

import psutil

from hvtest.output import log_warning

logger = logging.getLogger(__name__)

DEFAULT_CONTENDED_PORT = 5555
CONTENDED_PORT_ENV = "HVTEST_CONTENDED_PORT"

# Seconds to let the kernel release the socket after killing its owner.
RELEASE_DELAY = 1.0


def contended_port() -> int:
    """Return the contended port, honouring the HVTEST_CONTENDED_PORT override."""
    raw = os.environ.get(CONTENDED_PORT_ENV)
    if not raw:
        return DEFAULT_CONTENDED_PORT
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {CONTENDED_PORT_ENV}={raw!r}")
        return DEFAULT_CONTENDED_PORT


def port_owners(port: int) -> List[int]:
    """Return the PIDs of processes bound to or connected on a local port.

    Args:
        port: Local TCP/UDP port number

    Returns:
        Sorted list of PIDs, excluding the current process
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied as e:
        log_warning(f"Cannot inspect owners of port {port}: {e}")
        return []

    own_pid = os.getpid()
    pids = set()
    for conn in connections:
        if conn.laddr and conn.laddr.port == port and conn.pid and conn.pid != own_pid:
            pids.add(conn.pid)
    return sorted(pids)


def preempt_port(port: int) -> int:
    """Kill every process holding a port so the next target can own it.

    Args:
        port: Contended local port

    Returns:
        Number of processes killed
    """
    killed = 0
    for pid in port_owners(port):
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            proc.kill()
            killed += 1
            log_warning(f"  Killed process {pid} ({name}) holding port {port}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            log_warning(f"  Cannot kill process {pid} holding port {port}: {e}")

    if killed:
        time.sleep(RELEASE_DELAY)
    return killed
