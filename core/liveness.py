"""
Process liveness probe.

Answers "is the process with this PID currently running on this host"
without affecting the target. PID reuse after a crash makes a stale lock
look alive; that false positive is accepted.
"""

import logging

import psutil


logger = logging.getLogger(__name__)


def is_alive(pid) -> bool:
    """
    Check whether a process with the given PID is running.

    Args:
        pid: Process ID (anything else, or a non-positive value, is dead)

    Returns:
        True if a live (non-zombie) process exists, False otherwise
    """
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return False

    try:
        if not psutil.pid_exists(pid):
            return False
    except (OverflowError, ValueError):
        return False

    # Exited but not yet reaped: the owner cannot hold anything anymore
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True
