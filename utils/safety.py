"""
Safety mechanisms for crashguard.
Timeouts that keep the harness itself from hanging a test suite.
"""

import time
import logging
import threading
from typing import Optional, Callable, Any


class TimeoutException(Exception):
    """Exception raised when operation exceeds timeout."""
    pass


class SafetyLimits:
    """Centralized safety configuration."""

    # Harness timeouts (milliseconds)
    OPEN_TIMEOUT_MS = 15000       # A corrupted directory may hang the open path
    SAFETY_TIMEOUT_MS = 30000     # No worker survives longer than this
    KILL_DELAY_MS = 500           # Default AfterDelay kill point

    # Coordinator loop
    POLL_INTERVAL = 0.05          # seconds between exit checks
    EXIT_DRAIN_GRACE = 1.0        # seconds to wait for IPC EOF after exit
    REAP_TIMEOUT = 5              # seconds to wait for a killed worker

    # Scenario limits
    MAX_RAPID_CYCLES = 500
    MAX_INSTANCES = 16

    @staticmethod
    def safety_timeout_for(kill_after_ms: Optional[int], base_ms: int = SAFETY_TIMEOUT_MS) -> int:
        """
        Calculate the safety timeout for a worker.

        The safety timeout must always exceed the scheduled kill point,
        otherwise an AfterDelay kill could never fire.

        Args:
            kill_after_ms: Scheduled kill delay, if any
            base_ms: Configured safety timeout

        Returns:
            Safety timeout in milliseconds
        """
        if kill_after_ms is None or kill_after_ms <= 0:
            return base_ms
        return max(base_ms, kill_after_ms * 2)


def run_with_timeout(func: Callable[[], Any], timeout: float, operation: str = "Operation",
                     on_abandon: Optional[Callable[[Any], None]] = None) -> Any:
    """
    Race a blocking call against a timeout.

    The call runs in a daemon thread. If it does not finish in time a
    TimeoutException is raised; the thread keeps running, and if it later
    produces a value, ``on_abandon`` receives that value so the caller can
    release it.

    Args:
        func: Zero-argument callable to run
        timeout: Timeout in seconds
        operation: Description for logging
        on_abandon: Cleanup for a value produced after the timeout

    Returns:
        The value returned by func

    Raises:
        TimeoutException: If func did not finish within timeout
        Exception: Whatever func raised
    """
    state = {'value': None, 'error': None, 'abandoned': False}
    guard = threading.Lock()
    done = threading.Event()

    def runner():
        try:
            value = func()
        except BaseException as e:  # re-raised in the caller's thread
            with guard:
                state['error'] = e
            done.set()
            return

        with guard:
            abandoned = state['abandoned']
            state['value'] = value
        done.set()

        if abandoned and on_abandon is not None:
            logging.debug(f"[SAFETY] {operation} finished after timeout - releasing result")
            try:
                on_abandon(value)
            except Exception as e:
                logging.warning(f"[SAFETY] Cleanup of abandoned {operation} failed: {e}")

    start = time.monotonic()
    worker = threading.Thread(target=runner, name=f"timeout-{operation}", daemon=True)
    worker.start()

    if not done.wait(timeout):
        with guard:
            finished = done.is_set()
            if not finished:
                state['abandoned'] = True
        if not finished:
            elapsed = time.monotonic() - start
            logging.error(f"[SAFETY] {operation} exceeded timeout of {timeout:.1f}s ({elapsed:.1f}s elapsed)")
            raise TimeoutException(f"{operation} timed out after {timeout:.1f} seconds")

    if state['error'] is not None:
        raise state['error']
    return state['value']


class OperationTimer:
    """Track total operation time with hard limit."""

    def __init__(self, max_time: float, operation: str = "Operation"):
        """
        Initialize operation timer.

        Args:
            max_time: Maximum time in seconds
            operation: Operation name
        """
        self.max_time = max_time
        self.operation = operation
        self.start_time = time.monotonic()

    def check(self) -> bool:
        """
        Check if operation has exceeded time limit.

        Returns:
            True if time remaining, False if exceeded
        """
        elapsed = time.monotonic() - self.start_time

        if elapsed > self.max_time:
            logging.error(f"[SAFETY] {self.operation} exceeded total time limit "
                          f"({elapsed:.1f}s / {self.max_time}s) - STOPPING")
            return False

        return True

    def elapsed(self) -> float:
        """Get elapsed time in seconds."""
        return time.monotonic() - self.start_time
