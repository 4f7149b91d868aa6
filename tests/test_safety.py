"""
Safety mechanism tests for crashguard.
Tests timeout racing, abandoned-result cleanup and time limits.
"""

import sys
import time
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.safety import SafetyLimits, TimeoutException, OperationTimer, run_with_timeout


class TestRunWithTimeout:

    def test_returns_value(self):
        assert run_with_timeout(lambda: 42, timeout=2, operation="quick") == 42

    def test_reraises_in_caller(self):
        def boom():
            raise ValueError("bad page")

        with pytest.raises(ValueError, match="bad page"):
            run_with_timeout(boom, timeout=2)

    def test_times_out(self):
        release = threading.Event()
        try:
            start = time.monotonic()
            with pytest.raises(TimeoutException, match="open x timed out"):
                run_with_timeout(lambda: release.wait(10), timeout=0.2, operation="open x")
            assert time.monotonic() - start < 5
        finally:
            release.set()

    def test_late_result_is_handed_to_cleanup(self):
        release = threading.Event()
        cleaned = []
        done = threading.Event()

        def slow():
            release.wait(10)
            return 'late handle'

        def cleanup(value):
            cleaned.append(value)
            done.set()

        with pytest.raises(TimeoutException):
            run_with_timeout(slow, timeout=0.1, on_abandon=cleanup)
        release.set()

        assert done.wait(5)
        assert cleaned == ['late handle']

    def test_cleanup_not_called_when_in_time(self):
        cleaned = []
        run_with_timeout(lambda: 'v', timeout=2, on_abandon=cleaned.append)
        assert cleaned == []

    def test_failing_cleanup_is_logged(self, caplog):
        release = threading.Event()
        done = threading.Event()

        def cleanup(value):
            done.set()
            raise OSError("already closed")

        with pytest.raises(TimeoutException):
            run_with_timeout(lambda: release.wait(10), timeout=0.1, operation="open y", on_abandon=cleanup)
        release.set()
        assert done.wait(5)
        # Give the logging call after the raise a moment
        time.sleep(0.1)
        assert "Cleanup of abandoned open y failed" in caplog.text


class TestSafetyLimits:

    def test_safety_timeout_without_scheduled_kill(self):
        assert SafetyLimits.safety_timeout_for(None, 30000) == 30000
        assert SafetyLimits.safety_timeout_for(0, 30000) == 30000

    def test_safety_timeout_exceeds_kill_point(self):
        assert SafetyLimits.safety_timeout_for(100, 30000) == 30000
        assert SafetyLimits.safety_timeout_for(20000, 30000) == 40000

    def test_defaults_are_positive(self):
        assert SafetyLimits.OPEN_TIMEOUT_MS > 0
        assert SafetyLimits.SAFETY_TIMEOUT_MS > SafetyLimits.OPEN_TIMEOUT_MS
        assert SafetyLimits.MAX_RAPID_CYCLES > 0
        assert SafetyLimits.MAX_INSTANCES >= 2


class TestOperationTimer:

    def test_within_limit(self):
        timer = OperationTimer(5, "Quick test")
        assert timer.check()

    def test_exceeded(self):
        timer = OperationTimer(1, "Slow test")
        timer.start_time -= 2
        assert not timer.check()
        assert timer.elapsed() >= 2

    def test_tracks_elapsed_time(self):
        timer = OperationTimer(10, "Elapsed test")
        time.sleep(0.2)
        assert 0.15 < timer.elapsed() < 2
