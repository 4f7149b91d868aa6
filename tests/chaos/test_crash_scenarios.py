"""
Crash Scenario Chaos Tests

Runs built-in scenarios against real worker processes and injects faults
into the verifying side.

Test Categories:
1. Real kills (single kills, phased reruns, concurrent opens, file tampering)
2. Verification faults (hanging open, unlistable directory, full disk)
"""

import os
import time
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from core.dir_lock import DirectoryLockManager
from core.engine import EngineError, open_data_dir
from core.structured_events import EventEmitter, EventType
from harness.classifier import CorruptionLabel
from harness.ipc import EXIT_LOCK_HELD
from harness.scenarios import ScenarioOrchestrator, get_scenario, refused_by
from harness.verification import VerificationPipeline
from tests.chaos.fault_injectors import (
    DiskFullInjector,
    HangingOpenInjector,
    PermissionDeniedInjector,
)


@pytest.fixture
def emitter():
    return EventEmitter(enable_console=False)


@pytest.fixture
def orchestrator(config, emitter):
    return ScenarioOrchestrator(config, emitter, show_progress=False)


def wait_for_unlock(data_dir: Path, timeout: float = 5.0) -> bool:
    marker = DirectoryLockManager().marker_path(data_dir)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not marker.exists():
            return True
        time.sleep(0.05)
    return not marker.exists()


# ============================================================================
# Category 1: Real kills
# ============================================================================

class TestRealKills:

    def test_uncommitted_transaction_is_rolled_back(self, orchestrator, data_dir):
        result = orchestrator.run(get_scenario('kill-during-transaction'), data_dir=data_dir)

        worker = result.workers[0]
        assert worker.killed
        assert worker.kill_reason == 'message'
        assert worker.messages_before_kill[-1] == 'in-transaction'

        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons
        with open_data_dir(data_dir) as db:
            assert db.query("SELECT COUNT(*) FROM items")[0][0] == 10

    def test_double_open_has_exactly_one_winner(self, orchestrator, data_dir, emitter):
        result = orchestrator.run(get_scenario('double-open'), data_dir=data_dir)

        winners = [w for w in result.workers if 'locked' in w.transcript]
        losers = [w for w in result.workers if refused_by(w) is not None]
        assert len(winners) == 1
        assert len(losers) == 1

        assert refused_by(losers[0]) == winners[0].pid
        assert losers[0].exit_code == EXIT_LOCK_HELD
        assert not result.verdict.corrupted
        assert emitter.query_events(EventType.LOCK_REFUSED)

    def test_truncated_primary_storage_is_detected(self, orchestrator):
        result = orchestrator.run(get_scenario('truncate-primary-storage'))

        assert result.tampering[0].action == 'truncate'
        assert result.tampering[0].size_after == 0
        assert result.verdict.corrupted
        assert CorruptionLabel.NONE not in result.verdict.labels

        outcome = result.verifications[0]
        if outcome.open_result.success:
            assert not outcome.report.intact
            assert CorruptionLabel.INTEGRITY_FAILURE in result.verdict.labels
        else:
            assert CorruptionLabel.OPEN_FAILURE in result.verdict.labels

    def test_killed_recovery_open_still_recovers(self, orchestrator, data_dir):
        result = orchestrator.run(get_scenario('kill-during-recovery'), data_dir=data_dir)

        load, reopen = result.workers
        assert load.killed
        assert load.messages_before_kill[-1] == 'inserting:250'
        assert reopen.name == 'kill-during-recovery:reopen'
        assert reopen.transcript[0] == 'opening'

        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons
        with open_data_dir(data_dir) as db:
            assert 251 <= db.query("SELECT COUNT(*) FROM recovery_test")[0][0] <= 500

    @pytest.mark.parametrize('name', [
        'kill-during-insert',
        'kill-during-vacuum',
        'kill-during-alter-table',
        'massive-wal-crash',
    ])
    def test_single_kill_leaves_a_consistent_directory(self, orchestrator, name):
        result = orchestrator.run(get_scenario(name))

        assert result.workers[0].killed
        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons
        assert all(check.passed for check in result.verifications[0].checks)

    def test_migration_on_a_crashed_directory(self, orchestrator):
        result = orchestrator.run(get_scenario('schema-change-crash'))

        setup, migrate = result.workers
        assert setup.killed
        assert setup.messages_before_kill[-1] == 'ready'
        assert migrate.transcript[0] == 'migrating'
        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons

    def test_three_instances_have_exactly_one_winner(self, orchestrator):
        result = orchestrator.run(get_scenario('overlapping-three-instances'))

        winners = [w for w in result.workers if 'locked' in w.transcript]
        losers = [w for w in result.workers if refused_by(w) is not None]
        assert len(winners) == 1
        assert len(losers) == 2
        assert {refused_by(w) for w in losers} == {winners[0].pid}
        assert not result.verdict.corrupted

    def test_staggered_instances_meet_a_held_lock(self, orchestrator):
        result = orchestrator.run(get_scenario('overlapping-staggered'))

        winners = [w for w in result.workers if 'locked' in w.transcript]
        losers = [w for w in result.workers if refused_by(w) is not None]
        assert len(winners) == 1
        assert len(losers) == 2
        assert winners[0].killed
        assert 'written' in winners[0].messages_before_kill
        assert all(w.exit_code == EXIT_LOCK_HELD for w in losers)
        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons

    def test_concurrent_writers_one_killed_one_refused(self, orchestrator):
        result = orchestrator.run(get_scenario('concurrent-writers'))

        winners = [w for w in result.workers if 'locked' in w.transcript]
        losers = [w for w in result.workers if refused_by(w) is not None]
        assert len(winners) == 1
        assert len(losers) == 1
        assert winners[0].killed
        assert winners[0].messages_before_kill[-1] == 'writing:250'
        assert result.verdict.labels == frozenset({CorruptionLabel.NONE}), result.verdict.reasons

    def test_scratch_directories_are_removed(self, orchestrator, config):
        result = orchestrator.run(get_scenario('kill-during-transaction'))
        assert not result.data_dir.exists()
        assert not Path(f"{result.data_dir}{config.lock_suffix}").exists()


# ============================================================================
# Category 2: Verification faults
# ============================================================================

class TestVerificationFaults:

    def test_hanging_open_times_out_and_releases_lock(self, config, data_dir):
        with open_data_dir(data_dir):
            pass
        pipeline = VerificationPipeline(config)

        with HangingOpenInjector() as hang:
            result = pipeline.try_open(data_dir, timeout_ms=300)
            assert result.timed_out
            hang.release()
            assert hang.opened.wait(5)

        # The abandoned handle is closed as soon as it appears
        assert wait_for_unlock(data_dir)
        with open_data_dir(data_dir):
            pass

    def test_unlistable_directory_fails_open_without_quarantine(self, config, data_dir):
        with open_data_dir(data_dir):
            pass
        pipeline = VerificationPipeline(config)

        with PermissionDeniedInjector(data_dir):
            result = pipeline.try_open(data_dir)

        assert not result.success
        assert isinstance(result.error, EngineError)
        assert "Cannot read data directory" in str(result.error)
        assert not DirectoryLockManager().marker_path(data_dir).exists()
        assert not list(data_dir.parent.glob(f"{data_dir.name}{config.quarantine_suffix}-*"))

    def test_full_disk_fails_write_probe_only(self, config, data_dir):
        pipeline = VerificationPipeline(config)
        with open_data_dir(data_dir) as db:
            db.query("CREATE TABLE t (v INTEGER)")
            with DiskFullInjector() as full:
                report = pipeline.verify_integrity(db)
                probe = pipeline.write_probe(db)

        assert report.intact
        assert not probe.passed
        assert "database or disk is full" in probe.issues[0]
        assert full.rejected

    def test_lock_is_released_after_every_fault(self, config, data_dir):
        with open_data_dir(data_dir):
            pass
        pipeline = VerificationPipeline(config)

        with PermissionDeniedInjector(data_dir):
            pipeline.try_open(data_dir)
        result = pipeline.try_open(data_dir)
        try:
            assert result.success
            assert result.handle.lock.record.owner_pid == os.getpid()
        finally:
            result.handle.close()
