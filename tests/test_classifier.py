"""Tests for the corruption classifier."""

from types import SimpleNamespace

import pytest

from harness.classifier import CorruptionLabel, classify
from harness.ipc import EXIT_LOCK_HELD, EXIT_OPEN_FAILED
from harness.verification import CheckCategory, CheckResult, IntegrityReport, OpenResult


def worker(name='w', exit_code=None, exit_signal='SIGKILL', killed=True):
    died_abnormally = exit_signal is not None and not killed
    return SimpleNamespace(name=name, exit_code=exit_code, exit_signal=exit_signal,
                           killed=killed, died_abnormally=died_abnormally)


def outcome(open_result=None, issues=(), checks=(), label='after'):
    open_result = open_result or OpenResult(success=True, handle=object())
    report = IntegrityReport(issues=tuple(issues)) if open_result.success else None
    return SimpleNamespace(label=label, open_result=open_result, report=report, checks=tuple(checks))


def result(workers=(), verifications=()):
    return SimpleNamespace(workers=tuple(workers), verifications=tuple(verifications))


def check(category, issues=()):
    return CheckResult(name=f'check:{category.value}', category=category, issues=tuple(issues))


def labels_of(verdict):
    return set(verdict.labels)


def test_clean_run_is_none():
    verdict = classify(result([worker()], [outcome(checks=[check(CheckCategory.WRITE_PROBE)])]))
    assert labels_of(verdict) == {CorruptionLabel.NONE}
    assert not verdict.corrupted
    assert verdict.reasons == ()


def test_open_failure():
    failed = OpenResult(success=False, error=RuntimeError("file is not a database"))
    verdict = classify(result([worker()], [outcome(failed)]))
    assert labels_of(verdict) == {CorruptionLabel.OPEN_FAILURE}
    assert verdict.corrupted
    assert not verdict.open_timed_out
    assert "RuntimeError: file is not a database" in verdict.reasons[0]


def test_open_timeout_is_flagged():
    timed_out = OpenResult(success=False, error=TimeoutError("slow"), timed_out=True)
    verdict = classify(result([], [outcome(timed_out)]))
    assert labels_of(verdict) == {CorruptionLabel.OPEN_FAILURE}
    assert verdict.open_timed_out
    assert verdict.reasons == ("after: open timed out",)


def test_integrity_failure_subsumes_consistency_checks():
    verdict = classify(result([], [outcome(
        issues=["quick_check: page 4 is never used"],
        checks=[check(CheckCategory.SCAN, ["items: count(*) = 5 but enumeration returned 3 rows"])]
    )]))
    assert labels_of(verdict) == {CorruptionLabel.INTEGRITY_FAILURE}
    assert len(verdict.reasons) == 1


@pytest.mark.parametrize("category", [CheckCategory.RECONCILIATION, CheckCategory.DUPLICATES,
                                      CheckCategory.SCAN])
def test_consistency_check_failure(category):
    verdict = classify(result([], [outcome(checks=[check(category, ["mismatch"])])]))
    assert labels_of(verdict) == {CorruptionLabel.DATA_INCONSISTENCY}
    assert verdict.reasons == (f"after: check:{category.value}: mismatch",)


def test_write_failure_stacks_with_integrity_failure():
    verdict = classify(result([], [outcome(
        issues=["Basic query failed: disk I/O error"],
        checks=[check(CheckCategory.WRITE_PROBE, ["Write probe failed: disk I/O error"])]
    )]))
    assert labels_of(verdict) == {CorruptionLabel.INTEGRITY_FAILURE, CorruptionLabel.WRITE_FAILURE}


def test_abnormal_worker_death_is_open_failure():
    verdict = classify(result([worker(exit_signal='SIGSEGV', killed=False)], [outcome()]))
    assert labels_of(verdict) == {CorruptionLabel.OPEN_FAILURE}
    assert "SIGSEGV" in verdict.reasons[0]


def test_worker_open_failed_exit_code():
    verdict = classify(result([worker(exit_code=EXIT_OPEN_FAILED, exit_signal=None, killed=False)]))
    assert labels_of(verdict) == {CorruptionLabel.OPEN_FAILURE}


def test_lock_refusal_is_not_corruption():
    loser = worker(exit_code=EXIT_LOCK_HELD, exit_signal=None, killed=False)
    verdict = classify(result([worker('a'), loser], [outcome()]))
    assert labels_of(verdict) == {CorruptionLabel.NONE}


def test_every_verification_is_considered():
    verdict = classify(result([], [
        outcome(label='cycle-0'),
        outcome(label='cycle-1', checks=[check(CheckCategory.DUPLICATES, ["dup"])]),
    ]))
    assert labels_of(verdict) == {CorruptionLabel.DATA_INCONSISTENCY}
    assert verdict.reasons[0].startswith("cycle-1:")


def test_to_dict_sorts_labels():
    verdict = classify(result([], [outcome(
        issues=["x"], checks=[check(CheckCategory.WRITE_PROBE, ["y"])])]))
    data = verdict.to_dict()
    assert data['labels'] == ['integrity_failure', 'write_failure']
    assert data['corrupted'] is True
