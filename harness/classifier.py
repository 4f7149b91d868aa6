"""
Corruption classifier.

Maps a scenario result onto the failure taxonomy. Every applicable label
is returned, because distinct failure modes point at distinct broken
guarantees.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Tuple

from harness.ipc import EXIT_OPEN_FAILED
from harness.verification import CheckCategory


class CorruptionLabel(Enum):
    NONE = 'none'
    OPEN_FAILURE = 'open_failure'
    INTEGRITY_FAILURE = 'integrity_failure'
    DATA_INCONSISTENCY = 'data_inconsistency'
    WRITE_FAILURE = 'write_failure'


CONSISTENCY_CATEGORIES = (CheckCategory.RECONCILIATION, CheckCategory.DUPLICATES, CheckCategory.SCAN,
                          CheckCategory.SCHEMA)


@dataclass(frozen=True)
class CorruptionVerdict:
    labels: FrozenSet[CorruptionLabel]
    reasons: Tuple[str, ...] = ()
    open_timed_out: bool = False

    @property
    def corrupted(self) -> bool:
        return CorruptionLabel.NONE not in self.labels

    def to_dict(self) -> dict:
        return {
            'labels': sorted(label.value for label in self.labels),
            'corrupted': self.corrupted,
            'open_timed_out': self.open_timed_out,
            'reasons': list(self.reasons),
        }


def classify(result) -> CorruptionVerdict:
    """
    Classify a ScenarioResult.

    OPEN_FAILURE: an open failed or timed out, or a worker died from a
        signal nobody sent it, or reported that its own open failed.
    INTEGRITY_FAILURE: an open succeeded but the integrity report has issues.
    DATA_INCONSISTENCY: integrity passed but a reconciliation, duplicate,
        scan or schema check failed.
    WRITE_FAILURE: the write probe failed.
    NONE: none of the above.
    """
    labels = set()
    reasons = []
    timed_out = False

    for worker in result.workers:
        if worker.died_abnormally:
            labels.add(CorruptionLabel.OPEN_FAILURE)
            reasons.append(f"worker {worker.name} terminated by {worker.exit_signal} on its own")
        elif worker.exit_code == EXIT_OPEN_FAILED:
            labels.add(CorruptionLabel.OPEN_FAILURE)
            reasons.append(f"worker {worker.name} could not open the directory")

    for outcome in result.verifications:
        tag = outcome.label
        if not outcome.open_result.success:
            labels.add(CorruptionLabel.OPEN_FAILURE)
            if outcome.open_result.timed_out:
                timed_out = True
                reasons.append(f"{tag}: open timed out")
            else:
                reasons.append(f"{tag}: open failed ({outcome.open_result.error_text})")
            continue

        integrity_ok = outcome.report is None or outcome.report.intact
        if not integrity_ok:
            labels.add(CorruptionLabel.INTEGRITY_FAILURE)
            reasons.extend(f"{tag}: {issue}" for issue in outcome.report.issues)

        for check in outcome.checks:
            if check.passed:
                continue
            if check.category is CheckCategory.WRITE_PROBE:
                labels.add(CorruptionLabel.WRITE_FAILURE)
            elif integrity_ok and check.category in CONSISTENCY_CATEGORIES:
                labels.add(CorruptionLabel.DATA_INCONSISTENCY)
            else:
                # Already explained by the integrity failure
                continue
            reasons.extend(f"{tag}: {check.name}: {issue}" for issue in check.issues)

    if not labels:
        labels.add(CorruptionLabel.NONE)

    return CorruptionVerdict(labels=frozenset(labels), reasons=tuple(reasons), open_timed_out=timed_out)
