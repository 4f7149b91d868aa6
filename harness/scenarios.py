"""
Scenario orchestration.

A scenario runs workers through the crash harness, verifies the resulting
directory and classifies the outcome. Four kinds:

  SINGLE_KILL           one worker, one kill, one verification; optional
                        phases rerun the program on the crashed directory
                        (and may be killed too) before verification
  RAPID_CYCLES          the same directory killed again and again, with the
                        kill point varied per cycle
  CONCURRENT_INSTANCES  several workers opening one directory at once
  FILE_TAMPER           a golden crashed directory is copied and damaged
                        on disk before verification

Built-in scenarios live in SCENARIOS.
"""

import os
import glob
import time
import uuid
import shutil
import sqlite3
import logging
import signal
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.config import Config
from core.engine import EngineHandle
from core.partial_init import QuarantineRecord
from core.structured_events import EventEmitter, EventSeverity, EventType
from harness import tamper
from harness.classifier import CorruptionVerdict, classify
from harness.crash_harness import (AfterDelay, CrashInjectionHarness, KillStrategy, OnMessage,
                                   WorkerHandle, WorkerSpec)
from harness.ipc import CYCLE_ENV, EXIT_OPEN_FAILED, INSTANCE_ENV, PHASE_ENV
from harness.verification import CheckResult, IntegrityReport, OpenResult, VerificationPipeline
from utils.error_messages import log_error
from utils.progress import ProgressTracker
from utils.safety import OperationTimer, SafetyLimits


logger = logging.getLogger(__name__)


class ScenarioKind(Enum):
    SINGLE_KILL = 'single_kill'
    RAPID_CYCLES = 'rapid_cycles'
    CONCURRENT_INSTANCES = 'concurrent_instances'
    FILE_TAMPER = 'file_tamper'


@dataclass(frozen=True)
class ScenarioContext:
    """What scenario checks may look at besides the open handle."""
    scenario: str
    data_dir: Path
    workers: Tuple[WorkerHandle, ...]


CheckFn = Callable[[VerificationPipeline, EngineHandle, ScenarioContext], Sequence[CheckResult]]
TamperFn = Callable[[Path, Config], tamper.TamperRecord]


@dataclass(frozen=True)
class Phase:
    """
    A follow-up run of the scenario program on the directory the previous
    run left behind. The worker sees the name in CRASHGUARD_PHASE.
    """
    name: str
    kill_strategy: Optional[KillStrategy] = None


@dataclass(frozen=True)
class Scenario:
    """A named, repeatable crash scenario."""
    name: str
    kind: ScenarioKind
    program: str
    description: str = ''
    kill_strategy: Optional[KillStrategy] = None
    kill_signal: Optional[signal.Signals] = None
    env: Dict[str, str] = field(default_factory=dict)
    checks: Optional[CheckFn] = None
    write_probe: bool = True
    # SINGLE_KILL: runs after the first kill, before verification
    phases: Tuple[Phase, ...] = ()
    # RAPID_CYCLES
    cycles: int = 1
    cycle_strategy: Optional[Callable[[int], KillStrategy]] = None
    # CONCURRENT_INSTANCES
    instances: int = 1
    barrier: Optional[str] = None
    # FILE_TAMPER
    tamper: Optional[TamperFn] = None


@dataclass(frozen=True)
class VerificationOutcome:
    """One open attempt with its integrity report and scenario checks."""
    label: str
    open_result: OpenResult
    report: Optional[IntegrityReport] = None
    checks: Tuple[CheckResult, ...] = ()
    quarantine: Optional[QuarantineRecord] = None

    def to_dict(self) -> dict:
        return {
            'label': self.label,
            'opened': self.open_result.success,
            'open_timed_out': self.open_result.timed_out,
            'open_error': self.open_result.error_text,
            'integrity': self.report.to_dict() if self.report else None,
            'checks': [c.to_dict() for c in self.checks],
            'quarantined_to': str(self.quarantine.backup_path) if self.quarantine else None,
        }


@dataclass(frozen=True)
class ScenarioResult:
    scenario: str
    kind: ScenarioKind
    data_dir: Path
    workers: Tuple[WorkerHandle, ...]
    verifications: Tuple[VerificationOutcome, ...]
    verdict: Optional[CorruptionVerdict] = None
    cycles_run: int = 0
    tampering: Tuple[tamper.TamperRecord, ...] = ()

    def to_dict(self) -> dict:
        return {
            'scenario': self.scenario,
            'kind': self.kind.value,
            'data_dir': str(self.data_dir),
            'cycles_run': self.cycles_run,
            'workers': [w.to_dict() for w in self.workers],
            'verifications': [v.to_dict() for v in self.verifications],
            'tampering': [{'path': str(t.path), 'action': t.action, 'size_before': t.size_before,
                           'size_after': t.size_after, 'detail': t.detail} for t in self.tampering],
            'verdict': self.verdict.to_dict() if self.verdict else None,
        }


def refused_by(worker: WorkerHandle) -> Optional[int]:
    """PID a worker reported as the lock holder when its open was refused."""
    for message in worker.transcript:
        if isinstance(message, str) and message.startswith('lock-held:'):
            holder = message.split(':', 1)[1]
            return int(holder) if holder.isdigit() else -1
    return None


class ScenarioOrchestrator:
    """Runs scenarios end to end: workers, verification, classification."""

    def __init__(self, config: Optional[Config] = None, emitter: Optional[EventEmitter] = None,
                 harness: Optional[CrashInjectionHarness] = None,
                 pipeline: Optional[VerificationPipeline] = None, show_progress: bool = True):
        self.config = config or Config()
        self.emitter = emitter
        self.harness = harness or CrashInjectionHarness(self.config, emitter)
        self.pipeline = pipeline or VerificationPipeline(self.config, emitter)
        self.show_progress = show_progress

    def new_data_dir(self, name: str) -> Path:
        """Unique data directory path under the configured work root."""
        stamp = int(time.time() * 1000)
        return self.config.work_root / f"crashguard-{name}-{stamp}-{uuid.uuid4().hex[:6]}"

    def cleanup(self, data_dir: Path):
        """Remove a data directory, its lock marker and its quarantine backups."""
        data_dir = Path(os.path.abspath(data_dir))
        if data_dir.exists():
            shutil.rmtree(data_dir, ignore_errors=True)

        marker = Path(f"{data_dir}{self.config.lock_suffix}")
        if marker.exists():
            marker.unlink()

        for backup in glob.glob(f"{glob.escape(str(data_dir))}{self.config.quarantine_suffix}-*"):
            shutil.rmtree(backup, ignore_errors=True)

    def run(self, scenario: Scenario, data_dir: Optional[Path] = None) -> ScenarioResult:
        """
        Run a scenario.

        Args:
            scenario: Scenario to run
            data_dir: Directory to use; a fresh unique path when None. A
                caller-supplied directory is never cleaned up.

        Returns:
            ScenarioResult with its verdict

        Raises:
            WorkerSpawnError: If a worker cannot be started
        """
        retain = self.config.retain_data or data_dir is not None
        data_dir = Path(os.path.abspath(data_dir or self.new_data_dir(scenario.name)))
        scratch = [data_dir]

        logger.info(f"[SCENARIO] {scenario.name} ({scenario.kind.value}) on {data_dir}")
        self._emit(EventType.SCENARIO_STARTED, f"Scenario {scenario.name} started",
                   context={'scenario': scenario.name, 'data_dir': str(data_dir)})

        try:
            if scenario.kind is ScenarioKind.SINGLE_KILL:
                result = self._run_single(scenario, data_dir)
            elif scenario.kind is ScenarioKind.RAPID_CYCLES:
                result = self._run_cycles(scenario, data_dir)
            elif scenario.kind is ScenarioKind.CONCURRENT_INSTANCES:
                result = self._run_concurrent(scenario, data_dir)
            else:
                tampered = Path(f"{data_dir}-tampered")
                scratch.append(tampered)
                result = self._run_tamper(scenario, data_dir, tampered)
        except Exception as e:
            log_error(f"Scenario {scenario.name} aborted", f"{type(e).__name__}: {e}",
                      "No verdict was produced; fix the harness error and run the scenario again",
                      location=data_dir)
            self._emit(EventType.SCENARIO_FAILED, f"Scenario {scenario.name} aborted: {e}",
                       severity=EventSeverity.ERROR, context={'scenario': scenario.name})
            raise
        finally:
            if not retain:
                for path in scratch:
                    self.cleanup(path)

        result = replace(result, verdict=classify(result))
        labels = ', '.join(sorted(label.value for label in result.verdict.labels))
        logger.info(f"[SCENARIO] {scenario.name}: {labels}")
        self._emit(EventType.SCENARIO_COMPLETED, f"Scenario {scenario.name}: {labels}",
                   severity=EventSeverity.WARNING if result.verdict.corrupted else EventSeverity.INFO,
                   context={'scenario': scenario.name, 'verdict': result.verdict.to_dict()})
        return result

    def _spec(self, scenario: Scenario, data_dir: Path, name: str,
              strategy: Optional[KillStrategy], extra_env: Optional[Dict[str, str]] = None) -> WorkerSpec:
        env = dict(scenario.env)
        env.update(extra_env or {})
        return WorkerSpec(name=name, data_dir=data_dir, program=scenario.program, env=env,
                          kill_strategy=strategy, kill_signal=scenario.kill_signal)

    def _run_single(self, scenario: Scenario, data_dir: Path) -> ScenarioResult:
        workers = [self.harness.run(self._spec(scenario, data_dir, scenario.name, scenario.kill_strategy))]

        for phase in scenario.phases:
            spec = self._spec(scenario, data_dir, f"{scenario.name}:{phase.name}", phase.kill_strategy,
                              {PHASE_ENV: phase.name})
            worker = self.harness.run(spec)
            workers.append(worker)
            if worker.died_abnormally or worker.exit_code == EXIT_OPEN_FAILED:
                logger.warning(f"[SCENARIO] Phase {phase.name} of {scenario.name} could not open the "
                               f"directory - skipping later phases")
                break

        context = ScenarioContext(scenario.name, data_dir, tuple(workers))
        outcome = self.verify('after-kill', data_dir, scenario, context)
        return ScenarioResult(scenario.name, scenario.kind, data_dir, tuple(workers), (outcome,), cycles_run=1)

    def _run_cycles(self, scenario: Scenario, data_dir: Path) -> ScenarioResult:
        cycles = min(scenario.cycles, SafetyLimits.MAX_RAPID_CYCLES)
        workers: List[WorkerHandle] = []
        timer = OperationTimer(self.config.max_scenario_seconds, f"Scenario {scenario.name}")

        with ProgressTracker(enabled=self.show_progress) as progress:
            progress.start(cycles, desc=scenario.name)
            for cycle in range(cycles):
                if workers and not timer.check():
                    break
                strategy = scenario.cycle_strategy(cycle) if scenario.cycle_strategy else scenario.kill_strategy
                spec = self._spec(scenario, data_dir, f"{scenario.name}#{cycle}", strategy,
                                  {CYCLE_ENV: str(cycle)})
                worker = self.harness.run(spec)
                workers.append(worker)
                ended = f"signal {worker.exit_signal}" if worker.exit_signal else f"exit {worker.exit_code}"
                progress.update(1, status=f"cycle {cycle}: {ended}")

                if worker.died_abnormally or worker.exit_code == EXIT_OPEN_FAILED:
                    logger.warning(f"[SCENARIO] Cycle {cycle} of {scenario.name} could not open the "
                                   f"directory - stopping early")
                    break

        context = ScenarioContext(scenario.name, data_dir, tuple(workers))
        outcome = self.verify(f'after-cycle-{len(workers) - 1}', data_dir, scenario, context)
        return ScenarioResult(scenario.name, scenario.kind, data_dir, tuple(workers), (outcome,),
                              cycles_run=len(workers))

    def _run_concurrent(self, scenario: Scenario, data_dir: Path) -> ScenarioResult:
        instances = min(scenario.instances, SafetyLimits.MAX_INSTANCES)
        specs = [
            self._spec(scenario, data_dir, f"{scenario.name}[{chr(ord('A') + i)}]",
                       scenario.kill_strategy, {INSTANCE_ENV: chr(ord('A') + i)})
            for i in range(instances)
        ]
        workers = tuple(self.harness.run_all(specs, barrier=scenario.barrier))
        for worker in workers:
            holder = refused_by(worker)
            if holder is not None:
                self._emit(EventType.LOCK_REFUSED, f"{worker.name} refused: locked by PID {holder}",
                           context={'worker': worker.name, 'pid': worker.pid, 'holder_pid': holder})
        context = ScenarioContext(scenario.name, data_dir, workers)
        outcome = self.verify('after-instances', data_dir, scenario, context)
        return ScenarioResult(scenario.name, scenario.kind, data_dir, workers, (outcome,), cycles_run=1)

    def _run_tamper(self, scenario: Scenario, golden_dir: Path, tampered_dir: Path) -> ScenarioResult:
        worker = self.harness.run(self._spec(scenario, golden_dir, scenario.name, scenario.kill_strategy))

        tamper.copy_data_dir(golden_dir, tampered_dir)
        record = scenario.tamper(tampered_dir, self.config)

        context = ScenarioContext(scenario.name, tampered_dir, (worker,))
        outcome = self.verify(f'after-{record.action}', tampered_dir, scenario, context)
        return ScenarioResult(scenario.name, scenario.kind, tampered_dir, (worker,), (outcome,),
                              cycles_run=1, tampering=(record,))

    def verify(self, label: str, data_dir: Path, scenario: Scenario,
               context: ScenarioContext) -> VerificationOutcome:
        """Open, check integrity, run the scenario's checks, close."""
        open_result = self.pipeline.try_open(data_dir)
        if not open_result.success:
            return VerificationOutcome(label, open_result)

        handle = open_result.handle
        try:
            report = self.pipeline.verify_integrity(handle)
            checks = list(scenario.checks(self.pipeline, handle, context)) if scenario.checks else []
            if scenario.write_probe:
                checks.append(self.pipeline.write_probe(handle))
        finally:
            handle.close()

        if handle.quarantine is not None:
            self._emit(EventType.DIRECTORY_QUARANTINED, "Partial initialization moved aside",
                       severity=EventSeverity.WARNING,
                       context={'data_dir': str(data_dir), 'backup': str(handle.quarantine.backup_path)})
        return VerificationOutcome(label, open_result, report, tuple(checks), handle.quarantine)

    def _emit(self, event_type: EventType, message: str,
              severity: EventSeverity = EventSeverity.INFO, context: Optional[dict] = None):
        if self.emitter is not None:
            self.emitter.emit(event_type, message, severity=severity, context=context)


# Built-in scenario checks

def _transaction_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'items', 10),
        pipeline.expect_row_count(handle, 'items', 0, where="name NOT LIKE 'baseline-%'"),
        pipeline.expect_row_count(handle, 'items', 0,
                                  where="value != CAST(substr(name, 10) AS INTEGER) * 10"),
        pipeline.scan_reconcile(handle, 'items'),
    ]


def _batch_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'batch_test', 10, where="name LIKE 'baseline-%'"),
        pipeline.expect_row_count(handle, 'batch_test', (0, 5000), where="name LIKE 'batch-%'"),
        pipeline.reconcile_metadata(handle, 'batch_meta', required=True),
        pipeline.find_duplicate_keys(handle, 'batch_test', 'name'),
    ]


def _checkpoint_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    checks = [pipeline.reconcile_metadata(handle, 'ckpt_meta', where='cycle = 0', required=True)]
    for t in range(5):
        checks.append(pipeline.scan_reconcile(handle, f'ckpt_t{t}'))
        checks.append(pipeline.find_duplicate_keys(handle, f'ckpt_t{t}', 'tag'))
    return checks


def _index_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'indexed_data', 3000),
        pipeline.find_duplicate_keys(handle, 'indexed_data', 'value'),
        pipeline.scan_reconcile(handle, 'indexed_data'),
    ]


def _close_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'close_test', 500),
        pipeline.find_duplicate_keys(handle, 'close_test', 'value'),
        pipeline.scan_reconcile(handle, 'close_test'),
    ]


def _midwrite_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    if not pipeline.table_exists(handle, 'midwrite_test'):
        return []
    return [
        pipeline.find_duplicate_keys(handle, 'midwrite_test', 'uid'),
        pipeline.scan_reconcile(handle, 'midwrite_test'),
    ]


def _instance_of(worker: WorkerHandle) -> str:
    return worker.name.rsplit('[', 1)[-1].rstrip(']')


def _double_open_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    if not pipeline.table_exists(handle, 'double_open_test'):
        return []
    checks = [pipeline.scan_reconcile(handle, 'double_open_test')]
    for worker in context.workers:
        if refused_by(worker) is not None:
            expected = 0
        elif 'written' in worker.transcript:
            expected = 200
        else:
            continue
        checks.append(pipeline.expect_row_count(handle, 'double_open_test', expected,
                                                where='instance = ?', params=(_instance_of(worker),)))
    return checks


def _concurrent_writer_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    if not pipeline.table_exists(handle, 'concurrent_test'):
        return []
    instances = tuple(_instance_of(w) for w in context.workers)
    marks = ', '.join('?' for _ in instances)
    checks = [
        pipeline.find_duplicate_keys(handle, 'concurrent_test', 'uid'),
        pipeline.scan_reconcile(handle, 'concurrent_test'),
        pipeline.expect_row_count(handle, 'concurrent_test', 0,
                                  where=f'writer NOT IN ({marks})', params=instances),
        pipeline.expect_row_count(handle, 'concurrent_test', 0, where="uid != writer || ':' || seq"),
    ]
    for worker in context.workers:
        if refused_by(worker) is not None:
            checks.append(pipeline.expect_row_count(handle, 'concurrent_test', 0,
                                                    where='writer = ?', params=(_instance_of(worker),)))
        elif 'writing:250' in worker.messages_before_kill:
            # Rows 0..250 had committed before the trigger message went out
            checks.append(pipeline.expect_row_count(handle, 'concurrent_test', range(251, 501),
                                                    where='writer = ?', params=(_instance_of(worker),)))
    return checks


def _insert_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        # The first "inserting" follows the first committed row
        pipeline.expect_row_count(handle, 'crash_test', range(1, 501)),
        pipeline.find_duplicate_keys(handle, 'crash_test', 'value'),
        pipeline.scan_reconcile(handle, 'crash_test'),
    ]


def _vacuum_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'vacuum_test', 500),
        pipeline.expect_row_count(handle, 'vacuum_test', 1, where="id = 1 AND value = 'row-0'"),
        pipeline.expect_row_count(handle, 'vacuum_test', 0, where='id % 2 = 0'),
        pipeline.scan_reconcile(handle, 'vacuum_test'),
    ]


def _alter_table_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    try:
        columns = {row['name'] for row in handle.query("PRAGMA table_info(alter_test)")}
    except sqlite3.Error:
        columns = set()
    amount = 'amount' if 'amount' in columns else 'value'
    checks = [
        pipeline.expect_row_count(handle, 'alter_test', 100),
        pipeline.expect_columns(handle, 'alter_test', ['id', 'name'], any_of=[('value', 'amount')]),
        pipeline.scan_reconcile(handle, 'alter_test'),
    ]
    if 'score' in columns:
        # The backfill is one statement: every score is set or none is
        checks.append(pipeline.expect_row_count(handle, 'alter_test', (0, 100), where='score = 0'))
    if pipeline.table_exists(handle, 'alter_ref'):
        checks.append(pipeline.expect_row_count(handle, 'alter_ref', (0, 100)))
    checks.append(pipeline.table_write_probe(handle, 'alter_test', {'name': 'item-new', amount: 0}))
    return checks


def _schema_change_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    checks = [
        pipeline.expect_row_count(handle, 'users', 20),
        pipeline.expect_row_count(handle, 'posts', 100),
        pipeline.expect_row_count(handle, 'comments', 500),
        pipeline.expect_columns(handle, 'users', ['id', 'name', 'email']),
        pipeline.expect_columns(handle, 'posts', ['id', 'user_id', 'title', 'body']),
        pipeline.expect_columns(handle, 'comments', ['id', 'post_id', 'body']),
        pipeline.find_duplicate_keys(handle, 'users', 'email'),
    ]
    if pipeline.table_exists(handle, 'tags'):
        checks.append(pipeline.expect_row_count(handle, 'tags', (0, 100)))
    checks.append(pipeline.table_write_probe(handle, 'users',
                                             {'name': 'user-new', 'email': 'user-new@example.com'}))
    return checks


def _recovery_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    if not pipeline.table_exists(handle, 'recovery_test'):
        return [pipeline.expect_columns(handle, 'recovery_test', ['id', 'value'])]
    return [
        # Rows 0..250 had committed before "inserting:250" went out
        pipeline.expect_row_count(handle, 'recovery_test', range(251, 501)),
        pipeline.find_duplicate_keys(handle, 'recovery_test', 'value'),
        pipeline.scan_reconcile(handle, 'recovery_test'),
        pipeline.table_write_probe(handle, 'recovery_test', {'value': 'after-recovery'}),
    ]


def _massive_wal_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'docs', range(200, 401)),
        pipeline.expect_row_count(handle, 'docs', 200, where="id <= 200 AND body LIKE '%UPDATED-PASS-1%'"),
        pipeline.expect_row_count(handle, 'docs', 1, where="title = 'title-0' AND length(body) >= 10000"),
        pipeline.find_duplicate_keys(handle, 'docs', 'title'),
        pipeline.scan_reconcile(handle, 'docs'),
    ]


def _tamper_checks(pipeline: VerificationPipeline, handle: EngineHandle, context: ScenarioContext):
    return [
        pipeline.expect_row_count(handle, 'wal_test_main', 200),
        pipeline.scan_reconcile(handle, 'wal_test_main'),
    ]


def _first_of(*messages: str) -> Callable[[object], bool]:
    return lambda message: message in messages


def _init_cycle_strategy(cycle: int) -> KillStrategy:
    strategies = (
        AfterDelay(50),
        OnMessage('constructor-done'),
        OnMessage(_first_of('init:marker', 'ready')),
        OnMessage(_first_of('init:template-1', 'ready')),
        OnMessage('ready'),
        AfterDelay(100),
    )
    return strategies[cycle % len(strategies)]


def _midwrite_cycle_strategy(cycle: int) -> KillStrategy:
    strategies = (
        OnMessage('row:50'),
        OnMessage('inserts-done'),
        AfterDelay(400),
        OnMessage('big-update-done'),
        OnMessage('row2:70'),
        OnMessage('mass-update-done'),
    )
    return strategies[cycle % len(strategies)]


def _truncate_primary(data_dir: Path, config: Config) -> tamper.TamperRecord:
    return tamper.truncate_file(tamper.primary_storage_file(data_dir, config), 0)


def _delete_wal(data_dir: Path, config: Config) -> tamper.TamperRecord:
    return tamper.delete_file(tamper.wal_file(data_dir, config))


def _zero_wal_range(data_dir: Path, config: Config) -> tamper.TamperRecord:
    # Past the 32-byte WAL header so frame checksums, not the header, catch it
    return tamper.zero_range(tamper.wal_file(data_dir, config), offset=32 + 24, length=4096)


def _flip_primary_bits(data_dir: Path, config: Config) -> tamper.TamperRecord:
    return tamper.flip_bits(tamper.primary_storage_file(data_dir, config), flips=64, seed=7,
                            skip_header=100)


SCENARIOS: Dict[str, Scenario] = {}


def register(scenario: Scenario) -> Scenario:
    SCENARIOS[scenario.name] = scenario
    return scenario


def get_scenario(name: str) -> Scenario:
    """
    Look up a built-in scenario.

    Raises:
        KeyError: With the list of known names
    """
    try:
        return SCENARIOS[name]
    except KeyError:
        raise KeyError(f"Unknown scenario {name!r}. Known: {', '.join(sorted(SCENARIOS))}") from None


register(Scenario(
    name='kill-during-transaction',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_transaction',
    description='Kill inside an uncommitted transaction; only the 10 committed rows survive',
    kill_strategy=OnMessage('in-transaction'),
    checks=_transaction_checks,
))

register(Scenario(
    name='kill-during-batch-load',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_batch_load',
    description='Kill during a 5000-row single-transaction INSERT; the batch is all or nothing',
    kill_strategy=OnMessage('loading', delay_ms=30),
    checks=_batch_checks,
))

register(Scenario(
    name='kill-during-checkpoint',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_checkpoint',
    description='Kill while a large WAL is checkpointed into the database file',
    kill_strategy=OnMessage('checkpoint-starting', delay_ms=10),
    checks=_checkpoint_checks,
))

register(Scenario(
    name='kill-during-index-creation',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_index_creation',
    description='Kill during CREATE INDEX on 3000 committed rows',
    kill_strategy=OnMessage('creating-index'),
    checks=_index_checks,
))

register(Scenario(
    name='kill-during-close',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_close',
    description='Kill while the directory is being closed',
    kill_strategy=OnMessage('closing'),
    checks=_close_checks,
))

register(Scenario(
    name='kill-during-init',
    kind=ScenarioKind.RAPID_CYCLES,
    program='workers.kill_during_init',
    description='Repeated kills during first-time initialization; partial directories are quarantined',
    env={'CRASHGUARD_INIT_STEP_DELAY_MS': '20', 'CRASHGUARD_DO_WRITE': '1'},
    cycles=12,
    cycle_strategy=_init_cycle_strategy,
))

register(Scenario(
    name='rapid-midwrite',
    kind=ScenarioKind.RAPID_CYCLES,
    program='workers.rapid_midwrite',
    description='Repeated kills at varying points of heavy inserts, updates and deletes',
    cycles=8,
    cycle_strategy=_midwrite_cycle_strategy,
    checks=_midwrite_checks,
))

register(Scenario(
    name='double-open',
    kind=ScenarioKind.CONCURRENT_INSTANCES,
    program='workers.double_open',
    description='Two instances open one fresh directory at once; exactly one may win',
    instances=2,
    barrier='spawned',
    checks=_double_open_checks,
))

register(Scenario(
    name='truncate-primary-storage',
    kind=ScenarioKind.FILE_TAMPER,
    program='workers.wal_truncation',
    description='Truncate the database file to 0 bytes with the WAL intact; must be detected',
    kill_strategy=OnMessage('main-updated'),
    tamper=_truncate_primary,
    checks=_tamper_checks,
))

register(Scenario(
    name='delete-wal',
    kind=ScenarioKind.FILE_TAMPER,
    program='workers.wal_truncation',
    description='Delete the WAL of a crashed directory',
    kill_strategy=OnMessage('main-updated'),
    tamper=_delete_wal,
    checks=_tamper_checks,
))

register(Scenario(
    name='zero-wal-range',
    kind=ScenarioKind.FILE_TAMPER,
    program='workers.wal_truncation',
    description='Zero 4KB of WAL frames of a crashed directory',
    kill_strategy=OnMessage('main-updated'),
    tamper=_zero_wal_range,
    checks=_tamper_checks,
))

register(Scenario(
    name='flip-primary-bits',
    kind=ScenarioKind.FILE_TAMPER,
    program='workers.wal_truncation',
    description='Flip bits across the database file of a crashed directory',
    kill_strategy=OnMessage('main-updated'),
    tamper=_flip_primary_bits,
    checks=_tamper_checks,
))

register(Scenario(
    name='kill-during-insert',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_insert',
    description='Kill during 500 autocommit inserts; every committed row survives once',
    kill_strategy=OnMessage('inserting'),
    checks=_insert_checks,
))

register(Scenario(
    name='kill-during-vacuum',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_vacuum',
    description='Kill while VACUUM rebuilds a file with 500 freed rows',
    kill_strategy=OnMessage('vacuuming', delay_ms=10),
    checks=_vacuum_checks,
))

register(Scenario(
    name='kill-during-alter-table',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_alter_table',
    description='Kill during a sequence of ALTER TABLE statements; each is applied or absent',
    kill_strategy=OnMessage('altering', delay_ms=5),
    checks=_alter_table_checks,
))

register(Scenario(
    name='schema-change-crash',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.schema_change_crash',
    description='Kill a loaded directory, then kill the schema migration run on it',
    kill_strategy=OnMessage('ready'),
    phases=(Phase('migrate', OnMessage('migrating', delay_ms=5)),),
    checks=_schema_change_checks,
))

register(Scenario(
    name='kill-during-recovery',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.kill_during_recovery',
    description='Kill with a large WAL, then kill the reopen that recovers it',
    kill_strategy=OnMessage('inserting:250'),
    phases=(Phase('reopen', OnMessage('opening', delay_ms=5)),),
    checks=_recovery_checks,
))

register(Scenario(
    name='massive-wal-crash',
    kind=ScenarioKind.SINGLE_KILL,
    program='workers.massive_wal_crash',
    description='Kill with megabytes of uncheckpointed WAL holding several page versions',
    kill_strategy=OnMessage('update-1-done'),
    checks=_massive_wal_checks,
))

register(Scenario(
    name='concurrent-writers',
    kind=ScenarioKind.CONCURRENT_INSTANCES,
    program='workers.concurrent_writers',
    description='Two writers start at once; one is refused, the other is killed mid-write',
    instances=2,
    barrier='spawned',
    kill_strategy=OnMessage('writing:250'),
    checks=_concurrent_writer_checks,
))

register(Scenario(
    name='overlapping-three-instances',
    kind=ScenarioKind.CONCURRENT_INSTANCES,
    program='workers.double_open',
    description='Three instances open one fresh directory at once; exactly one may win',
    instances=3,
    barrier='spawned',
    checks=_double_open_checks,
))

register(Scenario(
    name='overlapping-staggered',
    kind=ScenarioKind.CONCURRENT_INSTANCES,
    program='workers.double_open',
    description='Three instances arrive 300ms apart; the lock holder is killed while holding it',
    env={'CRASHGUARD_STAGGER_MS': '300', 'CRASHGUARD_HOLD_MS': '4000'},
    instances=3,
    barrier='spawned',
    kill_strategy=AfterDelay(2500),
    checks=_double_open_checks,
))
