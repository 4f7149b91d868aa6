"""
crashguard: crash-safety guard and verifier for SQLite data directories

Runs named kill-injection scenarios against real worker processes, verifies
what they leave behind and classifies the outcome. Also verifies existing
directories and reports who holds their lock.

Exit codes: 0 when nothing was classified as corruption, 2 when corruption
was classified, 1 on errors.
"""

import os
import sys
import json
import logging
import warnings
from dataclasses import replace
from pathlib import Path
from colorama import init, Fore, Style

from core import Config, DirectoryLockManager, LockHeldError, PartialInitDetector, setup_logging
from core.partial_init import PartialInitQuarantined
from core.structured_events import EventEmitter
from harness.classifier import CorruptionLabel
from harness.crash_harness import WorkerSpawnError
from harness.scenarios import (SCENARIOS, Scenario, ScenarioKind, ScenarioOrchestrator, ScenarioResult,
                               get_scenario)
from harness.verification import OpenTimeout, VerificationPipeline
from utils.cli_runtime import build_crashguard_arg_parser, configure_windows_console_utf8
from utils.defensive import InputValidator, ValidationError
from utils.error_messages import (format_error, format_integrity_error, format_lock_held_error,
                                  format_open_timeout_error, format_quarantine_notice)
from utils.safety import SafetyLimits

EXIT_CLEAN = 0
EXIT_FAILURE = 1
EXIT_CORRUPTION = 2

DEFAULT_CONFIG_PATH = Path('config_files/config.json')

LABEL_COLORS = {
    CorruptionLabel.NONE: Fore.GREEN,
    CorruptionLabel.OPEN_FAILURE: Fore.RED,
    CorruptionLabel.INTEGRITY_FAILURE: Fore.RED,
    CorruptionLabel.DATA_INCONSISTENCY: Fore.YELLOW,
    CorruptionLabel.WRITE_FAILURE: Fore.MAGENTA,
}


def load_config(config_arg) -> Config:
    """Config from --config, else the default file when present, else defaults."""
    if config_arg:
        path = Path(config_arg)
        if not path.exists():
            raise ValidationError(f"Config file not found: {path}")
        return Config(path)
    return Config(DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)


def cmd_list(config: Config, args) -> int:
    width = max(len(name) for name in SCENARIOS)
    print(f"{Fore.CYAN}{'='*80}{Style.RESET_ALL}")
    print(f"{Fore.CYAN}Built-in scenarios{Style.RESET_ALL}")
    print(f"{Fore.CYAN}{'='*80}{Style.RESET_ALL}")
    for name, scenario in SCENARIOS.items():
        print(f"  {Fore.YELLOW}{name:<{width}}{Style.RESET_ALL}  "
              f"{Style.DIM}[{scenario.kind.value}]{Style.RESET_ALL} {scenario.description}")
    return EXIT_CLEAN


def print_result(result: ScenarioResult):
    verdict = result.verdict
    print(f"\n[RUN] {Fore.YELLOW}{result.scenario}{Style.RESET_ALL} "
          f"({result.kind.value}, {result.cycles_run} cycle(s))")
    print(f"  {Style.DIM}data dir:{Style.RESET_ALL} {result.data_dir}")

    for worker in result.workers:
        how = f"signal {worker.exit_signal}" if worker.exit_signal else f"exit {worker.exit_code}"
        killed = f" killed ({worker.kill_reason})" if worker.killed else ''
        last = worker.messages_before_kill[-1] if worker.messages_before_kill else '-'
        print(f"  {Style.DIM}worker{Style.RESET_ALL} {worker.name:<28} pid {worker.pid:<7} "
              f"{how}{killed}  last message: {Fore.CYAN}{last}{Style.RESET_ALL}")

    for record in result.tampering:
        print(f"  {Style.DIM}tamper{Style.RESET_ALL} {record.action} {record.path.name} "
              f"({record.size_before} -> {record.size_after} bytes) {record.detail}")

    for outcome in result.verifications:
        if outcome.quarantine is not None:
            print(f"  {Fore.YELLOW}{format_quarantine_notice(result.data_dir, outcome.quarantine.backup_path)}"
                  f"{Style.RESET_ALL}")
        if not outcome.open_result.success:
            print(f"  {Fore.RED}open failed:{Style.RESET_ALL} {outcome.open_result.error_text}")
            continue
        passed = sum(1 for c in outcome.checks if c.passed)
        intact = outcome.report.intact if outcome.report else True
        print(f"  {Style.DIM}verify{Style.RESET_ALL} {outcome.label}: integrity "
              f"{Fore.GREEN + 'intact' if intact else Fore.RED + 'DAMAGED'}{Style.RESET_ALL}, "
              f"checks {passed}/{len(outcome.checks)} passed")

    labels = sorted(verdict.labels, key=lambda item: item.value)
    print("\n  Verdict: " + ', '.join(f"{LABEL_COLORS[label]}{label.name}{Style.RESET_ALL}" for label in labels))
    for reason in verdict.reasons[:15]:
        print(f"    - {reason}")
    if len(verdict.reasons) > 15:
        print(f"    ... {len(verdict.reasons) - 15} more")


def apply_overrides(scenario: Scenario, args) -> Scenario:
    """
    Apply --cycles/--instances to a scenario.

    Raises:
        ValidationError: On an out-of-range count or an option the scenario kind does not take
    """
    if args.cycles is not None:
        if scenario.kind is not ScenarioKind.RAPID_CYCLES:
            raise ValidationError(f"--cycles only applies to rapid-cycle scenarios, not {scenario.name}")
        cycles = InputValidator.validate_int(args.cycles, 1, SafetyLimits.MAX_RAPID_CYCLES, "--cycles")
        scenario = replace(scenario, cycles=cycles)

    if args.instances is not None:
        if scenario.kind is not ScenarioKind.CONCURRENT_INSTANCES:
            raise ValidationError(f"--instances only applies to concurrent scenarios, not {scenario.name}")
        instances = InputValidator.validate_int(args.instances, 2, SafetyLimits.MAX_INSTANCES, "--instances")
        scenario = replace(scenario, instances=instances)

    return scenario


def cmd_run(config: Config, args) -> int:
    try:
        scenario = get_scenario(args.scenario)
    except KeyError as e:
        print(Fore.RED + str(e.args[0]) + Style.RESET_ALL)
        return EXIT_FAILURE

    scenario = apply_overrides(scenario, args)

    if args.keep:
        config.set('retain_data', True)

    data_dir = None
    if args.data_dir:
        data_dir = InputValidator.validate_path(args.data_dir)

    emitter = EventEmitter(config.event_log, enable_console=False)
    orchestrator = ScenarioOrchestrator(config, emitter, show_progress=not (args.no_progress or args.json))

    try:
        result = orchestrator.run(scenario, data_dir=data_dir)
    except WorkerSpawnError as e:
        print(Fore.RED + str(e) + Style.RESET_ALL)
        logging.error(f"Worker spawn failed: {e}", exc_info=True)
        return EXIT_FAILURE

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)
        if config.retain_data:
            print(f"\n{Fore.CYAN}Data kept at {result.data_dir}{Style.RESET_ALL}")

    return EXIT_CORRUPTION if result.verdict.corrupted else EXIT_CLEAN


def cmd_verify(config: Config, args) -> int:
    data_dir = InputValidator.validate_path(args.data_dir, must_exist=True, must_be_dir=True)
    pipeline = VerificationPipeline(config)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always', PartialInitQuarantined)
        opened = pipeline.try_open(data_dir)

    if not opened.success:
        error = opened.error
        if isinstance(error, LockHeldError):
            print(Fore.RED + format_lock_held_error(error.data_dir, error.marker_path, error.holder_pid)
                  + Style.RESET_ALL)
            return EXIT_FAILURE
        if isinstance(error, OpenTimeout):
            message = format_open_timeout_error(data_dir, error.timeout_ms)
        else:
            message = format_error("Cannot open data directory", opened.error_text,
                                   "Inspect the directory with crashguard-doctor; restore from backup if needed",
                                   location=data_dir)
        if args.json:
            print(json.dumps({'data_dir': str(data_dir), 'opened': False,
                              'timed_out': opened.timed_out, 'error': opened.error_text}, indent=2))
        else:
            print(Fore.RED + message + Style.RESET_ALL)
        return EXIT_CORRUPTION

    handle = opened.handle
    try:
        report = pipeline.verify_integrity(handle)
        probe = pipeline.write_probe(handle) if args.write_probe else None
    finally:
        handle.close()

    if args.json:
        print(json.dumps({
            'data_dir': str(data_dir),
            'opened': True,
            'quarantined_to': str(handle.quarantine.backup_path) if handle.quarantine else None,
            'integrity': report.to_dict(),
            'write_probe': probe.to_dict() if probe else None,
        }, indent=2))
    else:
        for warning in caught:
            print(Fore.YELLOW + str(warning.message) + Style.RESET_ALL)
        if report.intact:
            print(f"[VERIFY] {Fore.GREEN}{data_dir}: integrity intact{Style.RESET_ALL}")
        else:
            print(Fore.RED + format_integrity_error(data_dir, list(report.issues)) + Style.RESET_ALL)
        if probe is not None:
            state = f"{Fore.GREEN}passed" if probe.passed else f"{Fore.RED}failed: {'; '.join(probe.issues)}"
            print(f"[VERIFY] write probe {state}{Style.RESET_ALL}")

    if not report.intact or (probe is not None and not probe.passed):
        return EXIT_CORRUPTION
    return EXIT_CLEAN


def cmd_lock_status(config: Config, args) -> int:
    data_dir = InputValidator.validate_path(args.data_dir)
    status = DirectoryLockManager(config).inspect(data_dir)

    init_state = None
    if data_dir.exists():
        init_state = PartialInitDetector(config).inspect(data_dir)

    if args.json:
        payload = status.to_dict()
        payload['init_state'] = init_state.to_dict() if init_state else None
        print(json.dumps(payload, indent=2))
        return EXIT_CLEAN

    print(f"[LOCK] {data_dir}")
    print(f"  {Style.DIM}marker:{Style.RESET_ALL} {status.marker_path}")
    if not status.marker_exists:
        print(f"  {Fore.GREEN}unlocked{Style.RESET_ALL}")
    elif status.record is None:
        print(f"  {Fore.YELLOW}marker present but unreadable (stale){Style.RESET_ALL}")
    elif status.owner_alive:
        print(f"  {Fore.RED}held by PID {status.record.owner_pid}{Style.RESET_ALL} "
              f"(since {status.record.acquired_at_millis} ms)")
    else:
        print(f"  {Fore.YELLOW}stale: PID {status.record.owner_pid} is gone; the next open reclaims it"
              f"{Style.RESET_ALL}")
    if status.holders:
        print(f"  {Style.DIM}processes with the marker open:{Style.RESET_ALL} "
              f"{', '.join(str(p) for p in status.holders)}")
    if init_state is not None:
        state = 'initialized' if init_state.fully_initialized else (
            'PARTIAL' if init_state.partial else 'empty')
        print(f"  {Style.DIM}init state:{Style.RESET_ALL} {state}")
    return EXIT_CLEAN


COMMANDS = {
    'list': cmd_list,
    'run': cmd_run,
    'verify': cmd_verify,
    'lock-status': cmd_lock_status,
}


def main(argv=None) -> int:
    """Main entry point with defensive error handling."""
    configure_windows_console_utf8()
    args = build_crashguard_arg_parser().parse_args(argv)
    init(strip=True if (args.no_color or os.environ.get('NO_COLOR')) else None)

    try:
        config = load_config(args.config)
    except ValidationError as e:
        print(Fore.RED + f"Error loading config: {e}" + Style.RESET_ALL)
        return EXIT_FAILURE

    try:
        log_file = setup_logging(config.log_folder, config.max_log_files)
        logging.info("=" * 70)
        logging.info(f"crashguard {args.command} started")
        logging.info(f"Log file: {log_file}")
    except OSError as e:
        print(Fore.RED + f"Error setting up logging: {e}" + Style.RESET_ALL)
        return EXIT_FAILURE

    try:
        return COMMANDS[args.command](config, args)
    except ValidationError as e:
        print(Fore.RED + f"Validation failed: {e}" + Style.RESET_ALL)
        logging.error(f"Validation: {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print(Fore.YELLOW + "\nInterrupted" + Style.RESET_ALL)
        return EXIT_FAILURE
    except Exception as e:
        print(Fore.RED + f"Unexpected error: {e}" + Style.RESET_ALL)
        logging.error(f"crashguard {args.command} failed: {e}", exc_info=True)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
