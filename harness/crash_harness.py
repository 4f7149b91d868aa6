"""
Crash injection harness.

Spawns worker processes against a data directory and kills them at a
controlled moment: on a message from the worker, or after a delay. A
universal safety timeout SIGKILLs any worker still alive, so the harness
can never hang a test run.

A single coordinator loop drives every worker of a run. It multiplexes
the workers' message pipes with ``selectors``, evaluates kill triggers in
message arrival order, fires timers, releases start barriers and reaps
exited processes.
"""

import os
import sys
import json
import time
import signal
import logging
import tempfile
import selectors
import subprocess
import importlib.util
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from core.config import Config, CONFIG_ENV_VAR
from core.structured_events import EventEmitter, EventSeverity, EventType
from harness.ipc import (ChannelPipes, MessageDecoder, DATA_DIR_ENV, GO_MESSAGE,
                         send_to_worker)
from utils.error_messages import format_spawn_error
from utils.safety import SafetyLimits


logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

KILL_BY_MESSAGE = 'message'
KILL_BY_DELAY = 'delay'
KILL_BY_SAFETY = 'safety'


class WorkerSpawnError(Exception):
    """Raised when a worker process cannot be started."""
    pass


@dataclass(frozen=True)
class OnMessage:
    """Kill on the first message matching predicate (equality, or a callable)."""
    predicate: Union[Any, Callable[[Any], bool]]
    delay_ms: int = 0

    def matches(self, message: Any) -> bool:
        if callable(self.predicate):
            return bool(self.predicate(message))
        return message == self.predicate


@dataclass(frozen=True)
class AfterDelay:
    """Kill a fixed time after spawn."""
    ms: int


KillStrategy = Union[OnMessage, AfterDelay]


@dataclass
class WorkerSpec:
    """What to run, against which directory, and when to kill it."""
    name: str
    data_dir: Path
    program: str
    env: Dict[str, str] = field(default_factory=dict)
    kill_strategy: Optional[KillStrategy] = None
    kill_signal: Optional[signal.Signals] = None
    args: Sequence[str] = ()


@dataclass(frozen=True)
class WorkerHandle:
    """Final record of one worker process."""
    name: str
    pid: int
    transcript: Tuple[Any, ...]
    stdout: str
    stderr: str
    exit_code: Optional[int]
    exit_signal: Optional[str]
    killed: bool
    kill_reason: Optional[str]
    kill_index: Optional[int]
    duration: float
    safety_timeout: bool = False

    @property
    def died_abnormally(self) -> bool:
        """Terminated by a signal the harness did not send."""
        return self.exit_signal is not None and not self.killed

    @property
    def messages_before_kill(self) -> Tuple[Any, ...]:
        """Messages observed before the kill signal went out."""
        if self.kill_index is None:
            return self.transcript
        return self.transcript[:self.kill_index]

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'pid': self.pid,
            'transcript': list(self.transcript),
            'exit_code': self.exit_code,
            'exit_signal': self.exit_signal,
            'killed': self.killed,
            'kill_reason': self.kill_reason,
            'kill_index': self.kill_index,
            'safety_timeout': self.safety_timeout,
            'duration': round(self.duration, 3),
            'stderr_tail': self.stderr[-2000:],
        }


class _WorkerRun:
    """Mutable coordinator-side state of one running worker."""

    def __init__(self, spec: WorkerSpec, process: subprocess.Popen, pipes: ChannelPipes,
                 stdout_file, stderr_file, kill_signal: signal.Signals, safety_timeout_ms: int):
        self.spec = spec
        self.process = process
        self.pipes = pipes
        self.stdout_file = stdout_file
        self.stderr_file = stderr_file
        self.kill_signal = kill_signal
        self.decoder = MessageDecoder()
        self.transcript: List[Any] = []
        self.started = time.monotonic()
        self.safety_deadline = self.started + safety_timeout_ms / 1000.0
        self.kill_deadline: Optional[float] = None
        self.trigger_matched = False
        self.kill_sent = False
        self.kill_reason: Optional[str] = None
        self.kill_index: Optional[int] = None
        self.safety_fired = False
        self.barrier: Any = None
        self.barrier_seen = False
        self.eof = False
        self.exited_at: Optional[float] = None
        self.handle: Optional[WorkerHandle] = None

        if isinstance(spec.kill_strategy, AfterDelay):
            self.kill_deadline = self.started + spec.kill_strategy.ms / 1000.0

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


class CrashInjectionHarness:
    """Runs worker processes and kills them at controlled moments."""

    def __init__(self, config: Optional[Config] = None, emitter: Optional[EventEmitter] = None):
        """
        Args:
            config: Configuration (signal, safety timeout); passed on to workers
            emitter: Optional structured event sink
        """
        self.config = config or Config()
        self.emitter = emitter

    def run(self, spec: WorkerSpec) -> WorkerHandle:
        """Run one worker to completion (exit by any means)."""
        return self.run_all([spec])[0]

    def run_all(self, specs: Sequence[WorkerSpec], barrier: Any = None) -> List[WorkerHandle]:
        """
        Run several workers concurrently under one coordinator loop.

        Args:
            specs: Workers to run
            barrier: When set, once every worker has sent this message (or
                exited) the coordinator sends "go" to all of them

        Returns:
            WorkerHandles in the order of specs

        Raises:
            WorkerSpawnError: If any worker cannot be started
        """
        if not specs:
            return []

        config_file = self._write_worker_config()
        runs: List[_WorkerRun] = []
        try:
            for spec in specs:
                runs.append(self._spawn(spec, config_file))
            self._coordinate(runs, barrier)
        except BaseException:
            for run in runs:
                if run.handle is None and run.alive:
                    run.process.kill()
                    run.process.wait(timeout=SafetyLimits.REAP_TIMEOUT)
                if run.handle is None:
                    self._release(run)
            raise
        finally:
            try:
                os.unlink(config_file)
            except OSError:
                pass

        return [run.handle for run in runs]

    def _write_worker_config(self) -> str:
        fd, path = tempfile.mkstemp(prefix='crashguard-config-', suffix='.json')
        with os.fdopen(fd, 'w') as f:
            json.dump(self.config.config, f)
        return path

    def _command(self, spec: WorkerSpec) -> List[str]:
        program = spec.program
        if program.endswith('.py'):
            if not Path(program).is_file():
                raise WorkerSpawnError(format_spawn_error(program, "Worker script not found"))
            return [sys.executable, program, *spec.args]

        try:
            found = importlib.util.find_spec(program) is not None
        except (ImportError, ValueError):
            found = False
        if not found:
            raise WorkerSpawnError(format_spawn_error(program, "Worker module cannot be imported"))
        return [sys.executable, '-m', program, *spec.args]

    def _spawn(self, spec: WorkerSpec, config_file: str) -> _WorkerRun:
        command = self._command(spec)
        data_dir = Path(os.path.abspath(spec.data_dir))
        data_dir.parent.mkdir(parents=True, exist_ok=True)

        pipes = ChannelPipes.create()
        env = os.environ.copy()
        python_path = env.get('PYTHONPATH')
        env['PYTHONPATH'] = str(PROJECT_ROOT) + (os.pathsep + python_path if python_path else '')
        env[DATA_DIR_ENV] = str(data_dir)
        env[CONFIG_ENV_VAR] = config_file
        env.update(pipes.child_env())
        env.update(spec.env)

        stdout_file = tempfile.TemporaryFile()
        stderr_file = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                command,
                env=env,
                cwd=str(PROJECT_ROOT),
                stdin=subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file,
                pass_fds=(pipes.child_read, pipes.child_write)
            )
        except OSError as e:
            pipes.close_parent_ends()
            stdout_file.close()
            stderr_file.close()
            raise WorkerSpawnError(format_spawn_error(spec.program, str(e))) from e
        finally:
            pipes.close_child_ends()

        kill_signal = spec.kill_signal or self.config.kill_signal
        after_ms = spec.kill_strategy.ms if isinstance(spec.kill_strategy, AfterDelay) else None
        safety_ms = SafetyLimits.safety_timeout_for(after_ms, self.config.safety_timeout_ms)

        logger.info(f"[HARNESS] Spawned worker {spec.name} (PID {process.pid}) on {data_dir}")
        self._emit(EventType.WORKER_SPAWNED, f"Spawned {spec.name}",
                   context={'worker': spec.name, 'pid': process.pid, 'data_dir': str(data_dir),
                            'program': spec.program})

        return _WorkerRun(spec, process, pipes, stdout_file, stderr_file, kill_signal, safety_ms)

    def _coordinate(self, runs: List[_WorkerRun], barrier: Any):
        selector = selectors.DefaultSelector()
        for run in runs:
            run.barrier = barrier
            selector.register(run.pipes.parent_read, selectors.EVENT_READ, run)

        barrier_released = barrier is None
        try:
            while any(run.handle is None for run in runs):
                timeout = self._next_wakeup(runs)
                for key, _ in selector.select(timeout):
                    run = key.data
                    if not self._read_channel(run):
                        selector.unregister(key.fd)

                now = time.monotonic()
                for run in runs:
                    if run.handle is None:
                        self._check_timers(run, now)

                if not barrier_released and all(run.barrier_seen or not run.alive for run in runs):
                    logger.debug(f"[HARNESS] All workers reached barrier {barrier!r} - releasing")
                    for run in runs:
                        if run.alive:
                            send_to_worker(run.pipes.parent_write, GO_MESSAGE)
                    barrier_released = True

                for run in runs:
                    if run.handle is None:
                        self._check_exit(run, now, selector)
        finally:
            selector.close()

    def _next_wakeup(self, runs: List[_WorkerRun]) -> float:
        now = time.monotonic()
        wakeup = SafetyLimits.POLL_INTERVAL
        for run in runs:
            if run.handle is not None:
                continue
            for deadline in (run.kill_deadline, run.safety_deadline):
                if deadline is not None:
                    wakeup = min(wakeup, deadline - now)
        return max(wakeup, 0)

    def _read_channel(self, run: _WorkerRun) -> bool:
        """Read available messages. False once the worker's end is closed."""
        try:
            chunk = os.read(run.pipes.parent_read, 65536)
        except OSError:
            chunk = b''

        if not chunk:
            run.eof = True
            return False

        for message in run.decoder.feed(chunk):
            self._on_message(run, message)
        return True

    def _on_message(self, run: _WorkerRun, message: Any):
        run.transcript.append(message)
        logger.debug(f"[HARNESS] {run.spec.name} -> {message!r}")

        if run.barrier is not None and message == run.barrier:
            run.barrier_seen = True

        strategy = run.spec.kill_strategy
        if isinstance(strategy, OnMessage) and not run.trigger_matched and strategy.matches(message):
            run.trigger_matched = True
            if strategy.delay_ms > 0:
                run.kill_deadline = time.monotonic() + strategy.delay_ms / 1000.0
            else:
                self._send_kill(run, run.kill_signal, KILL_BY_MESSAGE)

    def _check_timers(self, run: _WorkerRun, now: float):
        if not run.alive:
            return

        if run.kill_deadline is not None and now >= run.kill_deadline and not run.kill_sent:
            reason = KILL_BY_MESSAGE if run.trigger_matched else KILL_BY_DELAY
            self._send_kill(run, run.kill_signal, reason)

        if now >= run.safety_deadline and not run.safety_fired:
            run.safety_fired = True
            logger.warning(f"[HARNESS] Safety timeout: SIGKILL {run.spec.name} (PID {run.process.pid})")
            self._emit(EventType.SAFETY_TIMEOUT, f"Safety timeout for {run.spec.name}",
                       severity=EventSeverity.WARNING,
                       context={'worker': run.spec.name, 'pid': run.process.pid})
            if not run.kill_sent:
                self._send_kill(run, signal.SIGKILL, KILL_BY_SAFETY)
            else:
                # The scheduled signal was ignored or handled; escalate
                run.process.kill()

    def _send_kill(self, run: _WorkerRun, sig: signal.Signals, reason: str):
        if run.kill_sent:
            return
        try:
            run.process.send_signal(sig)
        except ProcessLookupError:
            return
        run.kill_sent = True
        run.kill_reason = reason
        run.kill_index = len(run.transcript)
        logger.info(f"[HARNESS] Sent {sig.name} to {run.spec.name} (PID {run.process.pid}) by {reason} "
                    f"after {run.kill_index} message(s)")
        self._emit(EventType.KILL_SENT, f"{sig.name} -> {run.spec.name}",
                   context={'worker': run.spec.name, 'pid': run.process.pid, 'signal': sig.name,
                            'reason': reason, 'kill_index': run.kill_index})

    def _check_exit(self, run: _WorkerRun, now: float, selector: selectors.BaseSelector):
        if run.alive:
            return
        if run.exited_at is None:
            run.exited_at = now
        # Give the channel a moment to deliver what the worker wrote before exiting
        if not run.eof and now - run.exited_at < SafetyLimits.EXIT_DRAIN_GRACE:
            return

        if not run.eof:
            self._drain(run)
            try:
                selector.unregister(run.pipes.parent_read)
            except (KeyError, ValueError):
                pass

        run.handle = self._finalize(run, now)

    def _drain(self, run: _WorkerRun):
        os.set_blocking(run.pipes.parent_read, False)
        while True:
            try:
                chunk = os.read(run.pipes.parent_read, 65536)
            except (BlockingIOError, OSError):
                break
            if not chunk:
                break
            for message in run.decoder.feed(chunk):
                self._on_message(run, message)

    def _finalize(self, run: _WorkerRun, now: float) -> WorkerHandle:
        returncode = run.process.returncode
        if returncode is not None and returncode < 0:
            exit_code = None
            try:
                exit_signal = signal.Signals(-returncode).name
            except ValueError:
                exit_signal = f"SIG{-returncode}"
        else:
            exit_code, exit_signal = returncode, None

        stdout, stderr = self._read_streams(run)
        self._release(run)

        handle = WorkerHandle(
            name=run.spec.name,
            pid=run.process.pid,
            transcript=tuple(run.transcript),
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            exit_signal=exit_signal,
            killed=run.kill_sent or run.safety_fired,
            kill_reason=run.kill_reason,
            kill_index=run.kill_index,
            duration=(run.exited_at or now) - run.started,
            safety_timeout=run.safety_fired
        )

        how = f"signal {exit_signal}" if exit_signal else f"code {exit_code}"
        logger.info(f"[HARNESS] Worker {handle.name} (PID {handle.pid}) exited with {how} "
                    f"after {handle.duration:.2f}s, {len(handle.transcript)} message(s)")
        severity = EventSeverity.WARNING if handle.died_abnormally else EventSeverity.INFO
        self._emit(EventType.WORKER_EXITED, f"{handle.name} exited with {how}", severity=severity,
                   context={'worker': handle.name, 'pid': handle.pid, 'exit_code': exit_code,
                            'exit_signal': exit_signal, 'killed': handle.killed})
        return handle

    @staticmethod
    def _read_streams(run: _WorkerRun) -> Tuple[str, str]:
        streams = []
        for f in (run.stdout_file, run.stderr_file):
            f.seek(0)
            streams.append(f.read().decode('utf-8', errors='replace'))
        return streams[0], streams[1]

    @staticmethod
    def _release(run: _WorkerRun):
        run.pipes.close_parent_ends()
        run.stdout_file.close()
        run.stderr_file.close()

    def _emit(self, event_type: EventType, message: str,
              severity: EventSeverity = EventSeverity.INFO, context: Optional[dict] = None):
        if self.emitter is not None:
            self.emitter.emit(event_type, message, severity=severity, context=context)
