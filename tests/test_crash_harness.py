"""
Test suite for the crash injection harness.

Workers here are tiny scripts written to tmp_path that talk to the harness
over the real channel, so every test exercises an actual spawn, kill and
reap.
"""

import signal
import textwrap

import pytest

from core.structured_events import EventEmitter, EventType
from harness.crash_harness import (AfterDelay, CrashInjectionHarness, OnMessage,
                                   WorkerSpawnError, WorkerSpec)
from harness.ipc import EXIT_LOCK_HELD


PRELUDE = """
import os, sys, time
from harness.ipc import WorkerChannel
channel = WorkerChannel.from_env()
"""


@pytest.fixture
def script(tmp_path):
    """Write a worker script and return its path."""
    def write(body, name='worker.py'):
        path = tmp_path / name
        path.write_text(PRELUDE + textwrap.dedent(body))
        return str(path)
    return write


@pytest.fixture
def harness(config):
    return CrashInjectionHarness(config, EventEmitter(enable_console=False))


STREAMING = """
channel.send('ready')
for i in range(2000):
    channel.send(f'row:{i}')
    time.sleep(0.005)
channel.send('done')
"""


class TestKillStrategies:

    def test_kill_on_message(self, harness, script, data_dir):
        spec = WorkerSpec('w', data_dir, script(STREAMING), kill_strategy=OnMessage('row:5'))
        handle = harness.run(spec)

        assert handle.killed
        assert handle.kill_reason == 'message'
        assert handle.exit_signal == 'SIGKILL'
        assert handle.exit_code is None
        assert not handle.died_abnormally
        assert handle.messages_before_kill[-1] == 'row:5'
        assert 'done' not in handle.transcript

    def test_kill_on_callable_predicate(self, harness, script, data_dir):
        strategy = OnMessage(lambda m: isinstance(m, str) and m.startswith('row:') and int(m[4:]) >= 3)
        handle = harness.run(WorkerSpec('w', data_dir, script(STREAMING), kill_strategy=strategy))
        assert handle.messages_before_kill[-1] == 'row:3'

    def test_kill_on_message_with_delay(self, harness, script, data_dir):
        spec = WorkerSpec('w', data_dir, script(STREAMING), kill_strategy=OnMessage('ready', delay_ms=100))
        handle = harness.run(spec)

        assert handle.kill_reason == 'message'
        # The worker kept streaming during the delay
        assert handle.kill_index > 1

    def test_kill_after_delay(self, harness, script, data_dir):
        worker = script("""
            channel.send('sleeping')
            time.sleep(60)
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker, kill_strategy=AfterDelay(200)))

        assert handle.kill_reason == 'delay'
        assert handle.exit_signal == 'SIGKILL'
        assert handle.transcript == ('sleeping',)
        assert 0.15 < handle.duration < 10

    def test_custom_kill_signal(self, harness, script, data_dir):
        spec = WorkerSpec('w', data_dir, script(STREAMING), kill_strategy=OnMessage('ready'),
                          kill_signal=signal.SIGTERM)
        handle = harness.run(spec)
        assert handle.exit_signal == 'SIGTERM'
        assert handle.killed

    def test_trigger_never_seen_lets_worker_finish(self, harness, script, data_dir):
        worker = script("""
            channel.send('a')
            channel.send('b')
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker, kill_strategy=OnMessage('never')))

        assert not handle.killed
        assert handle.exit_code == 0
        assert handle.transcript == ('a', 'b')
        assert handle.messages_before_kill == ('a', 'b')


class TestExits:

    def test_clean_exit(self, harness, script, data_dir):
        handle = harness.run(WorkerSpec('w', data_dir, script("channel.send({'rows': 3})\n")))
        assert handle.exit_code == 0
        assert handle.exit_signal is None
        assert handle.transcript == ({'rows': 3},)
        assert handle.to_dict()['exit_code'] == 0

    def test_exit_code_is_reported(self, harness, script, data_dir):
        worker = script(f"""
            channel.send('lock-held:1')
            sys.exit({EXIT_LOCK_HELD})
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker))
        assert handle.exit_code == EXIT_LOCK_HELD
        assert not handle.killed

    def test_unexpected_signal_is_abnormal(self, harness, script, data_dir):
        worker = script("""
            import signal
            channel.send('about-to-die')
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(5)
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker))
        assert handle.exit_signal == 'SIGTERM'
        assert handle.died_abnormally

    def test_stderr_is_captured(self, harness, script, data_dir):
        worker = script("""
            sys.stderr.write('boom\\n')
            sys.exit(1)
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker))
        assert handle.exit_code == 1
        assert 'boom' in handle.stderr

    def test_environment_reaches_worker(self, harness, script, data_dir):
        worker = script("""
            channel.send(os.environ['CRASHGUARD_DATA_DIR'])
            channel.send(os.environ['EXTRA'])
            channel.send(bool(os.environ.get('CRASHGUARD_CONFIG')))
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker, env={'EXTRA': 'x'}))
        assert handle.transcript == (str(data_dir), 'x', True)

    def test_unterminated_last_message_is_dropped(self, harness, script, data_dir):
        worker = script("""
            channel.send('whole')
            os.write(channel.out_fd, b'"half')
        """)
        handle = harness.run(WorkerSpec('w', data_dir, worker))
        assert handle.transcript == ('whole',)


class TestSafetyTimeout:

    def test_hung_worker_is_killed(self, config, script, data_dir):
        config.set('safety_timeout_ms', 1000)
        harness = CrashInjectionHarness(config, EventEmitter(enable_console=False))
        worker = script("time.sleep(60)\n")

        handle = harness.run(WorkerSpec('w', data_dir, worker))

        assert handle.safety_timeout
        assert handle.killed
        assert handle.kill_reason == 'safety'
        assert handle.exit_signal == 'SIGKILL'
        assert handle.duration < 10
        assert harness.emitter.query_events(EventType.SAFETY_TIMEOUT)

    def test_ignored_signal_is_escalated(self, config, script, data_dir):
        config.set('safety_timeout_ms', 1000)
        harness = CrashInjectionHarness(config)
        worker = script("""
            import signal
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            channel.send('ready')
            time.sleep(60)
        """)
        spec = WorkerSpec('w', data_dir, worker, kill_strategy=OnMessage('ready'), kill_signal=signal.SIGTERM)
        handle = harness.run(spec)

        assert handle.safety_timeout
        assert handle.exit_signal == 'SIGKILL'


class TestBarrier:

    def test_go_is_sent_once_all_workers_arrive(self, harness, script, data_dir):
        worker = script("""
            channel.send('spawned')
            channel.wait_for('go', timeout=20)
            channel.send('went')
        """)
        specs = [WorkerSpec(f'w{i}', data_dir, worker) for i in range(3)]
        handles = harness.run_all(specs, barrier='spawned')

        assert [h.name for h in handles] == ['w0', 'w1', 'w2']
        for handle in handles:
            assert handle.transcript == ('spawned', 'went')
            assert handle.exit_code == 0

    def test_exited_worker_does_not_block_barrier(self, harness, script, data_dir):
        waiter = script("""
            channel.send('spawned')
            channel.wait_for('go', timeout=20)
            channel.send('went')
        """, name='waiter.py')
        quitter = script("sys.exit(4)\n", name='quitter.py')

        handles = harness.run_all([WorkerSpec('a', data_dir, waiter), WorkerSpec('b', data_dir, quitter)],
                                  barrier='spawned')
        assert handles[0].transcript == ('spawned', 'went')
        assert handles[1].exit_code == 4


class TestSpawnErrors:

    def test_missing_script(self, harness, tmp_path, data_dir):
        with pytest.raises(WorkerSpawnError) as exc:
            harness.run(WorkerSpec('w', data_dir, str(tmp_path / 'nope.py')))
        assert "Worker script not found" in str(exc.value)

    def test_unknown_module(self, harness, data_dir):
        with pytest.raises(WorkerSpawnError) as exc:
            harness.run(WorkerSpec('w', data_dir, 'workers.does_not_exist'))
        assert "cannot be imported" in str(exc.value)

    def test_empty_spec_list(self, harness):
        assert harness.run_all([]) == []


def test_lifecycle_events(harness, script, data_dir):
    spec = WorkerSpec('w', data_dir, script(STREAMING), kill_strategy=OnMessage('ready'))
    handle = harness.run(spec)

    types = [e.event_type for e in harness.emitter.get_session_events()]
    assert types == [EventType.WORKER_SPAWNED, EventType.KILL_SENT, EventType.WORKER_EXITED]
    kill = harness.emitter.query_events(EventType.KILL_SENT)[0]
    assert kill.context['pid'] == handle.pid
    assert kill.context['signal'] == 'SIGKILL'
