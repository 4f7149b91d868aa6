"""Tests for the harness/worker message channel."""

import os
import threading

import pytest

from harness.ipc import (ChannelClosed, ChannelPipes, MessageDecoder, WorkerChannel,
                         encode_message, send_to_worker, OUT_FD_ENV, IN_FD_ENV)


class TestMessageDecoder:

    def test_splits_complete_lines(self):
        decoder = MessageDecoder()
        assert decoder.feed(b'"ready"\n{"rows": 3}\n') == ['ready', {'rows': 3}]
        assert decoder.pending == b''

    def test_buffers_partial_line_across_chunks(self):
        decoder = MessageDecoder()
        assert decoder.feed(b'"row:') == []
        assert decoder.pending == b'"row:'
        assert decoder.feed(b'50"\n') == ['row:50']

    def test_partial_trailing_line_is_never_emitted(self):
        """A worker killed mid-write leaves half a message."""
        decoder = MessageDecoder()
        messages = decoder.feed(b'"inserts-done"\n"big-upd')
        assert messages == ['inserts-done']
        assert decoder.pending == b'"big-upd'

    def test_blank_lines_are_skipped(self):
        assert MessageDecoder().feed(b'\n  \n"go"\n') == ['go']

    def test_garbage_line_is_dropped(self, caplog):
        decoder = MessageDecoder()
        assert decoder.feed(b'not json\n"ok"\n') == ['ok']
        assert "Dropping undecodable" in caplog.text


def test_encode_message_is_one_line():
    assert encode_message({'a': 'b\nc'}) == b'{"a": "b\\nc"}\n'


class TestChannelPipes:

    def test_child_env_names_child_ends(self):
        pipes = ChannelPipes.create()
        try:
            env = pipes.child_env()
            assert env[OUT_FD_ENV] == str(pipes.child_write)
            assert env[IN_FD_ENV] == str(pipes.child_read)
            assert os.get_inheritable(pipes.child_write)
            assert not os.get_inheritable(pipes.parent_read)
        finally:
            pipes.close_child_ends()
            pipes.close_parent_ends()

    def test_close_twice_is_harmless(self):
        pipes = ChannelPipes.create()
        pipes.close_child_ends()
        pipes.close_parent_ends()
        pipes.close_child_ends()
        pipes.close_parent_ends()


class TestWorkerChannel:

    @pytest.fixture
    def pipes(self):
        pipes = ChannelPipes.create()
        yield pipes
        pipes.close_child_ends()
        pipes.close_parent_ends()

    def test_send_reaches_parent(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        channel.send('constructor-done')
        channel.send('row:1')
        data = os.read(pipes.parent_read, 4096)
        assert MessageDecoder().feed(data) == ['constructor-done', 'row:1']

    def test_recv_from_parent(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        assert send_to_worker(pipes.parent_write, 'go')
        assert channel.recv(timeout=5) == 'go'

    def test_recv_times_out(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        with pytest.raises(TimeoutError):
            channel.recv(timeout=0.05)

    def test_recv_without_inbound_channel(self, pipes):
        with pytest.raises(ChannelClosed):
            WorkerChannel(pipes.child_write).recv(timeout=0.01)

    def test_recv_after_parent_closes(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        os.close(pipes.parent_write)
        pipes.parent_write = -1
        with pytest.raises(ChannelClosed):
            channel.recv(timeout=5)

    def test_wait_for_skips_other_messages(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        send_to_worker(pipes.parent_write, 'noise')
        send_to_worker(pipes.parent_write, {'x': 1})

        timer = threading.Timer(0.05, send_to_worker, args=(pipes.parent_write, 'go'))
        timer.start()
        try:
            assert channel.wait_for('go', timeout=5) == 'go'
        finally:
            timer.cancel()

    def test_send_after_parent_closes_raises(self, pipes):
        channel = WorkerChannel(pipes.child_write, pipes.child_read)
        os.close(pipes.parent_read)
        pipes.parent_read = -1
        with pytest.raises(ChannelClosed):
            channel.send('row:1')

    def test_from_env_requires_harness(self, monkeypatch):
        monkeypatch.delenv(OUT_FD_ENV, raising=False)
        with pytest.raises(RuntimeError, match=OUT_FD_ENV):
            WorkerChannel.from_env()

    def test_from_env_reads_descriptors(self, monkeypatch):
        monkeypatch.setenv(OUT_FD_ENV, '41')
        monkeypatch.delenv(IN_FD_ENV, raising=False)
        channel = WorkerChannel.from_env()
        assert channel.out_fd == 41
        assert channel.in_fd is None


def test_send_to_closed_worker_returns_false():
    read_fd, write_fd = os.pipe()
    os.close(read_fd)
    try:
        assert send_to_worker(write_fd, 'go') is False
    finally:
        os.close(write_fd)
