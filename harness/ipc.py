"""
Message channel between the harness and a worker process.

Two anonymous pipes carry newline-delimited JSON. The worker learns its
ends from environment variables; the coordinator keeps the other ends.
A worker killed mid-write may leave a partial trailing line, which the
decoder drops.
"""

import os
import json
import time
import logging
import selectors
from dataclasses import dataclass
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# Environment contract for worker programs
DATA_DIR_ENV = 'CRASHGUARD_DATA_DIR'
OUT_FD_ENV = 'CRASHGUARD_IPC_OUT_FD'    # worker -> coordinator
IN_FD_ENV = 'CRASHGUARD_IPC_IN_FD'      # coordinator -> worker
INSTANCE_ENV = 'CRASHGUARD_INSTANCE_ID'
CYCLE_ENV = 'CRASHGUARD_CYCLE'
PHASE_ENV = 'CRASHGUARD_PHASE'

# Worker exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCK_HELD = 3
EXIT_OPEN_FAILED = 4

# Coordinator -> worker barrier release
GO_MESSAGE = 'go'


class ChannelClosed(Exception):
    """Raised when the other end of the channel has gone away."""
    pass


def encode_message(message: Any) -> bytes:
    return (json.dumps(message) + '\n').encode('utf-8')


class MessageDecoder:
    """Splits a byte stream into JSON messages, buffering partial lines."""

    def __init__(self):
        self._buffer = b''

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += chunk
        messages = []
        while b'\n' in self._buffer:
            line, self._buffer = self._buffer.split(b'\n', 1)
            if not line.strip():
                continue
            try:
                messages.append(json.loads(line.decode('utf-8')))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning(f"[HARNESS] Dropping undecodable message line: {line[:80]!r}")
        return messages

    @property
    def pending(self) -> bytes:
        """Bytes of an unterminated trailing line."""
        return self._buffer


@dataclass
class ChannelPipes:
    """Both ends of both pipes, as created before spawning a worker."""
    parent_read: int
    parent_write: int
    child_read: int
    child_write: int

    @classmethod
    def create(cls) -> 'ChannelPipes':
        up_read, up_write = os.pipe()
        down_read, down_write = os.pipe()
        os.set_inheritable(up_write, True)
        os.set_inheritable(down_read, True)
        return cls(parent_read=up_read, parent_write=down_write,
                   child_read=down_read, child_write=up_write)

    def child_env(self) -> dict:
        return {OUT_FD_ENV: str(self.child_write), IN_FD_ENV: str(self.child_read)}

    def close_child_ends(self):
        _close_quietly(self.child_read, self.child_write)

    def close_parent_ends(self):
        _close_quietly(self.parent_read, self.parent_write)


def _close_quietly(*fds: int):
    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


def send_to_worker(fd: int, message: Any) -> bool:
    """Write one message to a worker. False if the worker is gone."""
    try:
        os.write(fd, encode_message(message))
        return True
    except (BrokenPipeError, OSError) as e:
        logger.debug(f"[HARNESS] Could not deliver {message!r}: {e}")
        return False


class WorkerChannel:
    """
    Worker-side end of the channel.

    Usage inside a worker program:

        channel = WorkerChannel.from_env()
        channel.send('ready')
        channel.wait_for('go', timeout=10)
    """

    def __init__(self, out_fd: int, in_fd: Optional[int] = None):
        self.out_fd = out_fd
        self.in_fd = in_fd
        self._decoder = MessageDecoder()
        self._inbox: List[Any] = []

    @classmethod
    def from_env(cls) -> 'WorkerChannel':
        """
        Build the channel from the harness environment.

        Raises:
            RuntimeError: If the process was not started by the harness
        """
        out_fd = os.environ.get(OUT_FD_ENV)
        if out_fd is None:
            raise RuntimeError(f"{OUT_FD_ENV} not set - worker must be started by the crash harness")
        in_fd = os.environ.get(IN_FD_ENV)
        return cls(int(out_fd), int(in_fd) if in_fd else None)

    def send(self, message: Any):
        """Send a message to the coordinator."""
        try:
            os.write(self.out_fd, encode_message(message))
        except BrokenPipeError:
            raise ChannelClosed("Coordinator closed the channel")

    def recv(self, timeout: Optional[float] = None) -> Any:
        """
        Receive the next message from the coordinator.

        Raises:
            TimeoutError: If nothing arrived within timeout
            ChannelClosed: If the coordinator closed its end
        """
        if self.in_fd is None:
            raise ChannelClosed("No inbound channel")

        deadline = None if timeout is None else time.monotonic() + timeout
        with selectors.DefaultSelector() as sel:
            sel.register(self.in_fd, selectors.EVENT_READ)
            while not self._inbox:
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                if remaining == 0:
                    raise TimeoutError("No message from coordinator")
                if not sel.select(remaining):
                    continue
                chunk = os.read(self.in_fd, 4096)
                if not chunk:
                    raise ChannelClosed("Coordinator closed the channel")
                self._inbox.extend(self._decoder.feed(chunk))
        return self._inbox.pop(0)

    def wait_for(self, expected: Any, timeout: Optional[float] = None) -> Any:
        """Receive messages until one equals expected."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            message = self.recv(remaining)
            if message == expected:
                return message

    def close(self):
        _close_quietly(*(fd for fd in (self.out_fd, self.in_fd) if fd is not None))
