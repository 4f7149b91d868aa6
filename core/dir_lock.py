"""
Exclusive single-host lock for a data directory.

The lock is a marker file placed beside the data directory
(``/path/to/db.lock`` for ``/path/to/db``) so it never interferes with the
engine's own files. Its content is the owner's PID and acquisition time in
milliseconds, one per line.

Two modes:
  pid    - the PID record is the lock. An existing record whose owner is
           dead (or whose content cannot be parsed) is stale and reclaimed.
           Two processes that both see the same stale record can both
           reclaim it; this mode is best-effort deterrence.
  flock  - an exclusive, non-blocking flock on the marker descriptor is the
           lock. The PID record is kept for diagnostics only.
"""

import os
import time
import uuid
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import psutil

from core.config import Config
from core.liveness import is_alive
from utils.error_messages import format_lock_held_error

try:
    import fcntl
except ImportError:  # Windows: only pid mode is available
    fcntl = None


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class LockHeldError(Exception):
    """Raised when another live process holds the data directory."""

    def __init__(self, holder_pid: Optional[int], data_dir: Path, marker_path: Path):
        self.holder_pid = holder_pid
        self.data_dir = data_dir
        self.marker_path = marker_path
        super().__init__(format_lock_held_error(data_dir, marker_path, holder_pid))


@dataclass(frozen=True)
class LockRecord:
    """Content of the marker file."""
    owner_pid: int
    acquired_at_millis: int

    def serialize(self) -> str:
        return f"{self.owner_pid}\n{self.acquired_at_millis}\n"

    @classmethod
    def parse(cls, text: str) -> Optional['LockRecord']:
        """
        Parse marker content.

        Returns:
            LockRecord, or None when the content is empty or corrupt
        """
        lines = text.strip().splitlines()
        if not lines:
            return None
        try:
            pid = int(lines[0].strip())
            millis = int(lines[1].strip()) if len(lines) > 1 else 0
        except ValueError:
            return None
        if pid <= 0:
            return None
        return cls(owner_pid=pid, acquired_at_millis=millis)


@dataclass(frozen=True)
class LockStatus:
    """Diagnostic view of a data directory's lock."""
    data_dir: Path
    marker_path: Path
    marker_exists: bool
    record: Optional[LockRecord]
    owner_alive: bool
    holders: Tuple[int, ...] = ()

    @property
    def stale(self) -> bool:
        """Marker present but its owner is gone (or it cannot be parsed)."""
        return self.marker_exists and not self.owner_alive

    def to_dict(self) -> dict:
        return {
            'data_dir': str(self.data_dir),
            'marker_path': str(self.marker_path),
            'marker_exists': self.marker_exists,
            'owner_pid': self.record.owner_pid if self.record else None,
            'acquired_at_millis': self.record.acquired_at_millis if self.record else None,
            'owner_alive': self.owner_alive,
            'stale': self.stale,
            'holders': list(self.holders),
        }


class LockHandle:
    """
    Proof of ownership of a data directory.

    Holds the marker's open descriptor until released. Release through
    DirectoryLockManager.release or by leaving the ``with`` block.
    """

    def __init__(self, manager: 'DirectoryLockManager', data_dir: Path, marker_path: Path,
                 record: LockRecord, fd: int, mode: str):
        self.manager = manager
        self.data_dir = data_dir
        self.marker_path = marker_path
        self.record = record
        self.fd = fd
        self.mode = mode
        self.released = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.manager.release(self)

    def __repr__(self):
        state = "released" if self.released else "held"
        return f"LockHandle({self.data_dir}, pid={self.record.owner_pid}, {self.mode}, {state})"


class DirectoryLockManager:
    """Acquires and releases exclusive locks on data directories."""

    # Attempts at publishing a fresh marker while others race us
    MAX_PUBLISH_ATTEMPTS = 5

    def __init__(self, config: Optional[Config] = None,
                 liveness: Callable[[int], bool] = is_alive):
        """
        Args:
            config: Configuration (lock suffix and mode)
            liveness: Probe deciding whether a recorded owner still runs
        """
        self.config = config or Config()
        self.liveness = liveness

    def marker_path(self, data_dir: PathLike) -> Path:
        """Sibling marker path for a data directory."""
        data_dir = Path(os.path.abspath(data_dir))
        return data_dir.with_name(data_dir.name + self.config.lock_suffix)

    def acquire(self, data_dir: PathLike) -> LockHandle:
        """
        Acquire the lock for data_dir.

        Args:
            data_dir: Data directory path (need not exist yet)

        Returns:
            LockHandle that must be released

        Raises:
            LockHeldError: If another live process holds the directory
        """
        data_dir = Path(os.path.abspath(data_dir))
        marker = self.marker_path(data_dir)
        marker.parent.mkdir(parents=True, exist_ok=True)

        if self.config.lock_mode == 'flock':
            return self._acquire_flock(data_dir, marker)
        return self._acquire_pid(data_dir, marker)

    def _acquire_pid(self, data_dir: Path, marker: Path) -> LockHandle:
        record = self._new_record()

        for _ in range(self.MAX_PUBLISH_ATTEMPTS):
            text = self._read_marker_text(marker)

            if text is None:
                if self._publish(marker, record):
                    break
                # Someone published first; re-read and judge their record
                continue

            existing = LockRecord.parse(text)
            if existing is not None and self._owner_alive(existing.owner_pid):
                logger.info(f"[LOCK] {data_dir} is held by PID {existing.owner_pid} - refusing")
                raise LockHeldError(existing.owner_pid, data_dir, marker)

            if existing is None:
                logger.warning(f"[LOCK] Reclaiming corrupt lock marker {marker}")
            else:
                logger.warning(f"[LOCK] Reclaiming stale lock of dead PID {existing.owner_pid} on {data_dir}")
            self._replace(marker, record)
            break
        else:
            holder = self.read_record(data_dir)
            raise LockHeldError(holder.owner_pid if holder else None, data_dir, marker)

        fd = os.open(marker, os.O_RDONLY)
        logger.debug(f"[LOCK] Acquired {data_dir} (pid mode)")
        return LockHandle(self, data_dir, marker, record, fd, 'pid')

    def _acquire_flock(self, data_dir: Path, marker: Path) -> LockHandle:
        if fcntl is None:
            raise RuntimeError("lock_mode 'flock' requires fcntl (POSIX only)")

        while True:
            fd = os.open(marker, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                holder = self.read_record(data_dir)
                holder_pid = holder.owner_pid if holder else None
                logger.info(f"[LOCK] {data_dir} is flock-held by PID {holder_pid} - refusing")
                raise LockHeldError(holder_pid, data_dir, marker)

            # The previous owner may have unlinked the marker between our
            # open and our flock; then we hold a lock on an orphaned inode.
            try:
                same_file = os.stat(marker).st_ino == os.fstat(fd).st_ino
            except FileNotFoundError:
                same_file = False
            if same_file:
                break
            os.close(fd)

        previous = LockRecord.parse(os.pread(fd, 4096, 0).decode('utf-8', errors='replace'))
        if previous is not None:
            logger.warning(f"[LOCK] Reclaiming stale lock of dead PID {previous.owner_pid} on {data_dir}")

        record = self._new_record()
        data = record.serialize().encode('utf-8')
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)
        os.fsync(fd)

        logger.debug(f"[LOCK] Acquired {data_dir} (flock mode)")
        return LockHandle(self, data_dir, marker, record, fd, 'flock')

    def release(self, handle: LockHandle):
        """
        Release a lock. Idempotent; a marker that is already gone counts as
        released, and a marker now recorded for a different PID is left alone.
        """
        if handle.released:
            return
        handle.released = True

        if handle.mode == 'flock':
            # Unlink while still holding the flock, then drop it
            self._unlink_if_ours(handle)
            self._close_fd(handle.fd)
        else:
            self._close_fd(handle.fd)
            self._unlink_if_ours(handle)

        logger.debug(f"[LOCK] Released {handle.data_dir}")

    def read_record(self, data_dir: PathLike) -> Optional[LockRecord]:
        """Read the current marker record (None if absent or corrupt)."""
        text = self._read_marker_text(self.marker_path(data_dir))
        return LockRecord.parse(text) if text is not None else None

    def inspect(self, data_dir: PathLike) -> LockStatus:
        """Report lock state for diagnostics without changing anything."""
        data_dir = Path(os.path.abspath(data_dir))
        marker = self.marker_path(data_dir)
        text = self._read_marker_text(marker)
        record = LockRecord.parse(text) if text is not None else None
        owner_alive = record is not None and self.liveness(record.owner_pid)

        return LockStatus(
            data_dir=data_dir,
            marker_path=marker,
            marker_exists=text is not None,
            record=record,
            owner_alive=owner_alive,
            holders=find_marker_holders(marker) if text is not None else ()
        )

    def _owner_alive(self, pid: int) -> bool:
        # Our own PID is a live holder: a second open in this process is refused
        return pid == os.getpid() or self.liveness(pid)

    @staticmethod
    def _new_record() -> LockRecord:
        return LockRecord(owner_pid=os.getpid(), acquired_at_millis=int(time.time() * 1000))

    @staticmethod
    def _read_marker_text(marker: Path) -> Optional[str]:
        try:
            return marker.read_text(encoding='utf-8', errors='replace')
        except FileNotFoundError:
            return None

    @staticmethod
    def _write_temp(marker: Path, record: LockRecord) -> Path:
        temp = marker.with_name(f"{marker.name}.{os.getpid()}.{uuid.uuid4().hex[:12]}.tmp")
        fd = os.open(temp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        try:
            os.write(fd, record.serialize().encode('utf-8'))
            os.fsync(fd)
        finally:
            os.close(fd)
        return temp

    def _publish(self, marker: Path, record: LockRecord) -> bool:
        """Atomically create the marker. False if another process won."""
        temp = self._write_temp(marker, record)
        try:
            os.link(temp, marker)
            return True
        except FileExistsError:
            return False
        finally:
            temp.unlink()

    def _replace(self, marker: Path, record: LockRecord):
        temp = self._write_temp(marker, record)
        try:
            os.replace(temp, marker)
        except OSError:
            temp.unlink()
            raise

    def _unlink_if_ours(self, handle: LockHandle):
        current = self.read_record(handle.data_dir)
        if current is None:
            if handle.marker_path.exists():
                logger.warning(f"[LOCK] Marker {handle.marker_path} became unreadable - leaving it")
            return
        if current.owner_pid != handle.record.owner_pid:
            logger.warning(f"[LOCK] Marker {handle.marker_path} now belongs to PID "
                           f"{current.owner_pid} - leaving it")
            return
        try:
            handle.marker_path.unlink()
        except FileNotFoundError:
            pass

    @staticmethod
    def _close_fd(fd: int):
        try:
            os.close(fd)
        except OSError as e:
            logger.debug(f"[LOCK] Closing marker descriptor failed: {e}")


def find_marker_holders(marker: Path) -> Tuple[int, ...]:
    """PIDs of processes that currently hold the marker file open."""
    target = os.path.abspath(marker)
    holders = []

    for proc in psutil.process_iter(['pid']):
        try:
            if any(f.path == target for f in proc.open_files()):
                holders.append(proc.pid)
        except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
            continue

    return tuple(holders)
