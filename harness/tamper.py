"""
Direct file tampering on a crashed data directory.

Simulates damage a kill alone cannot produce (torn writes, lost files,
media errors): truncate, delete, zero a byte range, flip bits. Tampering
is always applied to a copy of a golden crashed directory so each attack
starts from the same state. Random choices take a seed so runs repeat.
"""

import os
import random
import shutil
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from core.config import Config
from core.engine import user_db_path


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class TamperRecord:
    """What was done to which file."""
    path: Path
    action: str
    size_before: int
    size_after: int
    detail: str = ''


def primary_storage_file(data_dir: PathLike, config: Optional[Config] = None) -> Path:
    """The user database file of a data directory."""
    return user_db_path(data_dir, config)


def wal_file(data_dir: PathLike, config: Optional[Config] = None) -> Path:
    """The write-ahead log beside the user database."""
    db = user_db_path(data_dir, config)
    return db.with_name(db.name + '-wal')


def copy_data_dir(source: PathLike, destination: PathLike) -> Path:
    """Copy a data directory (without its lock marker) to a fresh path."""
    destination = Path(destination)
    if destination.exists():
        raise FileExistsError(f"Refusing to overwrite {destination}")
    shutil.copytree(source, destination)
    return destination


def _size(path: Path) -> int:
    return path.stat().st_size


def truncate_file(path: PathLike, size: int = 0) -> TamperRecord:
    """Truncate path to size bytes (0 empties it)."""
    path = Path(path)
    before = _size(path)
    new_size = min(max(size, 0), before)
    with open(path, 'r+b') as f:
        f.truncate(new_size)
        f.flush()
        os.fsync(f.fileno())
    logger.info(f"[TAMPER] Truncated {path.name} from {before} to {new_size} bytes")
    return TamperRecord(path, 'truncate', before, new_size)


def delete_file(path: PathLike) -> TamperRecord:
    """Remove a file outright."""
    path = Path(path)
    before = _size(path)
    path.unlink()
    logger.info(f"[TAMPER] Deleted {path.name} ({before} bytes)")
    return TamperRecord(path, 'delete', before, 0)


def zero_range(path: PathLike, offset: Optional[int] = None, length: Optional[int] = None,
               seed: int = 0) -> TamperRecord:
    """
    Overwrite a byte range with zeros.

    Args:
        path: File to damage
        offset: Start of the range (random when None)
        length: Range length (1% of the file, at least one byte, when None)
        seed: Seed for the random offset
    """
    path = Path(path)
    size = _size(path)
    if size == 0:
        return TamperRecord(path, 'zero_range', 0, 0, 'empty file')

    rng = random.Random(seed)
    start = rng.randrange(size) if offset is None else min(max(offset, 0), size - 1)
    count = max(1, size // 100) if length is None else max(length, 1)
    count = min(count, size - start)

    with open(path, 'r+b') as f:
        f.seek(start)
        f.write(b'\x00' * count)
        f.flush()
        os.fsync(f.fileno())

    logger.info(f"[TAMPER] Zeroed {count} bytes of {path.name} at offset {start}")
    return TamperRecord(path, 'zero_range', size, size, f"offset={start} length={count}")


def flip_bits(path: PathLike, flips: Optional[int] = None, seed: int = 0,
              skip_header: int = 0) -> TamperRecord:
    """
    Flip random single bits.

    Args:
        path: File to damage
        flips: Number of bits to flip (about one per 4KB page when None)
        seed: Seed for the positions
        skip_header: Leave the first N bytes alone
    """
    path = Path(path)
    data = bytearray(path.read_bytes())
    size = len(data)
    if size <= skip_header:
        return TamperRecord(path, 'flip_bits', size, size, 'nothing to flip')

    rng = random.Random(seed)
    count = max(1, size // 4096) if flips is None else max(flips, 1)
    for _ in range(count):
        i = rng.randrange(skip_header, size)
        data[i] ^= 1 << rng.randrange(8)

    with open(path, 'r+b') as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())

    logger.info(f"[TAMPER] Flipped {count} bit(s) in {path.name}")
    return TamperRecord(path, 'flip_bits', size, size, f"flips={count} seed={seed}")
