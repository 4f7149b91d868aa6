"""
Detection and quarantine of partially initialized data directories.

First-time initialization writes the data directory in stages. A process
killed part way leaves a directory the engine can never open. Such a
directory is renamed to a timestamped backup and replaced by an empty
directory so the next open initializes from scratch.

The completeness test is a heuristic tied to the engine's layout: the
version marker must exist and the storage subdirectory must hold at least
``min_storage_entries`` entries. All three values come from configuration.
"""

import os
import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from core.config import Config
from utils.error_messages import format_quarantine_notice


logger = logging.getLogger(__name__)


class PartialInitQuarantined(UserWarning):
    """Informational: a partially initialized directory was moved aside."""


@dataclass(frozen=True)
class DirectoryInitState:
    """Derived initialization state of a data directory."""
    exists: bool
    is_empty: bool
    has_version_marker: bool
    storage_entry_count: int
    min_storage_entries: int

    @property
    def fully_initialized(self) -> bool:
        return self.has_version_marker and self.storage_entry_count >= self.min_storage_entries

    @property
    def partial(self) -> bool:
        """Has content but is not fully initialized."""
        return self.exists and not self.is_empty and not self.fully_initialized

    def to_dict(self) -> dict:
        return {
            'exists': self.exists,
            'is_empty': self.is_empty,
            'has_version_marker': self.has_version_marker,
            'storage_entry_count': self.storage_entry_count,
            'fully_initialized': self.fully_initialized,
            'partial': self.partial,
        }


@dataclass(frozen=True)
class QuarantineRecord:
    original_path: Path
    backup_path: Path
    created_at: datetime
    state: DirectoryInitState


class PartialInitDetector:
    """Checks a data directory before the engine opens it."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    def inspect(self, data_dir: Union[str, Path]) -> DirectoryInitState:
        """
        Derive the initialization state without acting on it.

        Raises:
            OSError: If the directory exists but cannot be listed
        """
        data_dir = Path(data_dir)
        if not data_dir.exists():
            return self._state(exists=False, is_empty=True, marker=False, count=0)

        entries = os.listdir(data_dir)
        if not entries:
            return self._state(exists=True, is_empty=True, marker=False, count=0)

        marker = (data_dir / self.config.version_marker).exists()
        storage = data_dir / self.config.storage_subdir
        count = len(os.listdir(storage)) if storage.is_dir() else 0

        return self._state(exists=True, is_empty=False, marker=marker, count=count)

    def check_and_quarantine(self, data_dir: Union[str, Path]) -> Optional[QuarantineRecord]:
        """
        Quarantine data_dir if it is partially initialized.

        Empty or missing directories are left alone. If the directory
        cannot be listed, nothing is done and the engine reports the
        problem on open.

        Returns:
            QuarantineRecord if the directory was moved aside, else None
        """
        data_dir = Path(os.path.abspath(data_dir))

        try:
            state = self.inspect(data_dir)
        except OSError as e:
            logger.debug(f"[INIT] Cannot inspect {data_dir} ({e}) - leaving it to the engine")
            return None

        if not state.partial:
            return None

        return self._quarantine(data_dir, state)

    def _quarantine(self, data_dir: Path, state: DirectoryInitState) -> QuarantineRecord:
        created_at = datetime.now(timezone.utc)
        backup = self._backup_path(data_dir, created_at)

        os.rename(data_dir, backup)
        data_dir.mkdir()

        notice = format_quarantine_notice(data_dir, backup)
        logger.warning(f"[INIT] {notice}")
        warnings.warn(notice, PartialInitQuarantined, stacklevel=3)

        return QuarantineRecord(
            original_path=data_dir,
            backup_path=backup,
            created_at=created_at,
            state=state
        )

    def _backup_path(self, data_dir: Path, created_at: datetime) -> Path:
        # ISO timestamp with ':' and '.' replaced so it is a valid file name
        stamp = created_at.strftime('%Y-%m-%dT%H-%M-%S-%f')[:-3] + 'Z'
        base = f"{data_dir}{self.config.quarantine_suffix}-{stamp}"
        candidate = Path(base)
        counter = 1
        while candidate.exists():
            candidate = Path(f"{base}-{counter}")
            counter += 1
        return candidate

    def _state(self, exists: bool, is_empty: bool, marker: bool, count: int) -> DirectoryInitState:
        return DirectoryInitState(
            exists=exists,
            is_empty=is_empty,
            has_version_marker=marker,
            storage_entry_count=count,
            min_storage_entries=self.config.min_storage_entries
        )
