"""
crashguard core
Directory lock, partial-init quarantine and the guarded engine open path.
"""

from .config import Config
from .logger import setup_logging
from .liveness import is_alive
from .dir_lock import DirectoryLockManager, LockHandle, LockHeldError, LockRecord, LockStatus
from .partial_init import PartialInitDetector, PartialInitQuarantined, QuarantineRecord
from .engine import EngineError, EngineHandle, open_data_dir

__all__ = [
    'Config',
    'setup_logging',
    'is_alive',
    'DirectoryLockManager',
    'LockHandle',
    'LockHeldError',
    'LockRecord',
    'LockStatus',
    'PartialInitDetector',
    'PartialInitQuarantined',
    'QuarantineRecord',
    'EngineError',
    'EngineHandle',
    'open_data_dir'
]
