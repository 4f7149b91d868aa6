"""
Guarded open path for the wrapped engine.

The engine is SQLite laid out as a data directory:

    <data_dir>/
        global/control      cluster control file
        VERSION             version marker, written once init is under way
        base/1/             template database
        base/4/             frozen template database
        base/5/data.db      user database (WAL mode, -wal/-shm beside it)

Every open goes through ``open_data_dir``: acquire the directory lock,
create the directory, quarantine a partial initialization, initialize an
empty directory, then connect. Nothing here reimplements SQLite's WAL or
checkpoint logic.
"""

import os
import time
import sqlite3
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from core.config import Config
from core.dir_lock import DirectoryLockManager, LockHandle
from core.partial_init import PartialInitDetector, QuarantineRecord


logger = logging.getLogger(__name__)

# Overrides init_step_delay_ms for a single process (kill-during-init workers)
INIT_DELAY_ENV_VAR = 'CRASHGUARD_INIT_STEP_DELAY_MS'

ENGINE_VERSION = '1'
TEMPLATE_DB_OID = '1'
FROZEN_TEMPLATE_DB_OID = '4'
USER_DB_OID = '5'
USER_DB_NAME = 'data.db'
# Catalog table every database of a data directory carries
ENGINE_META_TABLE = 'engine_meta'

StageCallback = Callable[[str], None]


class EngineError(Exception):
    """Raised when the engine cannot open or use a data directory."""
    pass


def user_db_path(data_dir: Union[str, Path], config: Optional[Config] = None) -> Path:
    """Path of the user database file inside a data directory."""
    config = config or Config()
    return Path(data_dir) / config.storage_subdir / USER_DB_OID / USER_DB_NAME


class EngineHandle:
    """
    An open data directory.

    Owns the directory lock for its lifetime; ``close`` releases it.
    Queries run in autocommit mode, so explicit BEGIN/COMMIT/ROLLBACK
    statements control transactions.
    """

    def __init__(self, data_dir: Path, connection: sqlite3.Connection, lock: LockHandle,
                 lock_manager: DirectoryLockManager, quarantine: Optional[QuarantineRecord] = None):
        self.data_dir = data_dir
        self.connection = connection
        self.lock = lock
        self.lock_manager = lock_manager
        self.quarantine = quarantine
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def query(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        """
        Run one statement and return all result rows.

        Raises:
            EngineError: If the handle is closed
            sqlite3.Error: If the engine rejects the statement
        """
        if self._closed:
            raise EngineError(f"Handle for {self.data_dir} is closed")
        cursor = self.connection.execute(sql, params)
        try:
            return cursor.fetchall()
        finally:
            cursor.close()

    def query_many(self, sql: str, rows: Sequence[Sequence]):
        """Run one statement for every parameter row."""
        if self._closed:
            raise EngineError(f"Handle for {self.data_dir} is closed")
        self.connection.executemany(sql, rows)

    def close(self):
        """Close the connection and release the lock. Best-effort, idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self.connection.close()
        except sqlite3.Error as e:
            logger.warning(f"Closing {self.data_dir} failed: {e}")
        finally:
            self.lock_manager.release(self.lock)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _step_delay_ms(config: Config) -> int:
    override = os.environ.get(INIT_DELAY_ENV_VAR)
    if override:
        try:
            return max(int(override), 0)
        except ValueError:
            logger.warning(f"Ignoring invalid {INIT_DELAY_ENV_VAR}={override!r}")
    return config.init_step_delay_ms


def initialize_data_dir(data_dir: Path, config: Optional[Config] = None,
                        on_stage: Optional[StageCallback] = None):
    """
    First-time initialization of an empty data directory.

    Stages run in order: control, marker, base, template databases, user
    database. A kill between stages leaves a partial directory. The user
    database is built in a staging directory and renamed into place last,
    so a storage subdirectory with every entry present always has a
    complete user database.

    Args:
        data_dir: Existing, empty data directory
        config: Layout configuration
        on_stage: Called with each stage name once the stage is on disk
    """
    config = config or Config()
    delay = _step_delay_ms(config) / 1000.0
    storage = data_dir / config.storage_subdir

    def stage(name: str):
        logger.debug(f"[INIT] {data_dir}: {name}")
        if on_stage is not None:
            on_stage(name)
        if delay:
            time.sleep(delay)

    (data_dir / 'global').mkdir(exist_ok=True)
    (data_dir / 'global' / 'control').write_text(f"engine {ENGINE_VERSION}\n")
    stage('control')

    (data_dir / config.version_marker).write_text(f"{ENGINE_VERSION}\n")
    stage('marker')

    storage.mkdir(exist_ok=True)
    stage('base')

    for oid in (TEMPLATE_DB_OID, FROZEN_TEMPLATE_DB_OID):
        _create_database(storage / oid)
        stage(f'template-{oid}')

    staging = data_dir / f'.init-{USER_DB_OID}'
    _create_database(staging)
    os.rename(staging, storage / USER_DB_OID)
    stage('user-db')


def _create_database(directory: Path):
    directory.mkdir(exist_ok=True)
    conn = sqlite3.connect(str(directory / USER_DB_NAME))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"CREATE TABLE IF NOT EXISTS {ENGINE_META_TABLE} (key TEXT PRIMARY KEY, value TEXT)")
        conn.execute(f"INSERT OR REPLACE INTO {ENGINE_META_TABLE} VALUES ('version', ?)", (ENGINE_VERSION,))
        conn.commit()
    finally:
        conn.close()


def open_data_dir(
    data_dir: Union[str, Path],
    config: Optional[Config] = None,
    lock_manager: Optional[DirectoryLockManager] = None,
    detector: Optional[PartialInitDetector] = None,
    on_init_stage: Optional[StageCallback] = None
) -> EngineHandle:
    """
    Open a data directory through the crash-safety guard.

    Args:
        data_dir: Data directory (created if missing)
        config: Configuration
        lock_manager: Lock manager (built from config if None)
        detector: Partial-init detector (built from config if None)
        on_init_stage: Stage callback for first-time initialization

    Returns:
        EngineHandle owning the directory lock

    Raises:
        LockHeldError: If another live process holds the directory
        EngineError: If the directory cannot be opened
    """
    config = config or Config()
    lock_manager = lock_manager or DirectoryLockManager(config)
    detector = detector or PartialInitDetector(config)
    data_dir = Path(os.path.abspath(data_dir))

    lock = lock_manager.acquire(data_dir)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        quarantine = detector.check_and_quarantine(data_dir)

        try:
            is_empty = not any(data_dir.iterdir())
        except OSError as e:
            raise EngineError(f"Cannot read data directory {data_dir}: {e}") from e

        if is_empty:
            logger.info(f"[INIT] Initializing fresh data directory {data_dir}")
            initialize_data_dir(data_dir, config, on_init_stage)

        db_path = user_db_path(data_dir, config)
        if not db_path.exists():
            raise EngineError(f"User database missing from {data_dir} ({db_path.relative_to(data_dir)})")

        try:
            conn = sqlite3.connect(
                f"file:{db_path}?mode=rw",
                uri=True,
                isolation_level=None,
                check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(config.busy_timeout_ms)}")
        except sqlite3.Error as e:
            raise EngineError(f"Cannot open {db_path}: {e}") from e
    except BaseException:
        lock_manager.release(lock)
        raise

    return EngineHandle(data_dir, conn, lock, lock_manager, quarantine)
