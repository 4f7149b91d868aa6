"""
Shared runtime for scenario worker programs.

A worker is started by the crash harness with its data directory, config
path and channel descriptors in the environment. It opens the directory
through the guarded open path, reports progress over the channel, and is
usually killed before it finishes.

Exit codes: 0 done, 1 unexpected error, 3 directory locked by another
live process, 4 directory could not be opened.
"""

import os
import sys
import logging
import traceback
from pathlib import Path
from typing import Callable, Optional

from core.config import Config
from core.dir_lock import LockHeldError
from core.engine import EngineHandle, open_data_dir
from core.logger import setup_worker_logging
from harness.ipc import (WorkerChannel, ChannelClosed, DATA_DIR_ENV, INSTANCE_ENV, CYCLE_ENV, PHASE_ENV,
                         EXIT_OK, EXIT_ERROR, EXIT_LOCK_HELD, EXIT_OPEN_FAILED)


logger = logging.getLogger(__name__)


class _OpenFailed(Exception):
    """The worker's own guarded open failed."""
    pass


class WorkerContext:
    """Everything a worker body needs."""

    def __init__(self, channel: WorkerChannel, config: Config, data_dir: Path):
        self.channel = channel
        self.config = config
        self.data_dir = data_dir
        self.instance_id = os.environ.get(INSTANCE_ENV, '0')
        self.cycle = int(os.environ.get(CYCLE_ENV, '0') or 0)
        # Empty for the first run of a scenario, the phase name for follow-up runs
        self.phase = os.environ.get(PHASE_ENV, '')
        self.db: Optional[EngineHandle] = None

    def send(self, message):
        self.channel.send(message)

    def env_flag(self, name: str) -> bool:
        return os.environ.get(name, '') not in ('', '0', 'false')

    def open(self, on_init_stage: Optional[Callable[[str], None]] = None) -> EngineHandle:
        """
        Open the data directory through the guarded open path.

        Lock conflicts and open failures end the worker with a dedicated
        exit code after reporting them over the channel.
        """
        try:
            self.db = open_data_dir(self.data_dir, config=self.config, on_init_stage=on_init_stage)
        except LockHeldError as e:
            logger.info(f"Directory locked by PID {e.holder_pid}")
            self.send(f"lock-held:{e.holder_pid}")
            raise
        except Exception as e:
            self.send(f"open-failed: {type(e).__name__}: {e}")
            raise _OpenFailed(str(e)) from e
        return self.db


def run_worker(body: Callable[[WorkerContext], None]) -> int:
    """
    Run a worker body and map its outcome to an exit code.

    Returns:
        Process exit code
    """
    setup_worker_logging()

    data_dir = os.environ.get(DATA_DIR_ENV)
    if not data_dir:
        logger.error(f"{DATA_DIR_ENV} not set")
        return EXIT_ERROR

    channel = WorkerChannel.from_env()
    ctx = WorkerContext(channel, Config.from_env(), Path(data_dir))

    try:
        body(ctx)
        return EXIT_OK
    except LockHeldError:
        return EXIT_LOCK_HELD
    except _OpenFailed as e:
        logger.error(f"Open failed: {e}")
        return EXIT_OPEN_FAILED
    except ChannelClosed:
        logger.warning("Coordinator went away")
        return EXIT_ERROR
    except Exception as e:
        logger.error(f"Worker error: {e}\n{traceback.format_exc()}")
        try:
            channel.send(f"error: {e}")
        except (ChannelClosed, OSError):
            pass
        return EXIT_ERROR
    finally:
        if ctx.db is not None:
            ctx.db.close()
        channel.close()


def main(body: Callable[[WorkerContext], None]):
    sys.exit(run_worker(body))
