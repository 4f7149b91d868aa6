"""
Log files for the crashguard CLI and stderr logging for workers.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Union

LOG_PREFIX = 'crashguard-'
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
WORKER_LOG_FORMAT = "%(asctime)s - worker[%(process)d] - %(levelname)s - %(message)s"


def setup_logging(log_folder: Union[str, Path] = 'logs', max_log_files: int = 5) -> Path:
    """
    Attach a timestamped log file to the root logger.

    Older crashguard logs beyond max_log_files (counting the new one) are
    removed first.

    Args:
        log_folder: Directory for log files, created if missing
        max_log_files: How many log files to keep

    Returns:
        Path to the new log file

    Raises:
        OSError: If the folder or file cannot be created
    """
    folder = Path(log_folder)
    folder.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = folder / f'{LOG_PREFIX}{stamp}.log'

    cleanup_old_logs(folder, max_log_files - 1)

    handler = logging.FileHandler(log_file, encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(handler)

    return log_file


def setup_worker_logging(level: int = logging.INFO):
    """
    Configure logging inside a worker process.

    Workers log to stderr; the harness captures the stream into the
    worker's handle.
    """
    logging.basicConfig(stream=sys.stderr, level=level, format=WORKER_LOG_FORMAT)


def cleanup_old_logs(logs_folder: Path, max_files: int):
    """Delete the oldest crashguard logs until at most max_files remain."""
    logs = sorted(Path(logs_folder).glob(f'{LOG_PREFIX}*.log'))
    excess = len(logs) - max(max_files, 0)
    for old in logs[:max(excess, 0)]:
        try:
            old.unlink()
        except OSError as e:
            logging.warning(f"Could not remove old log file {old.name}: {e}")
