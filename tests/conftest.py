"""
Pytest configuration and fixtures for crashguard tests.
"""

import pytest
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import Config


@pytest.fixture
def config(tmp_path):
    """Default config with scenario directories and logs under tmp_path."""
    cfg = Config()
    cfg.set('work_root', str(tmp_path / 'work'))
    cfg.set('log_folder', str(tmp_path / 'logs'))
    return cfg


@pytest.fixture
def data_dir(tmp_path):
    """A data directory path that does not exist yet."""
    return tmp_path / 'data'


@pytest.fixture
def dead_pid():
    """A PID that is guaranteed not to be running: a reaped child's."""
    import subprocess
    proc = subprocess.Popen([sys.executable, '-c', 'pass'])
    proc.wait()
    return proc.pid
