"""
Fault Injection Framework

Context managers that make the verification side of crashguard misbehave
in specific ways: opens that hang, directories that cannot be listed and
storage that refuses writes.
"""

import os
import sqlite3
import threading
from pathlib import Path
from unittest.mock import patch
from typing import Optional


class HangingOpenInjector:
    """
    Makes the guarded open hang until released.

    Usage:
        with HangingOpenInjector() as hang:
            result = pipeline.try_open(data_dir, timeout_ms=200)
            hang.release()
    """

    def __init__(self, hang_seconds: float = 10.0):
        """
        Initialize hanging open injector.

        Args:
            hang_seconds: Upper bound on the hang if release() is never called
        """
        self.hang_seconds = hang_seconds
        self.released = threading.Event()
        self.opened = threading.Event()
        self.patcher = None

    def __enter__(self):
        from harness import verification

        original_open = verification.open_data_dir

        def hanging_open(data_dir, *args, **kwargs):
            self.released.wait(self.hang_seconds)
            handle = original_open(data_dir, *args, **kwargs)
            self.opened.set()
            return handle

        self.patcher = patch.object(verification, 'open_data_dir', side_effect=hanging_open)
        self.patcher.__enter__()
        return self

    def release(self):
        self.released.set()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        if self.patcher:
            self.patcher.__exit__(exc_type, exc_val, exc_tb)
        return False


class PermissionDeniedInjector:
    """
    Simulates a data directory that cannot be listed.

    Both os.listdir and Path.iterdir raise PermissionError for the
    protected path; every other path behaves normally.
    """

    def __init__(self, path: Path):
        self.protected_path = Path(os.path.abspath(path))
        self.patchers = []

    def _guard(self, target) -> bool:
        return Path(os.path.abspath(target)) == self.protected_path

    def __enter__(self):
        original_listdir = os.listdir
        original_iterdir = Path.iterdir
        injector = self

        def guarded_listdir(path='.'):
            if injector._guard(path):
                raise PermissionError(13, "Permission denied", str(path))
            return original_listdir(path)

        def guarded_iterdir(self):
            if injector._guard(self):
                raise PermissionError(13, "Permission denied", str(self))
            return original_iterdir(self)

        self.patchers.append(patch('os.listdir', side_effect=guarded_listdir))
        self.patchers.append(patch.object(Path, 'iterdir', guarded_iterdir))

        for patcher in self.patchers:
            patcher.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for patcher in reversed(self.patchers):
            patcher.__exit__(exc_type, exc_val, exc_tb)
        return False


class DiskFullInjector:
    """
    Simulates storage that rejects writes.

    Statements starting with one of the write verbs raise the error SQLite
    reports for a full disk; reads keep working.

    Usage:
        with DiskFullInjector():
            probe = pipeline.write_probe(handle)
    """

    WRITE_VERBS = ('CREATE', 'INSERT', 'UPDATE', 'DELETE')

    def __init__(self, verbs: Optional[tuple] = None):
        self.verbs = verbs or self.WRITE_VERBS
        self.rejected = []
        self.patcher = None

    def __enter__(self):
        from core.engine import EngineHandle

        original_query = EngineHandle.query
        injector = self

        def full_query(self, sql, params=()):
            if sql.lstrip().upper().startswith(injector.verbs):
                injector.rejected.append(sql)
                raise sqlite3.OperationalError("database or disk is full")
            return original_query(self, sql, params)

        self.patcher = patch.object(EngineHandle, 'query', full_query)
        self.patcher.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.patcher:
            self.patcher.__exit__(exc_type, exc_val, exc_tb)
        return False
