"""
Progress bar for multi-cycle scenario runs.
"""

import threading
from tqdm import tqdm
from typing import Optional


class ProgressTracker:
    """
    tqdm bar for rapid kill cycles.

    The bar is transient (``leave=False``) so the run summary printed after
    it is not interleaved with a finished bar. Disabled trackers accept
    every call and draw nothing, which keeps ``--json`` output clean.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.pbar: Optional[tqdm] = None
        self._lock = threading.Lock()

    def start(self, total: int, desc: str = "Running", unit: str = "cycle"):
        if not self.enabled:
            return
        with self._lock:
            self.pbar = tqdm(total=total, desc=desc, unit=unit, leave=False)

    def update(self, n: int = 1, desc: Optional[str] = None, status: Optional[str] = None):
        """
        Advance the bar.

        Args:
            n: Completed cycles
            desc: Replacement description
            status: Short text shown after the counter, e.g. how the last worker ended
        """
        with self._lock:
            if self.pbar is None:
                return
            if desc:
                self.pbar.set_description(desc)
            if status:
                self.pbar.set_postfix_str(status)
            self.pbar.update(n)

    def close(self):
        with self._lock:
            if self.pbar is not None:
                self.pbar.close()
                self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
