"""
crashguard utilities
Timeouts, input validation, error text and progress display.
"""

from .progress import ProgressTracker

__all__ = ['ProgressTracker']
