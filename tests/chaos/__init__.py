"""
Chaos Testing Infrastructure

Runs real kill scenarios end to end and injects faults into the
verification side, one failure mode at a time. The invariants checked
here are the ones the rest of the suite checks piecewise: committed data
survives a kill, a second instance is refused, damage is detected, and a
failed or abandoned open never leaves the directory locked.
"""

from .fault_injectors import (
    DiskFullInjector,
    HangingOpenInjector,
    PermissionDeniedInjector,
)

__all__ = [
    'DiskFullInjector',
    'HangingOpenInjector',
    'PermissionDeniedInjector',
]
