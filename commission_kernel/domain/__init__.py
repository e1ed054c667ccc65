"""
Pure domain layer.

Records, enums, allocation math, workflows and the clock.  No ORM, no
database and no I/O.
"""

from commission_kernel.domain.allocation import (
    AllocationMethod,
    AllocationResult,
    AllocationTarget,
    allocate,
)
from commission_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "AllocationMethod",
    "AllocationResult",
    "AllocationTarget",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "allocate",
]
