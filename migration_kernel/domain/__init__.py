"""
Pure domain layer for the migration kernel.

No ORM, database, or I/O dependencies. All objects are immutable.
"""

from migration_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from migration_kernel.domain.dtos import Severity, ValidationIssue

__all__ = [
    "Clock",
    "DeterministicClock",
    "Severity",
    "SystemClock",
    "ValidationIssue",
]
