"""
migration_jobs -- Job lifecycle: phase state machine, counters, checkpoints,
persisted errors and lifecycle events.
"""

from migration_jobs.domain.types import (
    TRANSITIONS,
    Checkpoint,
    JobCounters,
    JobErrorRecord,
    JobEvent,
    JobEventType,
    JobStatus,
    MigrationJob,
    Phase,
    PhaseProgress,
)
from migration_jobs.events import EventDispatcher
from migration_jobs.store import InMemoryJobStore, JobStore, SqlJobStore
from migration_jobs.tracker import JobTracker

__all__ = [
    "TRANSITIONS",
    "Checkpoint",
    "EventDispatcher",
    "InMemoryJobStore",
    "JobCounters",
    "JobErrorRecord",
    "JobEvent",
    "JobEventType",
    "JobStatus",
    "JobStore",
    "JobTracker",
    "MigrationJob",
    "Phase",
    "PhaseProgress",
    "SqlJobStore",
]
