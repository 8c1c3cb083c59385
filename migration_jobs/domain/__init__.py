"""Pure job lifecycle types. ZERO I/O."""

from migration_jobs.domain.types import (
    COUNTER_NAMES,
    TERMINAL_PHASES,
    TRANSITIONS,
    WORKING_PHASES,
    Checkpoint,
    JobCounters,
    JobErrorRecord,
    JobEvent,
    JobEventType,
    JobStatus,
    MigrationJob,
    Phase,
    PhaseProgress,
    can_transition,
    next_phase,
    status_for,
)

__all__ = [
    "COUNTER_NAMES",
    "TERMINAL_PHASES",
    "TRANSITIONS",
    "WORKING_PHASES",
    "Checkpoint",
    "JobCounters",
    "JobErrorRecord",
    "JobEvent",
    "JobEventType",
    "JobStatus",
    "MigrationJob",
    "Phase",
    "PhaseProgress",
    "can_transition",
    "next_phase",
    "status_for",
]
