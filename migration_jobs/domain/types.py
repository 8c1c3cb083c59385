"""
migration_jobs.domain.types -- Job lifecycle types and the phase table.

ZERO I/O.  Frozen dataclasses with enum phase fields and tuples for
immutable collections.

Invariants enforced:
    - Phases only move along TRANSITIONS; terminal phases have no exits.
    - Counters never decrease through ``incremented``; they move backwards
      only when a phase restarts from a checkpoint snapshot.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from migration_ingestion.domain.types import MigrationScope
from migration_kernel.domain.dtos import Severity


# =============================================================================
# Phases
# =============================================================================


class Phase(str, Enum):
    PENDING = "pending"  # Submitted, not yet started
    DISCOVERY = "discovery"  # Rule sets resolved, sources probed
    EXTRACTION = "extraction"  # Raw records staged
    TRANSFORMATION = "transformation"  # Canonical candidates staged
    VALIDATION = "validation"  # Per-record validation staged
    IMPORT = "import"  # Valid records written to the destination
    VERIFICATION = "verification"  # Reconciliation
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


WORKING_PHASES: tuple[Phase, ...] = (
    Phase.DISCOVERY,
    Phase.EXTRACTION,
    Phase.TRANSFORMATION,
    Phase.VALIDATION,
    Phase.IMPORT,
    Phase.VERIFICATION,
)

TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.CANCELED})


def _build_transitions() -> dict[Phase, frozenset[Phase]]:
    table: dict[Phase, frozenset[Phase]] = {
        Phase.PENDING: frozenset({Phase.DISCOVERY, Phase.CANCELED}),
    }
    successors = WORKING_PHASES[1:] + (Phase.COMPLETED,)
    for phase, successor in zip(WORKING_PHASES, successors):
        table[phase] = frozenset({successor, Phase.FAILED, Phase.CANCELED})
    for phase in TERMINAL_PHASES:
        table[phase] = frozenset()
    return table


TRANSITIONS: dict[Phase, frozenset[Phase]] = _build_transitions()


def can_transition(from_phase: Phase, to_phase: Phase) -> bool:
    return to_phase in TRANSITIONS[from_phase]


def next_phase(phase: Phase) -> Phase | None:
    """The working successor of ``phase``, or None for terminal phases."""
    if phase == Phase.PENDING:
        return Phase.DISCOVERY
    if phase in WORKING_PHASES:
        index = WORKING_PHASES.index(phase)
        return WORKING_PHASES[index + 1] if index + 1 < len(WORKING_PHASES) else Phase.COMPLETED
    return None


class JobStatus(str, Enum):
    """Coarse status derived from the phase."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


def status_for(phase: Phase) -> JobStatus:
    if phase == Phase.PENDING:
        return JobStatus.PENDING
    if phase == Phase.COMPLETED:
        return JobStatus.COMPLETED
    if phase == Phase.FAILED:
        return JobStatus.FAILED
    if phase == Phase.CANCELED:
        return JobStatus.CANCELED
    return JobStatus.RUNNING


# =============================================================================
# Counters and progress
# =============================================================================


COUNTER_NAMES = (
    "discovered",
    "extracted",
    "transformed",
    "validated",
    "imported",
    "failed",
    "warnings",
    "retries",
)


@dataclass(frozen=True)
class JobCounters:
    discovered: int = 0  # records the sources reported
    extracted: int = 0  # raw records staged
    transformed: int = 0  # records mapped to a canonical candidate
    validated: int = 0  # records that passed validation
    imported: int = 0  # records committed at the destination
    failed: int = 0  # records rejected at any phase
    warnings: int = 0
    retries: int = 0  # transient retries across sources and batches

    def incremented(self, name: str, n: int = 1) -> JobCounters:
        if name not in COUNTER_NAMES:
            raise ValueError(f"unknown counter {name!r}")
        if n < 0:
            raise ValueError(f"counter {name} cannot decrease (n={n})")
        return replace(self, **{name: getattr(self, name) + n})

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobCounters:
        data = data or {}
        return cls(**{name: int(data.get(name, 0)) for name in COUNTER_NAMES})


@dataclass(frozen=True)
class PhaseProgress:
    phase: Phase
    processed: int = 0
    estimated_total: int | None = None
    errors: int = 0
    warnings: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "processed": self.processed,
            "estimated_total": self.estimated_total,
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseProgress:
        return cls(
            phase=Phase(data["phase"]),
            processed=data.get("processed", 0),
            estimated_total=data.get("estimated_total"),
            errors=data.get("errors", 0),
            warnings=data.get("warnings", 0),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


# =============================================================================
# Job
# =============================================================================


@dataclass(frozen=True)
class MigrationJob:
    """
    Immutable snapshot of a migration job.

    ``active_phase`` remembers the last working phase, so a failed or
    canceled job still shows where it stopped.
    """

    job_id: str
    source_system: str
    scope: MigrationScope
    rule_set_id: str | None
    phase: Phase
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    counters: JobCounters = field(default_factory=JobCounters)
    progress: tuple[PhaseProgress, ...] = ()
    error_summary: str | None = None
    active_phase: Phase | None = None
    correlation_id: str | None = None

    @property
    def status(self) -> JobStatus:
        return status_for(self.phase)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def progress_for(self, phase: Phase) -> PhaseProgress | None:
        for item in self.progress:
            if item.phase == phase:
                return item
        return None


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable resume point.

    ``sequence`` -1 marks the start of ``phase``; a non-negative sequence is
    the last contiguously committed import batch, with ``records_through``
    valid records covered.
    """

    job_id: str
    phase: Phase
    sequence: int
    records_through: int
    counters: JobCounters
    recorded_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_phase_start(self) -> bool:
        return self.sequence < 0


@dataclass(frozen=True)
class JobErrorRecord:
    """One persisted error or warning, attributed to record, batch and phase."""

    job_id: str
    phase: Phase
    code: str
    message: str
    severity: Severity = Severity.ERROR
    external_id: str | None = None
    batch_sequence: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime | None = None


# =============================================================================
# Events
# =============================================================================


class JobEventType(str, Enum):
    JOB_SUBMITTED = "job_submitted"
    PHASE_ENTERED = "phase_entered"
    PHASE_COMPLETED = "phase_completed"
    PROGRESS = "progress"
    CHECKPOINT_SAVED = "checkpoint_saved"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELED = "job_canceled"


@dataclass(frozen=True)
class JobEvent:
    event_type: JobEventType
    job_id: str
    phase: Phase
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
