"""
ORM models for migration job persistence.

Contract:
    MigrationJobModel, CheckpointModel, JobErrorModel and
    ReconciliationReportModel persist job state, resume points, attributed
    errors and reconciliation proof.  Each has ``to_dto()`` / ``from_dto()``
    round-trip methods.

Architecture: migration_jobs/models.  Imports from migration_kernel.db.base
    and pure domain types only.

Invariants enforced:
    - ``job_id`` is UNIQUE on MigrationJobModel and ReconciliationReportModel
      (one proof per job).
    - ``position`` orders checkpoints and errors per job independent of
      clock resolution.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from migration_ingestion.domain.codec import decode_fields, encode_fields
from migration_kernel.db.base import TimestampedBase

if TYPE_CHECKING:
    from migration_jobs.domain.types import Checkpoint, JobErrorRecord, MigrationJob


class MigrationJobModel(TimestampedBase):
    """Persistent migration job record."""

    __tablename__ = "migration_jobs"

    __table_args__ = (
        Index("ix_migration_jobs_phase", "phase"),
        Index("ix_migration_jobs_submitted_at", "submitted_at"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    source_system: Mapped[str] = mapped_column(String(200), nullable=False)
    scope: Mapped[dict] = mapped_column(JSON, nullable=False)
    rule_set_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    active_phase: Mapped[str | None] = mapped_column(String(32), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    counters: Mapped[dict] = mapped_column(JSON, nullable=False)
    progress: Mapped[list | None] = mapped_column(JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def to_dto(self) -> MigrationJob:
        from migration_ingestion.domain.types import MigrationScope
        from migration_jobs.domain.types import JobCounters, MigrationJob, Phase, PhaseProgress

        return MigrationJob(
            job_id=self.job_id,
            source_system=self.source_system,
            scope=MigrationScope.from_dict(self.scope),
            rule_set_id=self.rule_set_id,
            phase=Phase(self.phase),
            created_at=self.submitted_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            counters=JobCounters.from_dict(self.counters),
            progress=tuple(PhaseProgress.from_dict(p) for p in self.progress or ()),
            error_summary=self.error_summary,
            active_phase=Phase(self.active_phase) if self.active_phase else None,
            correlation_id=self.correlation_id,
        )

    def update_from(self, dto: MigrationJob) -> None:
        self.source_system = dto.source_system
        self.scope = dto.scope.to_dict()
        self.rule_set_id = dto.rule_set_id
        self.phase = dto.phase.value
        self.active_phase = dto.active_phase.value if dto.active_phase else None
        self.submitted_at = dto.created_at
        self.started_at = dto.started_at
        self.completed_at = dto.completed_at
        self.counters = dto.counters.to_dict()
        self.progress = [p.to_dict() for p in dto.progress] or None
        self.error_summary = dto.error_summary
        self.correlation_id = dto.correlation_id

    @classmethod
    def from_dto(cls, dto: MigrationJob) -> MigrationJobModel:
        model = cls(job_id=dto.job_id)
        model.update_from(dto)
        return model


class CheckpointModel(TimestampedBase):
    """Durable resume point for one job."""

    __tablename__ = "migration_checkpoints"

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_checkpoint_position"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    records_through: Mapped[int] = mapped_column(Integer, nullable=False)
    counters: Mapped[dict] = mapped_column(JSON, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self) -> Checkpoint:
        from migration_jobs.domain.types import Checkpoint, JobCounters, Phase

        return Checkpoint(
            job_id=self.job_id,
            phase=Phase(self.phase),
            sequence=self.sequence,
            records_through=self.records_through,
            counters=JobCounters.from_dict(self.counters),
            recorded_at=self.recorded_at,
            details=self.details or {},
        )

    @classmethod
    def from_dto(cls, dto: Checkpoint, position: int) -> CheckpointModel:
        return cls(
            job_id=dto.job_id,
            position=position,
            phase=dto.phase.value,
            sequence=dto.sequence,
            records_through=dto.records_through,
            counters=dto.counters.to_dict(),
            details=dto.details or None,
            recorded_at=dto.recorded_at,
        )


class JobErrorModel(TimestampedBase):
    """One error or warning attributed to a job, phase, record and batch."""

    __tablename__ = "migration_job_errors"

    __table_args__ = (
        Index("ix_job_errors_job_position", "job_id", "position"),
        Index("ix_job_errors_external_id", "external_id"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    batch_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dto(self) -> JobErrorRecord:
        from migration_jobs.domain.types import JobErrorRecord, Phase
        from migration_kernel.domain.dtos import Severity

        return JobErrorRecord(
            job_id=self.job_id,
            phase=Phase(self.phase),
            code=self.code,
            message=self.message,
            severity=Severity(self.severity),
            external_id=self.external_id,
            batch_sequence=self.batch_sequence,
            details=decode_fields(self.details),
            recorded_at=self.recorded_at,
        )

    @classmethod
    def from_dto(cls, dto: JobErrorRecord, position: int) -> JobErrorModel:
        return cls(
            job_id=dto.job_id,
            position=position,
            phase=dto.phase.value,
            code=dto.code,
            message=dto.message,
            severity=dto.severity.value,
            external_id=dto.external_id,
            batch_sequence=dto.batch_sequence,
            details=encode_fields(dto.details) if dto.details else None,
            recorded_at=dto.recorded_at,
        )


class ReconciliationReportModel(TimestampedBase):
    """Persisted reconciliation proof, one per job."""

    __tablename__ = "reconciliation_reports"

    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    report: Mapped[dict] = mapped_column(JSON, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
