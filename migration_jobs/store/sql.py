"""
SQL-backed JobStore.

Every call runs in its own short transaction from the injected session
factory, so the job row, checkpoints and errors are durable as soon as a
method returns.  That is what makes a crash between two checkpoints
recoverable.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from migration_jobs.domain.types import Checkpoint, JobErrorRecord, MigrationJob, Phase
from migration_jobs.models.jobs import (
    CheckpointModel,
    JobErrorModel,
    MigrationJobModel,
    ReconciliationReportModel,
)
from migration_kernel.db.engine import session_scope
from migration_kernel.exceptions import JobImmutableError
from migration_kernel.logging_config import get_logger
from migration_reconciliation.domain import ReconciliationReport

logger = get_logger("jobs.store.sql")

_TERMINAL = (Phase.COMPLETED.value, Phase.FAILED.value, Phase.CANCELED.value)


class SqlJobStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    def _next_position(self, session: Session, model: type, job_id: str) -> int:
        current = session.scalar(
            select(func.max(model.position)).where(model.job_id == job_id)
        )
        return (current or 0) + 1

    def save_job(self, job: MigrationJob) -> None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(MigrationJobModel).where(MigrationJobModel.job_id == job.job_id)
            ).one_or_none()
            if model is None:
                session.add(MigrationJobModel.from_dto(job))
                return
            if model.phase in _TERMINAL:
                raise JobImmutableError(job.job_id, model.phase)
            model.update_from(job)

    def get_job(self, job_id: str) -> MigrationJob | None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(MigrationJobModel).where(MigrationJobModel.job_id == job_id)
            ).one_or_none()
            return model.to_dto() if model is not None else None

    def list_jobs(self, phase: Phase | None = None) -> list[MigrationJob]:
        stmt = select(MigrationJobModel).order_by(
            MigrationJobModel.submitted_at, MigrationJobModel.job_id
        )
        if phase is not None:
            stmt = stmt.where(MigrationJobModel.phase == phase.value)
        with session_scope(self._factory) as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with session_scope(self._factory) as session:
            position = self._next_position(session, CheckpointModel, checkpoint.job_id)
            session.add(CheckpointModel.from_dto(checkpoint, position))

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(CheckpointModel)
                .where(CheckpointModel.job_id == job_id)
                .order_by(CheckpointModel.position.desc())
                .limit(1)
            ).one_or_none()
            return model.to_dto() if model is not None else None

    def checkpoints(self, job_id: str) -> list[Checkpoint]:
        stmt = (
            select(CheckpointModel)
            .where(CheckpointModel.job_id == job_id)
            .order_by(CheckpointModel.position)
        )
        with session_scope(self._factory) as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def append_errors(self, errors: Sequence[JobErrorRecord]) -> None:
        if not errors:
            return
        with session_scope(self._factory) as session:
            positions: dict[str, int] = {}
            for error in errors:
                if error.job_id not in positions:
                    positions[error.job_id] = self._next_position(
                        session, JobErrorModel, error.job_id
                    )
                session.add(JobErrorModel.from_dto(error, positions[error.job_id]))
                positions[error.job_id] += 1

    def list_errors(
        self,
        job_id: str,
        phase: Phase | None = None,
        limit: int | None = None,
    ) -> list[JobErrorRecord]:
        stmt = (
            select(JobErrorModel)
            .where(JobErrorModel.job_id == job_id)
            .order_by(JobErrorModel.position)
        )
        if phase is not None:
            stmt = stmt.where(JobErrorModel.phase == phase.value)
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._factory) as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def discard_errors(
        self, job_id: str, phase: Phase, after_sequence: int | None = None
    ) -> int:
        stmt = delete(JobErrorModel).where(
            JobErrorModel.job_id == job_id, JobErrorModel.phase == phase.value
        )
        if after_sequence is not None:
            stmt = stmt.where(JobErrorModel.batch_sequence > after_sequence)
        with session_scope(self._factory) as session:
            result = session.execute(stmt)
        if result.rowcount:
            logger.info(
                "job_errors_discarded",
                extra={"job_id": job_id, "phase": phase.value, "rows": result.rowcount},
            )
        return result.rowcount

    def save_report(self, report: ReconciliationReport) -> None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(ReconciliationReportModel)
                .where(ReconciliationReportModel.job_id == report.job_id)
            ).one_or_none()
            if model is None:
                model = ReconciliationReportModel(job_id=report.job_id)
                session.add(model)
            model.passed = report.passed
            model.report = report.to_dict()
            model.generated_at = report.generated_at

    def get_report(self, job_id: str) -> ReconciliationReport | None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(ReconciliationReportModel)
                .where(ReconciliationReportModel.job_id == job_id)
            ).one_or_none()
            return ReconciliationReport.from_dict(model.report) if model is not None else None
