"""
JobTracker -- phase state machine, counters, checkpoints and error log for
one migration job.

Contract:
    The tracker owns the live MigrationJob snapshot.  Every transition goes
    through TRANSITIONS; every durable change goes through the injected
    JobStore; every lifecycle event goes to the EventDispatcher.

Architecture: migration_jobs.  Imports from migration_jobs.domain,
    migration_jobs.store, migration_jobs.events and the kernel.

Invariants enforced:
    - Illegal transitions raise InvalidPhaseTransitionError.
    - Terminal jobs are immutable: any mutation raises JobImmutableError.
    - Counters only increase, except when restore_from_checkpoint() rewinds
      them to a checkpoint's snapshot.
    - Entering a phase persists a phase-start checkpoint before the job row,
      so a crash between the two resumes at the newer phase.
    - All timestamps come from the injected Clock.

Thread safety:
    Extraction advances counters from one thread per source, so every
    mutation and store write happens under one lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import Any

from migration_config.schema import TrackerSettings
from migration_jobs.domain.types import (
    Checkpoint,
    JobCounters,
    JobErrorRecord,
    JobEvent,
    JobEventType,
    MigrationJob,
    Phase,
    PhaseProgress,
    WORKING_PHASES,
    can_transition,
)
from migration_jobs.events import EventDispatcher
from migration_jobs.store.base import JobStore
from migration_kernel.domain.clock import Clock, SystemClock
from migration_kernel.domain.dtos import Severity, ValidationIssue
from migration_kernel.exceptions import (
    InvalidPhaseTransitionError,
    JobImmutableError,
    JobNotFoundError,
)
from migration_kernel.logging_config import get_logger
from migration_reconciliation.domain import ReconciliationReport

logger = get_logger("jobs.tracker")


class JobTracker:
    def __init__(
        self,
        store: JobStore,
        job: MigrationJob,
        *,
        clock: Clock | None = None,
        dispatcher: EventDispatcher | None = None,
        settings: TrackerSettings | None = None,
    ):
        self._store = store
        self._job = job
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher
        self._settings = settings or TrackerSettings()
        self._lock = threading.RLock()

    @classmethod
    def load(cls, store: JobStore, job_id: str, **kwargs: Any) -> JobTracker:
        job = store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return cls(store, job, **kwargs)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    @property
    def job(self) -> MigrationJob:
        with self._lock:
            return self._job

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def phase(self) -> Phase:
        return self.job.phase

    @property
    def counters(self) -> JobCounters:
        return self.job.counters

    def persist(self) -> None:
        with self._lock:
            self._store.save_job(self._job)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def enter_phase(self, phase: Phase, estimated_total: int | None = None) -> None:
        with self._lock:
            self._transition(phase)
            now = self._clock.now()
            progress = tuple(p for p in self._job.progress if p.phase != phase) + (
                PhaseProgress(phase=phase, estimated_total=estimated_total, started_at=now),
            )
            self._job = replace(
                self._job,
                phase=phase,
                active_phase=phase,
                started_at=self._job.started_at or now,
                progress=progress,
            )
            self._store.save_checkpoint(self._checkpoint(sequence=-1, records_through=0))
            self._store.save_job(self._job)
        logger.info(
            "job_phase_entered",
            extra={"job_id": self.job_id, "phase": phase.value, "estimated_total": estimated_total},
        )
        self._emit(JobEventType.PHASE_ENTERED, {"estimated_total": estimated_total})

    def complete_phase(self) -> None:
        with self._lock:
            self._require_mutable()
            phase = self._job.phase
            self._update_progress(completed_at=self._clock.now())
            self._store.save_job(self._job)
            progress = self._job.progress_for(phase)
        logger.info(
            "job_phase_completed",
            extra={
                "job_id": self.job_id,
                "phase": phase.value,
                "processed": progress.processed if progress else 0,
                "counters": self._job.counters.to_dict(),
            },
        )
        self._emit(JobEventType.PHASE_COMPLETED, {"counters": self._job.counters.to_dict()})

    def set_estimated_total(self, estimated_total: int) -> None:
        with self._lock:
            self._require_mutable()
            self._update_progress(estimated_total=estimated_total)

    # -------------------------------------------------------------------------
    # Counters and progress
    # -------------------------------------------------------------------------

    def advance(self, counter: str, n: int = 1) -> None:
        if n == 0:
            return
        with self._lock:
            self._require_mutable()
            self._job = replace(self._job, counters=self._job.counters.incremented(counter, n))

    def record_progress(self, processed: int = 0, errors: int = 0, warnings: int = 0) -> None:
        with self._lock:
            self._require_mutable()
            current = self._job.progress_for(self._job.phase)
            before = current.processed if current else 0
            after = before + processed
            self._update_progress(
                processed=after,
                errors=(current.errors if current else 0) + errors,
                warnings=(current.warnings if current else 0) + warnings,
            )
            interval = self._settings.progress_interval
            crossed = interval > 0 and after // interval > before // interval
            estimated = current.estimated_total if current else None
        if crossed:
            self._emit(
                JobEventType.PROGRESS,
                {"processed": after, "estimated_total": estimated},
            )

    def _update_progress(self, **changes: Any) -> None:
        phase = self._job.phase
        progress = []
        found = False
        for item in self._job.progress:
            if item.phase == phase:
                item = replace(item, **changes)
                found = True
            progress.append(item)
        if not found:
            progress.append(replace(PhaseProgress(phase=phase), **changes))
        self._job = replace(self._job, progress=tuple(progress))

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    def record_error(
        self,
        code: str,
        message: str,
        *,
        severity: Severity = Severity.ERROR,
        external_id: str | None = None,
        batch_sequence: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> JobErrorRecord:
        record = JobErrorRecord(
            job_id=self.job_id,
            phase=self.phase,
            code=code,
            message=message,
            severity=severity,
            external_id=external_id,
            batch_sequence=batch_sequence,
            details=details or {},
            recorded_at=self._clock.now(),
        )
        self.record_errors([record])
        return record

    def record_errors(self, records: Sequence[JobErrorRecord]) -> None:
        if not records:
            return
        with self._lock:
            self._require_mutable()
            self._store.append_errors(records)

    def issue_records(
        self,
        external_id: str,
        issues: Iterable[ValidationIssue],
        batch_sequence: int | None = None,
    ) -> list[JobErrorRecord]:
        """Error records for one record's issues, attributed to the current phase."""
        now = self._clock.now()
        phase = self.phase
        return [
            JobErrorRecord(
                job_id=self.job_id,
                phase=phase,
                code=issue.code,
                message=issue.message,
                severity=issue.severity,
                external_id=external_id,
                batch_sequence=batch_sequence,
                details={"field": issue.field, **issue.details} if issue.field else dict(issue.details),
                recorded_at=now,
            )
            for issue in issues
        ]

    def record_issues(
        self,
        external_id: str,
        issues: Iterable[ValidationIssue],
        batch_sequence: int | None = None,
    ) -> None:
        """Persist validation or mapping issues attributed to one record."""
        self.record_errors(self.issue_records(external_id, issues, batch_sequence))

    def errors(self, phase: Phase | None = None) -> list[JobErrorRecord]:
        return self._store.list_errors(self.job_id, phase)

    def discard_errors(self, phase: Phase, after_sequence: int | None = None) -> int:
        with self._lock:
            self._require_mutable()
            return self._store.discard_errors(self.job_id, phase, after_sequence)

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def _checkpoint(
        self, sequence: int, records_through: int, details: dict[str, Any] | None = None
    ) -> Checkpoint:
        return Checkpoint(
            job_id=self._job.job_id,
            phase=self._job.phase,
            sequence=sequence,
            records_through=records_through,
            counters=self._job.counters,
            recorded_at=self._clock.now(),
            details=details or {},
        )

    def save_checkpoint(
        self,
        sequence: int = -1,
        records_through: int = 0,
        details: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Persist the current counters as a resume point inside the current phase."""
        with self._lock:
            self._require_mutable()
            checkpoint = self._checkpoint(sequence, records_through, details)
            self._store.save_checkpoint(checkpoint)
            self._store.save_job(self._job)
        logger.debug(
            "job_checkpoint_saved",
            extra={
                "job_id": self.job_id,
                "phase": checkpoint.phase.value,
                "sequence": sequence,
                "records_through": records_through,
            },
        )
        self._emit(
            JobEventType.CHECKPOINT_SAVED,
            {"sequence": sequence, "records_through": records_through},
        )
        return checkpoint

    def restore_from_checkpoint(self) -> Checkpoint | None:
        """
        Rewind the live job to its latest checkpoint.

        Counters return to the checkpoint snapshot and progress recorded
        for the checkpoint's phase and later phases is dropped.
        """
        with self._lock:
            self._require_mutable()
            checkpoint = self._store.latest_checkpoint(self.job_id)
            if checkpoint is None:
                return None
            order = {p: i for i, p in enumerate(WORKING_PHASES)}
            cut = order.get(checkpoint.phase, -1)
            progress = tuple(
                p for p in self._job.progress if order.get(p.phase, -1) < cut
            ) + (PhaseProgress(phase=checkpoint.phase, started_at=self._clock.now()),)
            self._job = replace(
                self._job,
                phase=checkpoint.phase,
                active_phase=checkpoint.phase,
                counters=checkpoint.counters,
                progress=progress,
            )
            self._store.save_job(self._job)
        logger.info(
            "job_restored_from_checkpoint",
            extra={
                "job_id": self.job_id,
                "phase": checkpoint.phase.value,
                "sequence": checkpoint.sequence,
                "records_through": checkpoint.records_through,
            },
        )
        return checkpoint

    def save_report(self, report: ReconciliationReport) -> None:
        with self._lock:
            self._require_mutable()
            self._store.save_report(report)

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    def complete(self) -> None:
        self._finish(Phase.COMPLETED, None, JobEventType.JOB_COMPLETED)

    def fail(self, reason: str, code: str | None = None) -> None:
        self._finish(Phase.FAILED, reason, JobEventType.JOB_FAILED, code)

    def cancel(self, reason: str = "canceled by request") -> None:
        self._finish(Phase.CANCELED, reason, JobEventType.JOB_CANCELED)

    def _finish(
        self,
        phase: Phase,
        reason: str | None,
        event_type: JobEventType,
        code: str | None = None,
    ) -> None:
        with self._lock:
            self._transition(phase)
            self._job = replace(
                self._job,
                phase=phase,
                completed_at=self._clock.now(),
                error_summary=reason,
            )
            self._store.save_job(self._job)
            counters = self._job.counters.to_dict()
        log = logger.error if phase == Phase.FAILED else logger.info
        log(
            f"job_{phase.value}",
            extra={
                "job_id": self.job_id,
                "active_phase": self._job.active_phase.value if self._job.active_phase else None,
                "reason": reason,
                "error_code": code,
                "counters": counters,
            },
        )
        self._emit(event_type, {"reason": reason, "error_code": code, "counters": counters})

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require_mutable(self) -> None:
        if self._job.is_terminal:
            raise JobImmutableError(self._job.job_id, self._job.phase.value)

    def _transition(self, to_phase: Phase) -> None:
        self._require_mutable()
        if not can_transition(self._job.phase, to_phase):
            raise InvalidPhaseTransitionError(
                self._job.job_id, self._job.phase.value, to_phase.value
            )

    def _emit(self, event_type: JobEventType, payload: dict[str, Any]) -> None:
        if self._dispatcher is None:
            return
        job = self.job
        self._dispatcher.emit(JobEvent(
            event_type=event_type,
            job_id=job.job_id,
            phase=job.phase,
            occurred_at=self._clock.now(),
            payload=payload,
        ))
