"""In-memory JobStore for tests and single-process runs."""

from __future__ import annotations

import threading
from collections.abc import Sequence

from migration_jobs.domain.types import Checkpoint, JobErrorRecord, MigrationJob, Phase
from migration_kernel.exceptions import JobImmutableError
from migration_reconciliation.domain import ReconciliationReport


def _discarded(
    error: JobErrorRecord, phase: Phase, after_sequence: int | None
) -> bool:
    if error.phase != phase:
        return False
    if after_sequence is None:
        return True
    return error.batch_sequence is not None and error.batch_sequence > after_sequence


class InMemoryJobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, MigrationJob] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._errors: dict[str, list[JobErrorRecord]] = {}
        self._reports: dict[str, ReconciliationReport] = {}

    def save_job(self, job: MigrationJob) -> None:
        with self._lock:
            existing = self._jobs.get(job.job_id)
            if existing is not None and existing.is_terminal and existing != job:
                raise JobImmutableError(job.job_id, existing.phase.value)
            self._jobs[job.job_id] = job

    def get_job(self, job_id: str) -> MigrationJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, phase: Phase | None = None) -> list[MigrationJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if phase is not None:
            jobs = [j for j in jobs if j.phase == phase]
        return sorted(jobs, key=lambda j: (j.created_at, j.job_id))

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._checkpoints.setdefault(checkpoint.job_id, []).append(checkpoint)

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        with self._lock:
            items = self._checkpoints.get(job_id)
            return items[-1] if items else None

    def checkpoints(self, job_id: str) -> list[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.get(job_id, ()))

    def append_errors(self, errors: Sequence[JobErrorRecord]) -> None:
        with self._lock:
            for error in errors:
                self._errors.setdefault(error.job_id, []).append(error)

    def list_errors(
        self,
        job_id: str,
        phase: Phase | None = None,
        limit: int | None = None,
    ) -> list[JobErrorRecord]:
        with self._lock:
            errors = list(self._errors.get(job_id, ()))
        if phase is not None:
            errors = [e for e in errors if e.phase == phase]
        return errors[:limit] if limit is not None else errors

    def discard_errors(
        self, job_id: str, phase: Phase, after_sequence: int | None = None
    ) -> int:
        with self._lock:
            errors = self._errors.get(job_id, [])
            kept = [e for e in errors if not _discarded(e, phase, after_sequence)]
            self._errors[job_id] = kept
            return len(errors) - len(kept)

    def save_report(self, report: ReconciliationReport) -> None:
        with self._lock:
            self._reports[report.job_id] = report

    def get_report(self, job_id: str) -> ReconciliationReport | None:
        with self._lock:
            return self._reports.get(job_id)
