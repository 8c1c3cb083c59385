"""
JobStore protocol.

The tracker and the service layer receive a JobStore instance; there is no
module-level job registry.  Implementations must refuse to overwrite a job
that is already terminal (JobImmutableError).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from migration_jobs.domain.types import Checkpoint, JobErrorRecord, MigrationJob, Phase
from migration_reconciliation.domain import ReconciliationReport


@runtime_checkable
class JobStore(Protocol):
    def save_job(self, job: MigrationJob) -> None: ...

    def get_job(self, job_id: str) -> MigrationJob | None: ...

    def list_jobs(self, phase: Phase | None = None) -> list[MigrationJob]: ...

    def save_checkpoint(self, checkpoint: Checkpoint) -> None: ...

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None: ...

    def checkpoints(self, job_id: str) -> list[Checkpoint]: ...

    def append_errors(self, errors: Sequence[JobErrorRecord]) -> None: ...

    def list_errors(
        self,
        job_id: str,
        phase: Phase | None = None,
        limit: int | None = None,
    ) -> list[JobErrorRecord]: ...

    def discard_errors(
        self, job_id: str, phase: Phase, after_sequence: int | None = None
    ) -> int:
        """
        Drop errors recorded for ``phase`` (only those attributed to a batch
        after ``after_sequence`` when given).  Used when a phase re-runs
        from a checkpoint so its errors are not recorded twice.
        """
        ...

    def save_report(self, report: ReconciliationReport) -> None: ...

    def get_report(self, job_id: str) -> ReconciliationReport | None: ...
