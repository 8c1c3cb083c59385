"""
migration_batch.domain.types -- Pure frozen dataclasses for batch import.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants:
    - An ImportBatch is applied atomically: every record commits or none do.
    - (job_id, entity_type, external_id) identifies a record at the
      destination; its fingerprint decides no-op vs revision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from migration_ingestion.domain.types import CanonicalRecord


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UNCHANGED = "unchanged"  # same fingerprint: idempotent no-op
    UPDATED = "updated"  # different fingerprint under the overwrite policy


class BatchStatus(str, Enum):
    COMMITTED = "committed"  # whole batch committed
    PARTIAL = "partial"  # isolated: some records committed, some failed
    FAILED = "failed"  # isolated: no record committed


@dataclass(frozen=True)
class ImportBatch:
    """
    Fixed-size chunk of canonical records submitted atomically.

    ``records_through`` is the count of valid records consumed up to and
    including this batch; it is the resume offset once the batch is
    contiguously committed.
    """

    job_id: str
    sequence: int
    records: tuple[CanonicalRecord, ...]
    records_through: int

    @property
    def record_count(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class RecordFailure:
    """One record the destination permanently refused."""

    external_id: str
    entity_type: str
    code: str
    message: str
    sequence: int


@dataclass(frozen=True)
class BatchOutcome:
    sequence: int
    record_count: int
    status: BatchStatus
    success_count: int
    failure_count: int = 0
    inserted_count: int = 0
    unchanged_count: int = 0
    updated_count: int = 0
    retry_count: int = 0
    records_through: int = 0
    transaction_id: str | None = None
    failures: tuple[RecordFailure, ...] = ()


@dataclass(frozen=True)
class ImportResult:
    """Aggregate of every batch a run applied."""

    job_id: str
    batches: tuple[BatchOutcome, ...] = ()
    last_sequence: int = -1
    records_through: int = 0
    canceled: bool = False

    @property
    def success_count(self) -> int:
        return sum(b.success_count for b in self.batches)

    @property
    def failure_count(self) -> int:
        return sum(b.failure_count for b in self.batches)

    @property
    def retry_count(self) -> int:
        return sum(b.retry_count for b in self.batches)

    @property
    def failures(self) -> tuple[RecordFailure, ...]:
        return tuple(f for b in self.batches for f in b.failures)

    @property
    def last_checkpoint(self) -> tuple[int, int]:
        """(sequence, records_through) of the last contiguous checkpoint."""
        return self.last_sequence, self.records_through

    def retries_by_sequence(self) -> dict[int, int]:
        return {b.sequence: b.retry_count for b in self.batches if b.retry_count}


@dataclass(frozen=True)
class StoredRecord:
    """A record as held by a destination."""

    job_id: str
    entity_type: str
    external_id: str
    fingerprint: str
    revision: int
    natural_key: tuple[str, ...]
    fields: dict[str, Any] = field(default_factory=dict)
