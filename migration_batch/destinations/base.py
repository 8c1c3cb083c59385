"""
Destination protocols for the batch importer.

Contract:
    ``begin_batch`` opens one transaction.  ``upsert`` stages a record and
    reports what it would do; nothing is visible to readers until
    ``commit``.  ``rollback`` discards every staged write and is safe to
    call more than once.

    Errors are reported through the kernel hierarchy only:
    TransientDestinationError (or builtin TimeoutError) means the whole
    transaction may succeed if retried; PermanentDestinationError means a
    record can never be written as is.

Architecture: migration_batch/destinations.  Read methods (counts, sums,
external ids) always re-read committed state; the reconciliation engine
relies on them being independent of anything the importer tallied.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable

from migration_batch.domain.types import StoredRecord, UpsertOutcome
from migration_config.schema import RevisionPolicy
from migration_ingestion.domain.types import CanonicalRecord
from migration_kernel.exceptions import PermanentDestinationError


@runtime_checkable
class DestinationTxn(Protocol):
    """One atomic unit of destination writes."""

    @property
    def transaction_id(self) -> str: ...

    def upsert(self, record: CanonicalRecord) -> UpsertOutcome: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class Destination(Protocol):
    """Target store for canonical records."""

    def begin_batch(self, job_id: str, sequence: int | None = None) -> DestinationTxn: ...

    def count_records(self, job_id: str, entity_type: str) -> int: ...

    def sum_field(self, job_id: str, entity_type: str, field_name: str) -> Decimal: ...

    def external_ids(self, job_id: str, entity_type: str) -> set[str]: ...

    def has_natural_key(self, entity_type: str, natural_key: tuple[str, ...]) -> bool: ...

    def get_record(
        self, job_id: str, entity_type: str, external_id: str
    ) -> StoredRecord | None: ...


def decide_upsert(
    existing_fingerprint: str | None,
    record: CanonicalRecord,
    policy: RevisionPolicy,
) -> UpsertOutcome:
    """
    Idempotency decision shared by every destination.

    Raises:
        PermanentDestinationError: ``revision_conflict`` when the stored
            fingerprint differs and the policy is ``reject``.
    """
    if existing_fingerprint is None:
        return UpsertOutcome.INSERTED
    if existing_fingerprint == record.fingerprint:
        return UpsertOutcome.UNCHANGED
    if policy == RevisionPolicy.REJECT:
        raise PermanentDestinationError(
            "record already imported with different content",
            external_id=record.external_id,
            error_code="revision_conflict",
        )
    return UpsertOutcome.UPDATED
