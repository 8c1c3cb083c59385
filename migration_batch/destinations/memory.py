"""
In-memory destination.

Transactions stage writes privately and publish them under the store lock at
commit, so readers never see a half-applied batch.  Fault injection hooks
let tests simulate outages, constraint violations and crashes at exact
points in a run.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable
from decimal import Decimal

from migration_batch.destinations.base import decide_upsert
from migration_batch.domain.types import StoredRecord, UpsertOutcome
from migration_config.schema import RevisionPolicy
from migration_ingestion.domain.types import CanonicalRecord
from migration_kernel.exceptions import (
    PermanentDestinationError,
    TransientDestinationError,
)
from migration_kernel.logging_config import get_logger

logger = get_logger("batch.destination.memory")

_Key = tuple[str, str, str]


class InMemoryDestinationTxn:
    def __init__(self, destination: InMemoryDestination, job_id: str, sequence: int | None):
        self._destination = destination
        self._job_id = job_id
        self._sequence = sequence
        self._staged: dict[_Key, StoredRecord] = {}
        self._closed = False
        self._transaction_id = uuid.uuid4().hex

    @property
    def transaction_id(self) -> str:
        return self._transaction_id

    @property
    def sequence(self) -> int | None:
        return self._sequence

    def upsert(self, record: CanonicalRecord) -> UpsertOutcome:
        if self._closed:
            raise RuntimeError("transaction already closed")
        self._destination._check_record(record)
        key = (self._job_id, record.entity_type, record.external_id)
        existing = self._staged.get(key) or self._destination._get(key)
        outcome = decide_upsert(
            existing.fingerprint if existing else None,
            record,
            self._destination.revision_policy,
        )
        if outcome == UpsertOutcome.UNCHANGED:
            return outcome
        self._staged[key] = StoredRecord(
            job_id=self._job_id,
            entity_type=record.entity_type,
            external_id=record.external_id,
            fingerprint=record.fingerprint,
            revision=existing.revision + 1 if existing else 1,
            natural_key=record.natural_key,
            fields=dict(record.fields),
        )
        return outcome

    def commit(self) -> None:
        if self._closed:
            raise RuntimeError("transaction already closed")
        self._destination._before_commit(self)
        self._closed = True
        self._destination._publish(self._staged)
        self._destination._after_commit(self)

    def rollback(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._staged.clear()
        self._destination._note_rollback()


class InMemoryDestination:
    """
    Thread-safe dict-backed destination.

    Fault injection:
        fail_sequence(seq, times): the next ``times`` commits of batch
            ``seq`` raise TransientDestinationError.
        reject_external_ids(ids): upserting one of these raises
            PermanentDestinationError.
        after_commit: callable(txn) run after a commit is published.
    """

    def __init__(self, revision_policy: RevisionPolicy = RevisionPolicy.OVERWRITE):
        self.revision_policy = revision_policy
        self._lock = threading.RLock()
        self._records: dict[_Key, StoredRecord] = {}
        self._failures: dict[int, int] = {}
        self._rejected: dict[str, str] = {}
        self.after_commit: Callable[[InMemoryDestinationTxn], None] | None = None
        self.commit_count = 0
        self.rollback_count = 0

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_sequence(self, sequence: int, times: int = 1) -> None:
        with self._lock:
            self._failures[sequence] = self._failures.get(sequence, 0) + times

    def reject_external_ids(
        self, external_ids: Iterable[str], code: str = "constraint_violation"
    ) -> None:
        with self._lock:
            for external_id in external_ids:
                self._rejected[external_id] = code

    # ------------------------------------------------------------------
    # Destination protocol
    # ------------------------------------------------------------------

    def begin_batch(self, job_id: str, sequence: int | None = None) -> InMemoryDestinationTxn:
        return InMemoryDestinationTxn(self, job_id, sequence)

    def count_records(self, job_id: str, entity_type: str) -> int:
        with self._lock:
            return sum(
                1 for (j, e, _) in self._records if j == job_id and e == entity_type
            )

    def sum_field(self, job_id: str, entity_type: str, field_name: str) -> Decimal:
        total = Decimal("0")
        with self._lock:
            for (j, e, _), stored in self._records.items():
                if j != job_id or e != entity_type:
                    continue
                value = stored.fields.get(field_name)
                if isinstance(value, Decimal):
                    total += value
        return total

    def external_ids(self, job_id: str, entity_type: str) -> set[str]:
        with self._lock:
            return {x for (j, e, x) in self._records if j == job_id and e == entity_type}

    def has_natural_key(self, entity_type: str, natural_key: tuple[str, ...]) -> bool:
        with self._lock:
            return any(
                e == entity_type and stored.natural_key == natural_key
                for (_, e, _), stored in self._records.items()
            )

    def get_record(
        self, job_id: str, entity_type: str, external_id: str
    ) -> StoredRecord | None:
        return self._get((job_id, entity_type, external_id))

    def all_records(self) -> list[StoredRecord]:
        with self._lock:
            return list(self._records.values())

    # ------------------------------------------------------------------
    # Transaction callbacks
    # ------------------------------------------------------------------

    def _get(self, key: _Key) -> StoredRecord | None:
        with self._lock:
            return self._records.get(key)

    def _check_record(self, record: CanonicalRecord) -> None:
        with self._lock:
            code = self._rejected.get(record.external_id)
        if code is not None:
            raise PermanentDestinationError(
                "record refused by destination",
                external_id=record.external_id,
                error_code=code,
            )

    def _before_commit(self, txn: InMemoryDestinationTxn) -> None:
        with self._lock:
            remaining = self._failures.get(txn.sequence, 0) if txn.sequence is not None else 0
            if remaining:
                self._failures[txn.sequence] = remaining - 1
        if remaining:
            raise TransientDestinationError(f"simulated outage on batch {txn.sequence}")

    def _publish(self, staged: dict[_Key, StoredRecord]) -> None:
        with self._lock:
            self._records.update(staged)
            self.commit_count += 1

    def _after_commit(self, txn: InMemoryDestinationTxn) -> None:
        if self.after_commit is not None:
            self.after_commit(txn)

    def _note_rollback(self) -> None:
        with self._lock:
            self.rollback_count += 1
