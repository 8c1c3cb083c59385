"""
Tests for migration_batch.services.importer.

Validates BatchImporter: atomic batches, retry with exponential backoff,
record isolation on permanent failures, idempotent re-import, contiguous
checkpoints and cancellation between batches.

Uses the in-memory destination with injected faults; ``sleep`` is recorded,
never slept.
"""

import threading
from decimal import Decimal

import pytest

from migration_batch.destinations import InMemoryDestination
from migration_batch.domain.types import BatchStatus, UpsertOutcome
from migration_batch.services.importer import BatchImporter, backoff_delay, iter_batches
from migration_config.schema import ImporterSettings, RevisionPolicy
from migration_kernel.exceptions import RetriesExhaustedError
from tests.conftest import canonical, canonical_records

JOB = "job-1"


def _importer(destination, sleeps, *, batch_size=100, max_workers=None, **overrides):
    settings = ImporterSettings(batch_size=batch_size, max_concurrency=4, **overrides)
    return BatchImporter(destination, settings, sleep=sleeps, max_workers=max_workers)


class _TimesOutOnce(InMemoryDestination):
    """Raises a builtin TimeoutError on the first commit."""

    fired = False

    def _before_commit(self, txn):
        if not self.fired:
            self.fired = True
            raise TimeoutError("statement timeout")
        super()._before_commit(txn)


class _Token:
    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


# =============================================================================
# Pure helpers
# =============================================================================


class TestHelpers:
    def test_backoff_doubles_up_to_maximum(self):
        assert [backoff_delay(a, 0.5, 3.0) for a in (1, 2, 3, 4, 5)] == [
            0.5, 1.0, 2.0, 3.0, 3.0,
        ]

    def test_iter_batches_numbers_and_offsets(self):
        batches = list(iter_batches(JOB, canonical_records(7), 3, start_sequence=2,
                                    start_offset=30))
        assert [b.sequence for b in batches] == [2, 3, 4]
        assert [b.record_count for b in batches] == [3, 3, 1]
        assert [b.records_through for b in batches] == [33, 36, 37]

    def test_iter_batches_rejects_zero_size(self):
        with pytest.raises(ValueError):
            list(iter_batches(JOB, [], 0))


# =============================================================================
# Happy path and retry
# =============================================================================


class TestBatchImporter:
    def test_all_batches_commit(self, sleeps):
        destination = InMemoryDestination()
        result = _importer(destination, sleeps).run(JOB, canonical_records(250))

        assert [b.sequence for b in result.batches] == [0, 1, 2]
        assert all(b.status == BatchStatus.COMMITTED for b in result.batches)
        assert result.success_count == 250
        assert result.last_checkpoint == (2, 250)
        assert destination.count_records(JOB, "cost_item") == 250

    def test_outage_on_one_batch_is_retried_with_backoff(self, sleeps):
        destination = InMemoryDestination()
        destination.fail_sequence(4, times=3)

        result = _importer(destination, sleeps).run(JOB, canonical_records(1000))

        assert result.retries_by_sequence() == {4: 3}
        assert sleeps.delays == [0.5, 1.0, 2.0]
        assert result.success_count == 1000
        assert result.failure_count == 0
        assert destination.count_records(JOB, "cost_item") == 1000
        assert destination.rollback_count == 3

    def test_retries_exhausted_aborts_after_contiguous_checkpoint(self, sleeps):
        destination = InMemoryDestination()
        destination.fail_sequence(2, times=10)
        advances = []

        with pytest.raises(RetriesExhaustedError) as exc_info:
            _importer(destination, sleeps, batch_size=10, max_workers=1).run(
                JOB, canonical_records(50), on_checkpoint=advances.append
            )

        assert exc_info.value.sequence == 2
        assert exc_info.value.attempts == 4
        assert advances[-1].sequence == 1
        assert advances[-1].records_through == 20
        assert destination.count_records(JOB, "cost_item") == 20

    def test_timeout_error_is_transient(self, sleeps):
        destination = _TimesOutOnce()
        result = _importer(destination, sleeps, max_workers=1).run(JOB, canonical_records(5))

        assert result.retry_count == 1
        assert sleeps.delays == [0.5]
        assert destination.count_records(JOB, "cost_item") == 5


# =============================================================================
# Isolation
# =============================================================================


class TestRecordIsolation:
    def test_permanent_failure_isolates_offending_record(self, sleeps):
        destination = InMemoryDestination()
        destination.reject_external_ids(["est:C00002"], code="check_violation")

        result = _importer(destination, sleeps, batch_size=5).run(JOB, canonical_records(10))

        first, second = result.batches
        assert first.status == BatchStatus.PARTIAL
        assert first.success_count == 4
        assert first.failures[0].external_id == "est:C00002"
        assert first.failures[0].code == "check_violation"
        assert second.status == BatchStatus.COMMITTED
        assert destination.count_records(JOB, "cost_item") == 9
        assert "est:C00002" not in destination.external_ids(JOB, "cost_item")

    def test_batch_with_only_bad_records_fails_but_run_continues(self, sleeps):
        destination = InMemoryDestination()
        destination.reject_external_ids([f"est:C0000{i}" for i in range(5, 10)])

        result = _importer(destination, sleeps, batch_size=5).run(JOB, canonical_records(15))

        assert [b.status for b in result.batches] == [
            BatchStatus.COMMITTED, BatchStatus.FAILED, BatchStatus.COMMITTED,
        ]
        assert result.failure_count == 5
        assert result.last_checkpoint == (2, 15)


# =============================================================================
# Idempotency
# =============================================================================


class TestIdempotency:
    def test_reimport_is_a_no_op(self, sleeps):
        destination = InMemoryDestination()
        records = canonical_records(30)
        _importer(destination, sleeps, batch_size=10).run(JOB, records)

        again = _importer(destination, sleeps, batch_size=10).run(JOB, records)

        assert sum(b.unchanged_count for b in again.batches) == 30
        assert sum(b.inserted_count for b in again.batches) == 0
        assert destination.count_records(JOB, "cost_item") == 30

    def test_changed_content_is_a_new_revision(self, sleeps):
        destination = InMemoryDestination()
        _importer(destination, sleeps).run(JOB, [canonical("A-1", "10.00")])

        result = _importer(destination, sleeps).run(JOB, [canonical("A-1", "12.00")])

        assert result.batches[0].updated_count == 1
        stored = destination.get_record(JOB, "cost_item", "est:A-1")
        assert stored.revision == 2
        assert stored.fields["amount"] == Decimal("12.00")

    def test_changed_content_rejected_under_reject_policy(self, sleeps):
        destination = InMemoryDestination(revision_policy=RevisionPolicy.REJECT)
        _importer(destination, sleeps).run(JOB, [canonical("A-1", "10.00")])

        result = _importer(destination, sleeps).run(JOB, [canonical("A-1", "12.00")])

        assert result.failures[0].code == "revision_conflict"
        stored = destination.get_record(JOB, "cost_item", "est:A-1")
        assert stored.fields["amount"] == Decimal("10.00")

    def test_same_external_id_in_another_job_is_separate(self, sleeps):
        destination = InMemoryDestination()
        _importer(destination, sleeps).run("job-a", [canonical("A-1")])
        result = _importer(destination, sleeps).run("job-b", [canonical("A-1")])
        assert result.batches[0].inserted_count == 1


# =============================================================================
# Checkpoints and cancellation
# =============================================================================


class TestCheckpointsAndCancellation:
    def test_checkpoints_are_contiguous_under_concurrency(self, sleeps):
        destination = InMemoryDestination()
        advances = []
        _importer(destination, sleeps, batch_size=7).run(
            JOB, canonical_records(200), on_checkpoint=advances.append
        )

        covered = [o.sequence for a in advances for o in a.outcomes]
        assert covered == list(range(29))
        assert [a.sequence for a in advances] == sorted(a.sequence for a in advances)
        assert advances[-1].records_through == 200

    def test_resume_numbers_from_checkpoint(self, sleeps):
        destination = InMemoryDestination()
        records = canonical_records(100)
        result = _importer(destination, sleeps, batch_size=10).run(
            JOB, records[60:], start_sequence=6, start_offset=60
        )
        assert [b.sequence for b in result.batches] == [6, 7, 8, 9]
        assert result.last_checkpoint == (9, 100)

    def test_cancel_before_start_applies_nothing(self, sleeps):
        destination = InMemoryDestination()
        token = _Token()
        token.set()

        result = _importer(destination, sleeps).run(JOB, canonical_records(10), cancel_token=token)

        assert result.canceled
        assert result.batches == ()
        assert result.last_checkpoint == (-1, 0)

    def test_cancel_is_observed_between_batches(self, sleeps):
        destination = InMemoryDestination()
        token = _Token()

        def stop_after_first(advance):
            token.set()

        result = _importer(destination, sleeps, batch_size=10, max_workers=1).run(
            JOB, canonical_records(50), on_checkpoint=stop_after_first, cancel_token=token
        )

        assert result.canceled
        assert [b.sequence for b in result.batches] == [0]
        assert destination.count_records(JOB, "cost_item") == 10

    def test_batch_outcome_carries_transaction_id(self, sleeps):
        destination = InMemoryDestination()
        result = _importer(destination, sleeps).run(JOB, canonical_records(3))
        assert result.batches[0].transaction_id
        assert result.batches[0].inserted_count == 3
        assert UpsertOutcome.INSERTED.value == "inserted"
