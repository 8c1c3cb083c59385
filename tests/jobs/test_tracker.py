"""
Tests for JobTracker.

Validates legal transitions, immutability of terminal jobs, counters,
checkpoint save/restore, error attribution and emitted events.
"""

from dataclasses import replace

import pytest

from migration_config.schema import TrackerSettings
from migration_ingestion.domain.types import MigrationScope
from migration_jobs import EventDispatcher, InMemoryJobStore, JobTracker
from migration_jobs.domain.types import JobEventType, MigrationJob, Phase
from migration_kernel.domain.dtos import Severity, ValidationIssue
from migration_kernel.exceptions import (
    InvalidPhaseTransitionError,
    JobImmutableError,
    JobNotFoundError,
)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def make_tracker(store, clock):
    def _make(dispatcher=None, **settings):
        job = MigrationJob(
            job_id="job-1",
            source_system="memory",
            scope=MigrationScope(sources=()),
            rule_set_id=None,
            phase=Phase.PENDING,
            created_at=clock.now(),
        )
        store.save_job(job)
        return JobTracker(
            store, job, clock=clock, dispatcher=dispatcher,
            settings=TrackerSettings(**settings),
        )

    return _make


def _walk_to(tracker: JobTracker, target: Phase) -> None:
    for phase in (Phase.DISCOVERY, Phase.EXTRACTION, Phase.TRANSFORMATION,
                  Phase.VALIDATION, Phase.IMPORT, Phase.VERIFICATION):
        tracker.enter_phase(phase)
        if phase == target:
            return


class TestPhases:
    def test_enter_phase_persists_job_and_phase_start_checkpoint(self, make_tracker, store, clock):
        tracker = make_tracker()
        tracker.enter_phase(Phase.DISCOVERY, estimated_total=2)

        stored = store.get_job("job-1")
        assert stored.phase == Phase.DISCOVERY
        assert stored.started_at == clock.now()
        assert stored.progress_for(Phase.DISCOVERY).estimated_total == 2
        checkpoint = store.latest_checkpoint("job-1")
        assert checkpoint.phase == Phase.DISCOVERY
        assert checkpoint.is_phase_start

    def test_skipping_a_phase_is_rejected(self, make_tracker):
        tracker = make_tracker()
        tracker.enter_phase(Phase.DISCOVERY)
        with pytest.raises(InvalidPhaseTransitionError) as exc_info:
            tracker.enter_phase(Phase.TRANSFORMATION)
        assert exc_info.value.from_phase == "discovery"
        assert tracker.phase == Phase.DISCOVERY

    def test_complete_phase_stamps_progress(self, make_tracker, clock):
        tracker = make_tracker()
        tracker.enter_phase(Phase.DISCOVERY)
        clock.advance(30)
        tracker.complete_phase()
        assert tracker.job.progress_for(Phase.DISCOVERY).completed_at == clock.now()

    def test_full_run_completes(self, make_tracker):
        tracker = make_tracker()
        _walk_to(tracker, Phase.VERIFICATION)
        tracker.complete()
        assert tracker.phase == Phase.COMPLETED
        assert tracker.job.active_phase == Phase.VERIFICATION
        assert tracker.job.completed_at is not None

    def test_completing_early_is_rejected(self, make_tracker):
        tracker = make_tracker()
        _walk_to(tracker, Phase.IMPORT)
        with pytest.raises(InvalidPhaseTransitionError):
            tracker.complete()


class TestTerminalImmutability:
    @pytest.mark.parametrize("finish", ["fail", "cancel"])
    def test_terminal_job_rejects_every_mutation(self, make_tracker, finish):
        tracker = make_tracker()
        tracker.enter_phase(Phase.DISCOVERY)
        getattr(tracker, finish)("stop")

        for mutate in (
            lambda: tracker.advance("imported"),
            lambda: tracker.enter_phase(Phase.EXTRACTION),
            lambda: tracker.save_checkpoint(),
            lambda: tracker.record_error("x", "y"),
            lambda: tracker.complete(),
            lambda: tracker.cancel(),
        ):
            with pytest.raises(JobImmutableError):
                mutate()

    def test_failed_job_keeps_where_it_stopped(self, make_tracker, store):
        tracker = make_tracker()
        _walk_to(tracker, Phase.EXTRACTION)
        tracker.fail("source unreadable", code="PERMANENT_SOURCE_ERROR")

        stored = store.get_job("job-1")
        assert stored.phase == Phase.FAILED
        assert stored.active_phase == Phase.EXTRACTION
        assert stored.error_summary == "source unreadable"

    def test_store_refuses_to_overwrite_terminal_job(self, make_tracker, store):
        tracker = make_tracker()
        tracker.cancel()
        with pytest.raises(JobImmutableError):
            store.save_job(replace(store.get_job("job-1"), phase=Phase.PENDING))

    def test_pending_job_can_be_canceled(self, make_tracker):
        tracker = make_tracker()
        tracker.cancel("not needed")
        assert tracker.phase == Phase.CANCELED


class TestCountersAndCheckpoints:
    def test_counters_advance(self, make_tracker):
        tracker = make_tracker()
        tracker.enter_phase(Phase.DISCOVERY)
        tracker.advance("discovered", 3)
        tracker.advance("discovered", 0)
        assert tracker.counters.discovered == 3

    def test_restore_rewinds_counters_to_checkpoint(self, make_tracker, store):
        tracker = make_tracker()
        _walk_to(tracker, Phase.IMPORT)
        tracker.advance("imported", 100)
        tracker.save_checkpoint(sequence=0, records_through=100)
        tracker.advance("imported", 100)  # lost in a crash before the next checkpoint

        resumed = JobTracker.load(store, "job-1")
        checkpoint = resumed.restore_from_checkpoint()

        assert checkpoint.sequence == 0
        assert checkpoint.records_through == 100
        assert resumed.counters.imported == 100
        assert resumed.phase == Phase.IMPORT

    def test_restore_at_phase_start_drops_that_phase_progress(self, make_tracker, store):
        tracker = make_tracker()
        _walk_to(tracker, Phase.TRANSFORMATION)
        tracker.record_progress(processed=40)

        resumed = JobTracker.load(store, "job-1")
        resumed.restore_from_checkpoint()

        assert resumed.job.progress_for(Phase.TRANSFORMATION).processed == 0
        assert resumed.job.progress_for(Phase.EXTRACTION) is not None

    def test_load_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            JobTracker.load(store, "missing")


class TestErrors:
    def test_errors_are_attributed_to_current_phase(self, make_tracker):
        tracker = make_tracker()
        _walk_to(tracker, Phase.VALIDATION)
        tracker.record_issues("est:A-1", [
            ValidationIssue.error("quantity_must_be_positive", "bad", field="quantity"),
            ValidationIssue.warning("low_completeness", "sparse"),
        ])

        errors = tracker.errors(Phase.VALIDATION)
        assert [e.code for e in errors] == ["quantity_must_be_positive", "low_completeness"]
        assert errors[0].external_id == "est:A-1"
        assert errors[0].details["field"] == "quantity"
        assert errors[1].severity == Severity.WARNING
        assert tracker.errors(Phase.IMPORT) == []

    def test_discard_after_sequence_keeps_earlier_batches(self, make_tracker):
        tracker = make_tracker()
        _walk_to(tracker, Phase.IMPORT)
        tracker.record_error("constraint_violation", "a", batch_sequence=1)
        tracker.record_error("constraint_violation", "b", batch_sequence=3)

        assert tracker.discard_errors(Phase.IMPORT, after_sequence=1) == 1
        assert [e.message for e in tracker.errors(Phase.IMPORT)] == ["a"]


class TestEvents:
    def test_lifecycle_events_are_delivered_in_order(self, make_tracker):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.add_listener(seen.append)
        tracker = make_tracker(dispatcher=dispatcher, progress_interval=10)

        tracker.enter_phase(Phase.DISCOVERY)
        tracker.record_progress(processed=25)
        tracker.complete_phase()
        tracker.cancel()
        dispatcher.flush()
        dispatcher.close()

        assert [e.event_type for e in seen] == [
            JobEventType.PHASE_ENTERED,
            JobEventType.PROGRESS,
            JobEventType.PHASE_COMPLETED,
            JobEventType.JOB_CANCELED,
        ]
        assert seen[1].payload["processed"] == 25
