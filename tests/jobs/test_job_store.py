"""
Contract tests run against both JobStore implementations.

Datetimes are not compared for the SQL store: SQLite drops tzinfo.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from migration_ingestion.domain.types import MigrationScope, SourceDescriptor
from migration_jobs import InMemoryJobStore, SqlJobStore
from migration_jobs.domain.types import (
    Checkpoint,
    JobCounters,
    JobErrorRecord,
    MigrationJob,
    Phase,
    PhaseProgress,
)
from migration_kernel.domain.dtos import Severity
from migration_kernel.exceptions import JobImmutableError
from migration_reconciliation.domain import (
    EntityReconciliation,
    FieldTotal,
    ReconciliationReport,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryJobStore()
    return SqlJobStore(session_factory)


def _job(job_id: str = "job-1", phase: Phase = Phase.PENDING, **overrides) -> MigrationJob:
    values = dict(
        job_id=job_id,
        source_system="procore-export",
        scope=MigrationScope(
            sources=(SourceDescriptor(source_id="est", system="memory", entity_type="cost_item"),),
            projects=("PRJ-100",),
        ),
        rule_set_id="cost_items_v1",
        phase=phase,
        created_at=NOW,
    )
    values.update(overrides)
    return MigrationJob(**values)


def _checkpoint(sequence: int, records_through: int, job_id: str = "job-1") -> Checkpoint:
    return Checkpoint(
        job_id=job_id,
        phase=Phase.IMPORT,
        sequence=sequence,
        records_through=records_through,
        counters=JobCounters(imported=records_through),
        recorded_at=NOW,
    )


def _error(message: str, *, phase: Phase = Phase.IMPORT, batch_sequence: int | None = None):
    return JobErrorRecord(
        job_id="job-1",
        phase=phase,
        code="constraint_violation",
        message=message,
        severity=Severity.ERROR,
        external_id=f"est:{message}",
        batch_sequence=batch_sequence,
    )


class TestJobs:
    def test_save_and_get(self, store):
        store.save_job(_job(
            phase=Phase.IMPORT,
            counters=JobCounters(discovered=3, imported=2, failed=1),
            progress=(PhaseProgress(phase=Phase.IMPORT, processed=2, estimated_total=3),),
            active_phase=Phase.IMPORT,
        ))

        job = store.get_job("job-1")
        assert job.phase == Phase.IMPORT
        assert job.rule_set_id == "cost_items_v1"
        assert job.scope.projects == ("PRJ-100",)
        assert job.scope.sources[0].source_id == "est"
        assert job.counters == JobCounters(discovered=3, imported=2, failed=1)
        assert job.progress_for(Phase.IMPORT).estimated_total == 3

    def test_unknown_job_is_none(self, store):
        assert store.get_job("missing") is None

    def test_save_updates_in_place(self, store):
        store.save_job(_job())
        store.save_job(_job(phase=Phase.DISCOVERY, correlation_id="corr-9"))
        assert store.get_job("job-1").phase == Phase.DISCOVERY
        assert store.get_job("job-1").correlation_id == "corr-9"
        assert len(store.list_jobs()) == 1

    def test_list_jobs_filters_by_phase(self, store):
        store.save_job(_job("job-a"))
        store.save_job(_job("job-b", phase=Phase.IMPORT))
        store.save_job(_job("job-c", phase=Phase.IMPORT))

        assert [j.job_id for j in store.list_jobs()] == ["job-a", "job-b", "job-c"]
        assert [j.job_id for j in store.list_jobs(Phase.IMPORT)] == ["job-b", "job-c"]
        assert store.list_jobs(Phase.FAILED) == []

    @pytest.mark.parametrize("terminal", [Phase.COMPLETED, Phase.FAILED, Phase.CANCELED])
    def test_terminal_job_cannot_be_rewritten(self, store, terminal):
        store.save_job(_job(phase=terminal, error_summary="done"))
        with pytest.raises(JobImmutableError):
            store.save_job(_job(phase=Phase.DISCOVERY))
        assert store.get_job("job-1").phase == terminal


class TestCheckpoints:
    def test_latest_is_last_saved(self, store):
        store.save_checkpoint(_checkpoint(-1, 0))
        store.save_checkpoint(_checkpoint(0, 100))
        store.save_checkpoint(_checkpoint(1, 200))

        latest = store.latest_checkpoint("job-1")
        assert (latest.sequence, latest.records_through) == (1, 200)
        assert latest.counters.imported == 200
        assert [c.sequence for c in store.checkpoints("job-1")] == [-1, 0, 1]

    def test_checkpoints_are_per_job(self, store):
        store.save_checkpoint(_checkpoint(0, 100, job_id="job-a"))
        assert store.latest_checkpoint("job-b") is None
        assert store.checkpoints("job-b") == []

    def test_details_round_trip(self, store):
        store.save_checkpoint(replace(_checkpoint(-1, 0), details={"source_id": "est"}))
        assert store.latest_checkpoint("job-1").details == {"source_id": "est"}


class TestErrors:
    def test_errors_keep_insertion_order_and_filter(self, store):
        store.append_errors([
            _error("a", phase=Phase.VALIDATION),
            _error("b", batch_sequence=0),
            _error("c", batch_sequence=1),
        ])

        assert [e.message for e in store.list_errors("job-1")] == ["a", "b", "c"]
        assert [e.message for e in store.list_errors("job-1", Phase.IMPORT)] == ["b", "c"]
        assert [e.message for e in store.list_errors("job-1", limit=2)] == ["a", "b"]
        assert store.list_errors("job-2") == []

    def test_details_and_severity_round_trip(self, store):
        store.append_errors([replace(
            _error("a"),
            severity=Severity.WARNING,
            details={"field": "amount", "value": Decimal("-4.50")},
        )])
        error = store.list_errors("job-1")[0]
        assert error.severity == Severity.WARNING
        assert error.external_id == "est:a"
        assert error.details == {"field": "amount", "value": Decimal("-4.50")}

    def test_discard_after_sequence(self, store):
        store.append_errors([
            _error("kept", batch_sequence=0),
            _error("dropped", batch_sequence=2),
            _error("unbatched"),
            _error("other phase", phase=Phase.VALIDATION),
        ])

        assert store.discard_errors("job-1", Phase.IMPORT, after_sequence=1) == 1
        assert [e.message for e in store.list_errors("job-1")] == [
            "kept", "unbatched", "other phase",
        ]

    def test_discard_whole_phase(self, store):
        store.append_errors([_error("a", batch_sequence=0), _error("b")])
        assert store.discard_errors("job-1", Phase.IMPORT) == 2
        assert store.list_errors("job-1") == []

    def test_empty_append_is_a_no_op(self, store):
        store.append_errors([])
        assert store.list_errors("job-1") == []


class TestReports:
    def _report(self, passed: bool) -> ReconciliationReport:
        entity = EntityReconciliation(
            entity_type="cost_item",
            source_count=3,
            excluded_count=1,
            expected_count=2,
            target_count=2,
            count_variance=0,
            matched_count=2,
            totals=(FieldTotal(
                field="amount",
                source_total=Decimal("20.00"),
                target_total=Decimal("20.00"),
                variance=Decimal("0.00"),
                tolerance=Decimal("0.01"),
                passed=True,
            ),),
        )
        return ReconciliationReport(
            job_id="job-1",
            entities=(entity,),
            passed=passed,
            count_tolerance=0,
            absolute_tolerance=Decimal("0.01"),
            relative_tolerance=Decimal("0.00001"),
            generated_at=NOW,
        )

    def test_report_round_trip(self, store):
        store.save_report(self._report(passed=True))
        report = store.get_report("job-1")
        assert report == self._report(passed=True)
        assert report.entity("cost_item").totals[0].source_total == Decimal("20.00")

    def test_report_is_replaced(self, store):
        store.save_report(self._report(passed=False))
        store.save_report(self._report(passed=True))
        assert store.get_report("job-1").passed

    def test_missing_report(self, store):
        assert store.get_report("job-1") is None
