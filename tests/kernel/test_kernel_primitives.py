"""
Kernel primitives: the exception taxonomy, clocks, ValidationIssue and the
session scope helper.
"""

import inspect
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from migration_ingestion.models import StagedRecordModel
from migration_kernel import exceptions
from migration_kernel.db.engine import session_scope
from migration_kernel.domain.clock import DeterministicClock, SystemClock
from migration_kernel.domain.dtos import Severity, ValidationIssue
from migration_kernel.exceptions import (
    DestinationError,
    MigrationError,
    PermanentDestinationError,
    PermanentSourceError,
    RetriesExhaustedError,
    SourceError,
    TransientDestinationError,
    TransientSourceError,
    UnsupportedSchemaVersionError,
)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


def _exception_classes():
    return [
        cls for _, cls in inspect.getmembers(exceptions, inspect.isclass)
        if issubclass(cls, MigrationError)
    ]


class TestExceptionTaxonomy:
    def test_every_exception_has_a_distinct_code(self):
        codes = [cls.code for cls in _exception_classes()]
        assert len(codes) == len(set(codes))
        assert all(code.isupper() for code in codes)

    def test_retries_exhausted_is_transient_by_origin(self):
        exc = RetriesExhaustedError(3, 4, "deadlock")
        assert isinstance(exc, TransientDestinationError)
        assert isinstance(exc, DestinationError)
        assert (exc.sequence, exc.attempts) == (3, 4)
        assert "batch 3 failed after 4 attempts" in str(exc)

    def test_permanent_destination_error_defaults(self):
        exc = PermanentDestinationError("unique violation", "est:A-1")
        assert exc.error_code == "constraint_violation"
        assert exc.external_id == "est:A-1"
        assert "for est:A-1" in str(exc)

    def test_source_errors(self):
        assert issubclass(TransientSourceError, SourceError)
        exc = UnsupportedSchemaVersionError("legacy", "9", ("3", "4"))
        assert isinstance(exc, PermanentSourceError)
        assert exc.source_id == "legacy"
        assert "supported: 3, 4" in exc.reason


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class TestClock:
    def test_system_clock_is_timezone_aware(self):
        assert SystemClock().now().tzinfo is not None
        assert SystemClock().now_utc().utcoffset() == timedelta(0)

    def test_deterministic_clock_is_stable_until_advanced(self):
        start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        clock = DeterministicClock(start)
        assert clock.now() == clock.now() == start
        clock.advance(90)
        assert clock.now() == start + timedelta(seconds=90)
        assert clock.tick() == start + timedelta(seconds=91)

    def test_set_time_resets_advance(self):
        clock = DeterministicClock()
        clock.advance(10)
        target = datetime(2026, 1, 1, tzinfo=timezone.utc)
        clock.set_time(target)
        assert clock.now() == target


# ---------------------------------------------------------------------------
# ValidationIssue
# ---------------------------------------------------------------------------


class TestValidationIssue:
    def test_factories_set_severity(self):
        error = ValidationIssue.error("amount_mismatch", "bad", field="amount")
        warning = ValidationIssue.warning("low_completeness", "sparse")
        assert error.is_error and error.severity == Severity.ERROR
        assert not warning.is_error and warning.severity == Severity.WARNING
        assert error.field == "amount"

    def test_dict_round_trip_keeps_details(self):
        issue = ValidationIssue.error(
            "value_above_maximum", "too big", field="quantity", value="10", maximum="5",
        )
        assert ValidationIssue.from_dict(issue.to_dict()) == issue

    def test_details_default_is_a_fresh_dict(self):
        first = ValidationIssue(code="missing_value", message="m", field="code")
        second = ValidationIssue(code="missing_value", message="m")
        assert first.details == {} and second.details == {}
        assert first.details is not second.details
        assert first.field == "code" and second.field is None


# ---------------------------------------------------------------------------
# session_scope
# ---------------------------------------------------------------------------


def _staged_row(ordinal: int) -> StagedRecordModel:
    return StagedRecordModel(
        job_id="job-1",
        source_id="est",
        source_index=0,
        ordinal=ordinal,
        entity_type="cost_item",
        external_id=f"est:{ordinal}",
        status="extracted",
        raw_data={"Code": str(ordinal)},
        row_number=ordinal + 1,
    )


class TestSessionScope:
    def test_commits_on_success(self, session_factory):
        with session_scope(session_factory) as session:
            session.add(_staged_row(0))
        with session_scope(session_factory) as session:
            assert session.scalars(select(StagedRecordModel)).one().external_id == "est:0"

    def test_rolls_back_and_reraises(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(_staged_row(0))
                session.flush()
                raise RuntimeError("abort")
        with session_scope(session_factory) as session:
            assert session.scalars(select(StagedRecordModel)).all() == []
