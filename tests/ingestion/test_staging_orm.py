"""Tests for the in-memory and SQL staging stores."""

from datetime import date
from decimal import Decimal

import pytest

from migration_ingestion.domain.types import (
    CanonicalRecord,
    RawRecord,
    SourceProvenance,
    StagedRecordStatus,
)
from migration_ingestion.staging import (
    InMemoryStagingStore,
    MappingUpdate,
    SqlStagingStore,
    ValidationUpdate,
)
from migration_kernel.domain.dtos import ValidationIssue

JOB = "job-1"


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryStagingStore()
    return SqlStagingStore(session_factory, page_size=3)


def _raws(source_id: str, count: int, start: int = 0) -> list[RawRecord]:
    return [
        RawRecord(
            external_id=f"{source_id}:{i}",
            data={"Code": f"C{i}", "Qty": Decimal("1.50")},
            provenance=SourceProvenance(source_id, i, i + 1, locator="est.csv"),
        )
        for i in range(start, start + count)
    ]


def _canonical(raw: RawRecord) -> CanonicalRecord:
    return CanonicalRecord(
        entity_type="cost_item",
        external_id=raw.external_id,
        fields={"code": raw.data["Code"], "quantity": Decimal("1.50"),
                "start": date(2026, 3, 4)},
        natural_key=("PRJ", raw.data["Code"]),
        fingerprint="f" * 64,
        provenance=raw.provenance,
    )


class TestStagingStore:
    def test_records_come_back_in_source_then_ordinal_order(self, store):
        store.add_raw(JOB, 1, "cost_item", _raws("b", 4))
        store.add_raw(JOB, 0, "cost_item", _raws("a", 4))

        ids = [r.external_id for r in store.iter_records(JOB)]

        assert ids == ["a:0", "a:1", "a:2", "a:3", "b:0", "b:1", "b:2", "b:3"]

    def test_raw_values_round_trip_exactly(self, store):
        store.add_raw(JOB, 0, "cost_item", _raws("a", 1))
        staged = next(store.iter_records(JOB))
        assert staged.raw.data["Qty"] == Decimal("1.50")
        assert staged.raw.provenance.locator == "est.csv"
        assert staged.status == StagedRecordStatus.EXTRACTED

    def test_offset_skips_within_filtered_sequence(self, store):
        store.add_raw(JOB, 0, "cost_item", _raws("a", 7))
        ids = [r.ordinal for r in store.iter_records(JOB, offset=4)]
        assert ids == [4, 5, 6]

    def test_mapping_then_validation_updates(self, store):
        raws = _raws("a", 2)
        store.add_raw(JOB, 0, "cost_item", raws)
        warning = ValidationIssue.warning("low_completeness", "sparse")
        store.set_mapping(JOB, [
            MappingUpdate("a", 0, StagedRecordStatus.MAPPED, _canonical(raws[0]),
                          (warning,), confidence=0.9),
            MappingUpdate("a", 1, StagedRecordStatus.MAPPING_REJECTED, None,
                          (ValidationIssue.error("unmapped_required_field", "x"),)),
        ])
        store.set_validation(JOB, [
            ValidationUpdate("a", 0, StagedRecordStatus.VALID, ()),
        ])

        first, second = list(store.iter_records(JOB))
        assert first.status == StagedRecordStatus.VALID
        assert first.canonical.fields["quantity"] == Decimal("1.50")
        assert first.canonical.fields["start"] == date(2026, 3, 4)
        assert first.canonical.natural_key == ("PRJ", "C0")
        assert first.mapping_issues == (warning,)
        assert first.confidence == 0.9
        assert second.canonical is None
        assert second.issues[0].code == "unmapped_required_field"

    def test_status_filter_and_counts(self, store):
        raws = _raws("a", 3)
        store.add_raw(JOB, 0, "cost_item", raws)
        store.set_mapping(JOB, [
            MappingUpdate("a", 0, StagedRecordStatus.MAPPED, _canonical(raws[0])),
            MappingUpdate("a", 1, StagedRecordStatus.OUT_OF_SCOPE, None),
        ])

        mapped = list(store.iter_records(JOB, [StagedRecordStatus.MAPPED]))
        assert [r.ordinal for r in mapped] == [0]
        assert store.count(JOB) == 3
        assert store.count_by_status(JOB) == {
            StagedRecordStatus.MAPPED: 1,
            StagedRecordStatus.OUT_OF_SCOPE: 1,
            StagedRecordStatus.EXTRACTED: 1,
        }

    def test_reset_validation_returns_to_mapped(self, store):
        raws = _raws("a", 1)
        store.add_raw(JOB, 0, "cost_item", raws)
        store.set_mapping(JOB, [
            MappingUpdate("a", 0, StagedRecordStatus.MAPPED, _canonical(raws[0])),
        ])
        store.set_validation(JOB, [
            ValidationUpdate("a", 0, StagedRecordStatus.INVALID,
                             (ValidationIssue.error("parent_not_found", "x"),)),
        ])

        store.reset_validation(JOB)

        staged = next(store.iter_records(JOB))
        assert staged.status == StagedRecordStatus.MAPPED
        assert staged.validation_issues == ()
        assert staged.canonical is not None

    def test_reset_mapping_returns_to_extracted(self, store):
        raws = _raws("a", 1)
        store.add_raw(JOB, 0, "cost_item", raws)
        store.set_mapping(JOB, [
            MappingUpdate("a", 0, StagedRecordStatus.MAPPED, _canonical(raws[0])),
        ])

        store.reset_mapping(JOB)

        staged = next(store.iter_records(JOB))
        assert staged.status == StagedRecordStatus.EXTRACTED
        assert staged.canonical is None

    def test_clear_one_source_leaves_others(self, store):
        store.add_raw(JOB, 0, "cost_item", _raws("a", 2))
        store.add_raw(JOB, 1, "cost_item", _raws("b", 2))
        store.add_raw("job-2", 0, "cost_item", _raws("a", 2))

        store.clear(JOB, "a")

        assert [r.external_id for r in store.iter_records(JOB)] == ["b:0", "b:1"]
        assert store.count("job-2") == 2

        store.clear(JOB)
        assert store.count(JOB) == 0
