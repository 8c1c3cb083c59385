"""
Staging ORM model for migration jobs.

Contract:
    One row per raw record extracted for a job, keyed by
    (job_id, source_id, ordinal).  Raw data, the canonical candidate and
    both issue lists are stored as typed JSON so Decimals and dates round
    trip exactly.

Architecture: migration_ingestion/models. Imports from migration_kernel.db.base only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Float, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from migration_ingestion.domain.codec import decode_fields, encode_fields
from migration_ingestion.domain.types import (
    CanonicalRecord,
    RawRecord,
    SourceProvenance,
    StagedRecordStatus,
)
from migration_kernel.db.base import TimestampedBase
from migration_kernel.domain.dtos import ValidationIssue

if TYPE_CHECKING:
    from migration_ingestion.staging.base import StagedRecord


def issues_to_json(issues: tuple[ValidationIssue, ...]) -> list[dict[str, Any]] | None:
    if not issues:
        return None
    return [encode_fields(i.to_dict()) for i in issues]


def json_to_issues(data: list[dict[str, Any]] | None) -> tuple[ValidationIssue, ...]:
    if not data:
        return ()
    return tuple(ValidationIssue.from_dict(decode_fields(item)) for item in data)


class StagedRecordModel(TimestampedBase):
    """One staged source record and everything later phases attached to it."""

    __tablename__ = "migration_staged_records"

    __table_args__ = (
        UniqueConstraint("job_id", "source_id", "ordinal", name="uq_staged_record_position"),
        Index("ix_staged_records_job_order", "job_id", "source_index", "ordinal"),
        Index("ix_staged_records_job_status", "job_id", "status"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(String(200), nullable=False)
    source_index: Mapped[int] = mapped_column(nullable=False)
    ordinal: Mapped[int] = mapped_column(nullable=False)
    row_number: Mapped[int] = mapped_column(nullable=False)
    locator: Mapped[str | None] = mapped_column(String(500), nullable=True)
    external_id: Mapped[str] = mapped_column(String(300), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    canonical_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    natural_key: Mapped[list | None] = mapped_column(JSON, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mapping_issues: Mapped[list | None] = mapped_column(JSON, nullable=True)
    validation_issues: Mapped[list | None] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def to_dto(self) -> StagedRecord:
        from migration_ingestion.staging.base import StagedRecord

        provenance = SourceProvenance(
            source_id=self.source_id,
            ordinal=self.ordinal,
            row_number=self.row_number,
            locator=self.locator,
        )
        canonical = None
        if self.canonical_fields is not None:
            canonical = CanonicalRecord(
                entity_type=self.entity_type,
                external_id=self.external_id,
                fields=decode_fields(self.canonical_fields),
                natural_key=tuple(self.natural_key or ()),
                fingerprint=self.fingerprint or "",
                provenance=provenance,
                mapping_confidence=self.confidence,
            )
        return StagedRecord(
            job_id=self.job_id,
            source_index=self.source_index,
            entity_type=self.entity_type,
            raw=RawRecord(
                external_id=self.external_id,
                data=decode_fields(self.raw_data),
                provenance=provenance,
            ),
            status=StagedRecordStatus(self.status),
            canonical=canonical,
            mapping_issues=json_to_issues(self.mapping_issues),
            validation_issues=json_to_issues(self.validation_issues),
            confidence=self.confidence,
            needs_review=self.needs_review,
        )

    @classmethod
    def from_raw(
        cls, job_id: str, source_index: int, entity_type: str, raw: RawRecord
    ) -> StagedRecordModel:
        return cls(
            job_id=job_id,
            source_id=raw.provenance.source_id,
            source_index=source_index,
            ordinal=raw.provenance.ordinal,
            row_number=raw.provenance.row_number,
            locator=raw.provenance.locator,
            external_id=raw.external_id,
            entity_type=entity_type,
            status=StagedRecordStatus.EXTRACTED.value,
            raw_data=encode_fields(raw.data),
            confidence=0.0,
            needs_review=False,
        )
