"""
Module: migration_batch.models.destination
Responsibility: ORM persistence for migrated canonical records -- the generic
    destination every importer transaction writes to.
Architecture position: Batch > Models.  May import from migration_kernel.db
    and the ingestion codec only.

Invariants enforced:
    - Idempotency key uniqueness: UNIQUE (job_id, entity_type, external_id).
      A record is stored at most once per job; re-imports update in place.
    - Decimal precision: every Decimal field is mirrored into
      migrated_record_values as Numeric(38, 9) so financial totals are
      summed by the database.  Dialects without a native decimal type sum
      the exact payload values instead.
    - revision starts at 1 and increments on every fingerprint change.

Failure modes:
    - IntegrityError on a duplicate idempotency key (two transactions racing
      on the same record).
    - DataError when a value does not fit its column.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from migration_batch.domain.types import StoredRecord
from migration_ingestion.domain.codec import decode_fields, encode_fields
from migration_ingestion.domain.types import CanonicalRecord
from migration_kernel.db.base import TimestampedBase, UUIDString


def natural_key_text(natural_key: tuple[str, ...]) -> str:
    return "|".join(natural_key)


class MigratedRecordModel(TimestampedBase):
    """One canonical record as it landed in the destination."""

    __tablename__ = "migrated_records"

    __table_args__ = (
        UniqueConstraint(
            "job_id", "entity_type", "external_id",
            name="uq_migrated_record_idempotency",
        ),
        Index("ix_migrated_records_natural_key", "entity_type", "natural_key"),
        Index("ix_migrated_records_job_entity", "job_id", "entity_type"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str] = mapped_column(String(300), nullable=False)
    natural_key: Mapped[str] = mapped_column(String(500), nullable=False)
    project_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    last_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    values: Mapped[list[MigratedRecordValueModel]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @classmethod
    def from_canonical(
        cls, job_id: str, record: CanonicalRecord, transaction_id: str
    ) -> MigratedRecordModel:
        model = cls(
            job_id=job_id,
            entity_type=record.entity_type,
            external_id=record.external_id,
            revision=1,
        )
        model.apply(record, transaction_id)
        return model

    def apply(self, record: CanonicalRecord, transaction_id: str) -> None:
        """Overwrite payload, fingerprint and numeric mirrors from ``record``."""
        project = record.get("project_code")
        self.natural_key = natural_key_text(record.natural_key)
        self.project_code = str(project) if project is not None else None
        self.fingerprint = record.fingerprint
        self.payload = encode_fields(record.fields)
        self.last_transaction_id = transaction_id

        # Mirrors are updated in place: the unit of work inserts before it
        # deletes, so swapping in new rows would collide on (record_id, field_name).
        numeric = {
            name: value for name, value in record.fields.items()
            if isinstance(value, Decimal)
        }
        existing = {v.field_name: v for v in self.values}
        for name, mirror in existing.items():
            if name in numeric:
                mirror.value = numeric[name]
            else:
                self.values.remove(mirror)
        for name in sorted(numeric.keys() - existing.keys()):
            self.values.append(MigratedRecordValueModel(field_name=name, value=numeric[name]))

    def to_dto(self) -> StoredRecord:
        return StoredRecord(
            job_id=self.job_id,
            entity_type=self.entity_type,
            external_id=self.external_id,
            fingerprint=self.fingerprint,
            revision=self.revision,
            natural_key=tuple(self.natural_key.split("|")),
            fields=decode_fields(self.payload),
        )

    def __repr__(self) -> str:
        return f"<MigratedRecord {self.entity_type}:{self.external_id} rev={self.revision}>"


class MigratedRecordValueModel(TimestampedBase):
    """Numeric mirror of one Decimal field, for SUM() in SQL."""

    __tablename__ = "migrated_record_values"

    __table_args__ = (
        UniqueConstraint("record_id", "field_name", name="uq_migrated_value_field"),
        Index("ix_migrated_values_field", "field_name"),
    )

    record_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("migrated_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    record: Mapped[MigratedRecordModel] = relationship(back_populates="values")
