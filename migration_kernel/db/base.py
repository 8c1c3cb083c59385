"""
Module: migration_kernel.db.base
Responsibility: Declarative base shared by the staging, job and destination
    tables.  Fixes the column types every model inherits so a Decimal
    amount is stored the same way in staging, the destination mirror and
    the reconciliation report.
Architecture position: Kernel > DB.  Imported by every ``models`` package;
    imports nothing from the migration layers.

Invariants enforced:
    - Decimal columns are Numeric(38, 9).  Amounts and quantities never
      round-trip through float.
    - Surrogate keys are uuid4 values stored as String(36), portable between
      PostgreSQL and the SQLite files used for dry runs.
    - Constraint names follow one convention so PostgreSQL DDL is stable.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, MetaData, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class UUIDString(TypeDecorator):
    """uuid.UUID in Python, String(36) in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TimestampedBase(Base):
    """
    Row bookkeeping columns.

    These record when the database wrote the row.  Job-level times
    (submitted, checkpoint recorded_at, report generated_at) are separate
    columns filled from the injected Clock.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
