"""
SQL destination over the generic ``migrated_records`` table.

Each transaction owns one session.  Concurrent transactions are bounded by
a BoundedSemaphore sized below the connection pool so importer workers
never starve the job store or staging writers of connections.

SQLAlchemy errors are translated at this boundary:
    OperationalError (deadlock, lock timeout, serialization failure,
    statement timeout, lost connection) -> TransientDestinationError
    IntegrityError / DataError                -> PermanentDestinationError
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from decimal import Decimal
from typing import TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session, sessionmaker

from migration_batch.destinations.base import decide_upsert
from migration_batch.domain.types import StoredRecord, UpsertOutcome
from migration_batch.models.destination import (
    MigratedRecordModel,
    MigratedRecordValueModel,
    natural_key_text,
)
from migration_config.schema import RevisionPolicy
from migration_ingestion.domain.codec import decode_value
from migration_ingestion.domain.types import CanonicalRecord
from migration_kernel.db.engine import session_scope
from migration_kernel.exceptions import (
    PermanentDestinationError,
    TransientDestinationError,
)
from migration_kernel.logging_config import get_logger

logger = get_logger("batch.destination.sql")

T = TypeVar("T")

M = MigratedRecordModel
V = MigratedRecordValueModel

_SUM_CHUNK = 1000


def _translate(exc: Exception, external_id: str | None = None) -> Exception:
    if isinstance(exc, sa_exc.OperationalError):
        return TransientDestinationError(str(exc.orig or exc))
    if isinstance(exc, sa_exc.IntegrityError):
        return PermanentDestinationError(
            str(exc.orig or exc), external_id=external_id, error_code="constraint_violation"
        )
    if isinstance(exc, sa_exc.DataError):
        return PermanentDestinationError(
            str(exc.orig or exc), external_id=external_id, error_code="invalid_data"
        )
    return exc


class SqlDestinationTxn:
    def __init__(
        self,
        destination: SqlDestination,
        session: Session,
        job_id: str,
        sequence: int | None,
    ):
        self._destination = destination
        self._session = session
        self._job_id = job_id
        self._sequence = sequence
        self._closed = False
        self._transaction_id = uuid.uuid4().hex

    @property
    def transaction_id(self) -> str:
        return self._transaction_id

    def _guard(self, fn: Callable[[], T], external_id: str | None = None) -> T:
        try:
            return fn()
        except sa_exc.SQLAlchemyError as exc:
            raise _translate(exc, external_id) from exc

    def upsert(self, record: CanonicalRecord) -> UpsertOutcome:
        if self._closed:
            raise RuntimeError("transaction already closed")

        def _apply() -> UpsertOutcome:
            existing = self._session.scalars(
                select(M).where(
                    M.job_id == self._job_id,
                    M.entity_type == record.entity_type,
                    M.external_id == record.external_id,
                )
            ).one_or_none()
            outcome = decide_upsert(
                existing.fingerprint if existing is not None else None,
                record,
                self._destination.revision_policy,
            )
            if outcome == UpsertOutcome.INSERTED:
                self._session.add(
                    M.from_canonical(self._job_id, record, self._transaction_id)
                )
            elif outcome == UpsertOutcome.UPDATED:
                existing.apply(record, self._transaction_id)
                existing.revision = existing.revision + 1
            if outcome != UpsertOutcome.UNCHANGED:
                self._session.flush()
            return outcome

        return self._guard(_apply, record.external_id)

    def commit(self) -> None:
        if self._closed:
            raise RuntimeError("transaction already closed")
        self._guard(self._session.commit)
        self._close()

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            self._session.rollback()
        finally:
            self._close()

    def _close(self) -> None:
        self._closed = True
        self._session.close()
        self._destination._release()


class SqlDestination:
    """
    Destination backed by SQLAlchemy.

    Args:
        session_factory: Factory bound to the destination engine.
        revision_policy: What to do when a known record changes.
        max_connections: Concurrent transactions allowed.
        transaction_timeout_seconds: Per-statement timeout on PostgreSQL and
            the wait limit for a free connection slot.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        revision_policy: RevisionPolicy = RevisionPolicy.OVERWRITE,
        max_connections: int = 8,
        transaction_timeout_seconds: float = 60.0,
    ):
        self._factory = session_factory
        self.revision_policy = revision_policy
        self._timeout = transaction_timeout_seconds
        self._slots = threading.BoundedSemaphore(max_connections)

    def begin_batch(self, job_id: str, sequence: int | None = None) -> SqlDestinationTxn:
        if not self._slots.acquire(timeout=self._timeout):
            raise TransientDestinationError("no destination connection available")
        session = self._factory()
        try:
            bind = session.get_bind()
            if bind.dialect.name == "postgresql":
                timeout_ms = int(self._timeout * 1000)
                session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        except sa_exc.SQLAlchemyError as exc:
            session.close()
            self._release()
            raise _translate(exc) from exc
        except BaseException:
            session.close()
            self._release()
            raise
        logger.debug("destination_txn_begun", extra={"job_id": job_id, "sequence": sequence})
        return SqlDestinationTxn(self, session, job_id, sequence)

    def _release(self) -> None:
        self._slots.release()

    def count_records(self, job_id: str, entity_type: str) -> int:
        with session_scope(self._factory) as session:
            return session.scalar(
                select(func.count(M.id)).where(
                    M.job_id == job_id, M.entity_type == entity_type
                )
            ) or 0

    def sum_field(self, job_id: str, entity_type: str, field_name: str) -> Decimal:
        """
        Exact total of one Decimal field over a job's records.

        Dialects without a native decimal type (SQLite stores Numeric as
        REAL) would sum in floating point, so there the exact payload
        values are added up in Python instead.
        """
        with session_scope(self._factory) as session:
            if not session.get_bind().dialect.supports_native_decimal:
                return self._sum_payloads(session, job_id, entity_type, field_name)
            total = session.scalar(
                select(func.sum(V.value))
                .join(M, V.record_id == M.id)
                .where(
                    M.job_id == job_id,
                    M.entity_type == entity_type,
                    V.field_name == field_name,
                )
            )
        return Decimal("0") if total is None else Decimal(total)

    def _sum_payloads(
        self, session: Session, job_id: str, entity_type: str, field_name: str
    ) -> Decimal:
        total = Decimal("0")
        payloads = session.scalars(
            select(M.payload)
            .where(M.job_id == job_id, M.entity_type == entity_type)
            .execution_options(yield_per=_SUM_CHUNK)
        )
        for payload in payloads:
            value = decode_value(payload.get(field_name))
            if isinstance(value, Decimal):
                total += value
        return total

    def external_ids(self, job_id: str, entity_type: str) -> set[str]:
        with session_scope(self._factory) as session:
            return set(session.scalars(
                select(M.external_id).where(
                    M.job_id == job_id, M.entity_type == entity_type
                )
            ))

    def has_natural_key(self, entity_type: str, natural_key: tuple[str, ...]) -> bool:
        with session_scope(self._factory) as session:
            found = session.scalar(
                select(M.id).where(
                    M.entity_type == entity_type,
                    M.natural_key == natural_key_text(natural_key),
                ).limit(1)
            )
        return found is not None

    def get_record(
        self, job_id: str, entity_type: str, external_id: str
    ) -> StoredRecord | None:
        with session_scope(self._factory) as session:
            model = session.scalars(
                select(M).where(
                    M.job_id == job_id,
                    M.entity_type == entity_type,
                    M.external_id == external_id,
                )
            ).one_or_none()
            return model.to_dto() if model is not None else None
