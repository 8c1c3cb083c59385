"""
SQL-backed staging store.

Reads page through the job's records by (source_index, ordinal) keyset, each
page in its own short session, so a phase can update rows while it walks
them and nothing holds a cursor open across phases.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from migration_ingestion.domain.codec import encode_fields
from migration_ingestion.domain.types import RawRecord, StagedRecordStatus
from migration_ingestion.models.staging import StagedRecordModel, issues_to_json
from migration_ingestion.staging.base import MappingUpdate, StagedRecord, ValidationUpdate
from migration_kernel.db.engine import session_scope
from migration_kernel.logging_config import get_logger

logger = get_logger("ingestion.staging")

M = StagedRecordModel


class SqlStagingStore:
    def __init__(self, session_factory: sessionmaker[Session], page_size: int = 1000):
        self._factory = session_factory
        self._page_size = page_size

    def _position(self, job_id: str, source_id: str, ordinal: int):
        return and_(M.job_id == job_id, M.source_id == source_id, M.ordinal == ordinal)

    def clear(self, job_id: str, source_id: str | None = None) -> None:
        stmt = delete(M).where(M.job_id == job_id)
        if source_id is not None:
            stmt = stmt.where(M.source_id == source_id)
        with session_scope(self._factory) as session:
            result = session.execute(stmt)
        logger.debug(
            "staging_cleared",
            extra={"job_id": job_id, "source_id": source_id, "rows": result.rowcount},
        )

    def add_raw(
        self,
        job_id: str,
        source_index: int,
        entity_type: str,
        records: Sequence[RawRecord],
    ) -> None:
        if not records:
            return
        with session_scope(self._factory) as session:
            session.add_all(
                M.from_raw(job_id, source_index, entity_type, raw) for raw in records
            )

    def iter_records(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
        offset: int = 0,
    ) -> Iterator[StagedRecord]:
        status_values = [s.value for s in statuses] if statuses is not None else None
        last: tuple[int, int] | None = None
        pending_offset = offset
        while True:
            stmt = select(M).where(M.job_id == job_id)
            if status_values is not None:
                stmt = stmt.where(M.status.in_(status_values))
            if source_id is not None:
                stmt = stmt.where(M.source_id == source_id)
            if last is not None:
                stmt = stmt.where(or_(
                    M.source_index > last[0],
                    and_(M.source_index == last[0], M.ordinal > last[1]),
                ))
            stmt = stmt.order_by(M.source_index, M.ordinal).limit(self._page_size)
            if pending_offset:
                stmt = stmt.offset(pending_offset)
                pending_offset = 0
            with session_scope(self._factory) as session:
                page = [m.to_dto() for m in session.scalars(stmt)]
            if not page:
                return
            yield from page
            if len(page) < self._page_size:
                return
            last = (page[-1].source_index, page[-1].ordinal)

    def set_mapping(self, job_id: str, updates: Sequence[MappingUpdate]) -> None:
        with session_scope(self._factory) as session:
            for u in updates:
                canonical = u.canonical
                session.execute(
                    update(M)
                    .where(self._position(job_id, u.source_id, u.ordinal))
                    .values(
                        status=u.status.value,
                        canonical_fields=encode_fields(canonical.fields) if canonical else None,
                        natural_key=list(canonical.natural_key) if canonical else None,
                        fingerprint=canonical.fingerprint if canonical else None,
                        mapping_issues=issues_to_json(tuple(u.issues)),
                        validation_issues=None,
                        confidence=u.confidence,
                        needs_review=u.needs_review,
                    )
                )

    def set_validation(self, job_id: str, updates: Sequence[ValidationUpdate]) -> None:
        with session_scope(self._factory) as session:
            for u in updates:
                session.execute(
                    update(M)
                    .where(self._position(job_id, u.source_id, u.ordinal))
                    .values(
                        status=u.status.value,
                        validation_issues=issues_to_json(tuple(u.issues)),
                    )
                )

    def reset_mapping(self, job_id: str) -> None:
        with session_scope(self._factory) as session:
            session.execute(
                update(M).where(M.job_id == job_id).values(
                    status=StagedRecordStatus.EXTRACTED.value,
                    canonical_fields=None,
                    natural_key=None,
                    fingerprint=None,
                    mapping_issues=None,
                    validation_issues=None,
                    confidence=0.0,
                    needs_review=False,
                )
            )

    def reset_validation(self, job_id: str) -> None:
        validated = [StagedRecordStatus.VALID.value, StagedRecordStatus.INVALID.value]
        with session_scope(self._factory) as session:
            session.execute(
                update(M)
                .where(M.job_id == job_id, M.status.in_(validated))
                .values(status=StagedRecordStatus.MAPPED.value, validation_issues=None)
            )

    def count(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(M).where(M.job_id == job_id)
        if statuses is not None:
            stmt = stmt.where(M.status.in_([s.value for s in statuses]))
        if source_id is not None:
            stmt = stmt.where(M.source_id == source_id)
        with session_scope(self._factory) as session:
            return int(session.execute(stmt).scalar() or 0)

    def count_by_status(self, job_id: str) -> dict[StagedRecordStatus, int]:
        stmt = (
            select(M.status, func.count())
            .where(M.job_id == job_id)
            .group_by(M.status)
        )
        with session_scope(self._factory) as session:
            return {StagedRecordStatus(s): int(n) for s, n in session.execute(stmt)}
