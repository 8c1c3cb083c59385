"""In-memory staging store (tests and small dry runs)."""

from __future__ import annotations

import dataclasses
import threading
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence

from migration_ingestion.domain.types import RawRecord, StagedRecordStatus
from migration_ingestion.staging.base import MappingUpdate, StagedRecord, ValidationUpdate

_VALIDATED = (StagedRecordStatus.VALID, StagedRecordStatus.INVALID)


class InMemoryStagingStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, dict[tuple[int, int], StagedRecord]] = {}
        self._index: dict[str, dict[tuple[str, int], tuple[int, int]]] = {}

    def clear(self, job_id: str, source_id: str | None = None) -> None:
        with self._lock:
            records = self._jobs.get(job_id, {})
            index = self._index.get(job_id, {})
            if source_id is None:
                records.clear()
                index.clear()
                return
            for key in [k for k in index if k[0] == source_id]:
                records.pop(index.pop(key), None)

    def add_raw(
        self,
        job_id: str,
        source_index: int,
        entity_type: str,
        records: Sequence[RawRecord],
    ) -> None:
        with self._lock:
            staged = self._jobs.setdefault(job_id, {})
            index = self._index.setdefault(job_id, {})
            for raw in records:
                key = (source_index, raw.provenance.ordinal)
                staged[key] = StagedRecord(
                    job_id=job_id,
                    source_index=source_index,
                    entity_type=entity_type,
                    raw=raw,
                    status=StagedRecordStatus.EXTRACTED,
                )
                index[(raw.provenance.source_id, raw.provenance.ordinal)] = key

    def iter_records(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
        offset: int = 0,
    ) -> Iterator[StagedRecord]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            staged = self._jobs.get(job_id, {})
            snapshot = [staged[k] for k in sorted(staged)]
        skipped = 0
        for record in snapshot:
            if wanted is not None and record.status not in wanted:
                continue
            if source_id is not None and record.source_id != source_id:
                continue
            if skipped < offset:
                skipped += 1
                continue
            yield record

    def _replace(self, job_id: str, source_id: str, ordinal: int, **changes) -> None:
        key = self._index[job_id][(source_id, ordinal)]
        staged = self._jobs[job_id]
        staged[key] = dataclasses.replace(staged[key], **changes)

    def set_mapping(self, job_id: str, updates: Sequence[MappingUpdate]) -> None:
        with self._lock:
            for u in updates:
                self._replace(
                    job_id, u.source_id, u.ordinal,
                    status=u.status,
                    canonical=u.canonical,
                    mapping_issues=tuple(u.issues),
                    validation_issues=(),
                    confidence=u.confidence,
                    needs_review=u.needs_review,
                )

    def set_validation(self, job_id: str, updates: Sequence[ValidationUpdate]) -> None:
        with self._lock:
            for u in updates:
                self._replace(
                    job_id, u.source_id, u.ordinal,
                    status=u.status,
                    validation_issues=tuple(u.issues),
                )

    def reset_mapping(self, job_id: str) -> None:
        with self._lock:
            staged = self._jobs.get(job_id, {})
            for key, record in list(staged.items()):
                staged[key] = dataclasses.replace(
                    record,
                    status=StagedRecordStatus.EXTRACTED,
                    canonical=None,
                    mapping_issues=(),
                    validation_issues=(),
                    confidence=0.0,
                    needs_review=False,
                )

    def reset_validation(self, job_id: str) -> None:
        with self._lock:
            staged = self._jobs.get(job_id, {})
            for key, record in list(staged.items()):
                if record.status in _VALIDATED:
                    staged[key] = dataclasses.replace(
                        record, status=StagedRecordStatus.MAPPED, validation_issues=()
                    )

    def count(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
    ) -> int:
        return sum(1 for _ in self.iter_records(job_id, statuses, source_id))

    def count_by_status(self, job_id: str) -> dict[StagedRecordStatus, int]:
        with self._lock:
            return dict(Counter(r.status for r in self._jobs.get(job_id, {}).values()))
