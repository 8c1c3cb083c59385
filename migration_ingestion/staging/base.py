"""
Staging store contract.

Every phase between extraction and import is a pass over the job's staged
records: Extraction writes raw records, Transformation attaches canonical
candidates, Validation attaches results, Import streams the valid records.
Records are always returned in (source order, stream ordinal) order so a
restarted phase and a resumed import see exactly the same sequence.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from migration_ingestion.domain.types import (
    CanonicalRecord,
    MappedRecord,
    RawRecord,
    StagedRecordStatus,
)
from migration_kernel.domain.dtos import ValidationIssue


@dataclass(frozen=True)
class StagedRecord:
    job_id: str
    source_index: int
    entity_type: str
    raw: RawRecord
    status: StagedRecordStatus
    canonical: CanonicalRecord | None = None
    mapping_issues: tuple[ValidationIssue, ...] = ()
    validation_issues: tuple[ValidationIssue, ...] = ()
    confidence: float = 0.0
    needs_review: bool = False

    @property
    def source_id(self) -> str:
        return self.raw.provenance.source_id

    @property
    def ordinal(self) -> int:
        return self.raw.provenance.ordinal

    @property
    def external_id(self) -> str:
        return self.raw.external_id

    @property
    def issues(self) -> tuple[ValidationIssue, ...]:
        return self.mapping_issues + self.validation_issues

    def to_mapped(self) -> MappedRecord:
        return MappedRecord(
            raw=self.raw,
            canonical=self.canonical,
            issues=self.mapping_issues,
            matches=(),
            confidence=self.confidence,
            needs_review=self.needs_review,
        )


@dataclass(frozen=True)
class MappingUpdate:
    source_id: str
    ordinal: int
    status: StagedRecordStatus
    canonical: CanonicalRecord | None
    issues: tuple[ValidationIssue, ...] = ()
    confidence: float = 0.0
    needs_review: bool = False


@dataclass(frozen=True)
class ValidationUpdate:
    source_id: str
    ordinal: int
    status: StagedRecordStatus
    issues: tuple[ValidationIssue, ...] = ()


@runtime_checkable
class StagingStore(Protocol):
    def clear(self, job_id: str, source_id: str | None = None) -> None:
        ...

    def add_raw(
        self,
        job_id: str,
        source_index: int,
        entity_type: str,
        records: Sequence[RawRecord],
    ) -> None:
        ...

    def iter_records(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
        offset: int = 0,
    ) -> Iterator[StagedRecord]:
        ...

    def set_mapping(self, job_id: str, updates: Sequence[MappingUpdate]) -> None:
        ...

    def set_validation(self, job_id: str, updates: Sequence[ValidationUpdate]) -> None:
        ...

    def reset_mapping(self, job_id: str) -> None:
        ...

    def reset_validation(self, job_id: str) -> None:
        ...

    def count(
        self,
        job_id: str,
        statuses: Iterable[StagedRecordStatus] | None = None,
        source_id: str | None = None,
    ) -> int:
        ...

    def count_by_status(self, job_id: str) -> dict[StagedRecordStatus, int]:
        ...
