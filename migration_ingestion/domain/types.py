"""
migration_ingestion.domain.types -- Pure frozen dataclasses for extraction,
mapping and validation.

ZERO I/O. Imports only from migration_kernel.domain, migration_kernel.exceptions
and migration_config.schema.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from migration_config.schema import FieldType, MappingRule, MappingRuleSet
from migration_kernel.domain.dtos import Severity, ValidationIssue
from migration_kernel.exceptions import PermanentMappingError, ValidationError


# =============================================================================
# Scope and sources
# =============================================================================


@dataclass(frozen=True)
class SourceDescriptor:
    """
    One legacy source feeding a job.

    ``system`` selects the connector adapter; the core never branches on it
    beyond that lookup.
    """

    source_id: str
    system: str
    entity_type: str
    rule_set_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "system": self.system,
            "entity_type": self.entity_type,
            "rule_set_id": self.rule_set_id,
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceDescriptor:
        return cls(
            source_id=data["source_id"],
            system=data["system"],
            entity_type=data["entity_type"],
            rule_set_id=data.get("rule_set_id"),
            options=dict(data.get("options") or {}),
        )


@dataclass(frozen=True)
class MigrationScope:
    """Which sources, projects and date range a job covers."""

    sources: tuple[SourceDescriptor, ...]
    projects: tuple[str, ...] = ()
    date_from: date | None = None
    date_to: date | None = None

    @property
    def entity_types(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(s.entity_type for s in self.sources))

    def includes_project(self, project_code: Any) -> bool:
        if not self.projects or project_code is None:
            return True
        return str(project_code) in self.projects

    def includes_date(self, value: date | None) -> bool:
        if value is None:
            return True
        if self.date_from is not None and value < self.date_from:
            return False
        if self.date_to is not None and value > self.date_to:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources": [s.to_dict() for s in self.sources],
            "projects": list(self.projects),
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationScope:
        return cls(
            sources=tuple(SourceDescriptor.from_dict(s) for s in data["sources"]),
            projects=tuple(data.get("projects") or ()),
            date_from=date.fromisoformat(data["date_from"]) if data.get("date_from") else None,
            date_to=date.fromisoformat(data["date_to"]) if data.get("date_to") else None,
        )


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class SourceProvenance:
    """Where a raw record came from: source, stream position and row."""

    source_id: str
    ordinal: int  # 0-based position in the source stream
    row_number: int  # 1-based data row in the source file/table
    locator: str | None = None  # file path, sheet or table name


@dataclass(frozen=True)
class RawRecord:
    """Opaque key-value bag from a connector, tagged with its provenance."""

    external_id: str
    data: dict[str, Any]
    provenance: SourceProvenance

    @property
    def headers(self) -> tuple[str, ...]:
        return tuple(str(k) for k in self.data.keys())


def _fingerprint_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        normalized = value.normalize()
        return format(normalized, "f")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def compute_fingerprint(entity_type: str, fields: dict[str, Any]) -> str:
    """SHA-256 over entity type and significant fields (Decimals normalised)."""
    payload = {
        "entity_type": entity_type,
        "fields": {k: _fingerprint_value(v) for k, v in sorted(fields.items())},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CanonicalRecord:
    """
    Target entity after mapping.

    ``external_id`` is the back-reference to exactly one RawRecord.
    """

    entity_type: str
    external_id: str
    fields: dict[str, Any]
    natural_key: tuple[str, ...]
    fingerprint: str
    provenance: SourceProvenance
    mapping_confidence: float = 1.0

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def natural_key_str(self) -> str:
        return "|".join(self.natural_key)


# =============================================================================
# Mapping results
# =============================================================================


class MatchMethod(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    POSITIONAL = "positional"


@dataclass(frozen=True)
class ScoredCandidate:
    """One (header, candidate name) pairing and its confidence."""

    target: str
    header: str
    candidate: str | None
    confidence: float
    method: MatchMethod


@dataclass(frozen=True)
class ColumnResolution:
    """Accepted header per canonical field, plus what was rejected."""

    matches: dict[str, ScoredCandidate]
    rejected: dict[str, ScoredCandidate]  # best sub-threshold candidate per field

    def header_for(self, target: str) -> str | None:
        match = self.matches.get(target)
        return match.header if match else None


@dataclass(frozen=True)
class MappedRecord:
    """Outcome of mapping one raw record."""

    raw: RawRecord
    canonical: CanonicalRecord | None
    issues: tuple[ValidationIssue, ...]
    matches: tuple[ScoredCandidate, ...]
    confidence: float
    needs_review: bool = False

    @property
    def success(self) -> bool:
        return self.canonical is not None and not any(i.is_error for i in self.issues)

    def raise_for_errors(self) -> CanonicalRecord:
        """Return the canonical record, or raise PermanentMappingError."""
        if self.success:
            return self.canonical
        fields = tuple(dict.fromkeys(i.field or i.code for i in self.issues if i.is_error))
        raise PermanentMappingError(self.raw.external_id, fields)


# =============================================================================
# Validation results
# =============================================================================


@dataclass(frozen=True)
class ValidationResult:
    """Per-record validation outcome. Issues are in detection order."""

    external_id: str
    issues: tuple[ValidationIssue, ...] = ()
    needs_review: bool = False
    completeness: float = 1.0

    @property
    def is_valid(self) -> bool:
        return not any(i.severity == Severity.ERROR for i in self.issues)

    @property
    def errors(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == Severity.ERROR)

    @property
    def warnings(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == Severity.WARNING)

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            raise ValidationError(self.external_id, tuple(i.code for i in self.errors))


@dataclass(frozen=True)
class BatchQualityStats:
    """Aggregate quality figures over a validated set of records."""

    record_count: int = 0
    valid_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    duplicate_count: int = 0
    review_count: int = 0
    completeness_rate: float = 1.0

    @property
    def duplicate_rate(self) -> float:
        if not self.record_count:
            return 0.0
        return self.duplicate_count / self.record_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "valid_count": self.valid_count,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "duplicate_count": self.duplicate_count,
            "duplicate_rate": self.duplicate_rate,
            "review_count": self.review_count,
            "completeness_rate": self.completeness_rate,
        }


class StagedRecordStatus(str, Enum):
    """Per-record status inside the staging store."""

    EXTRACTED = "extracted"  # Raw data staged
    MAPPED = "mapped"  # Canonical candidate built
    MAPPING_REJECTED = "mapping_rejected"  # Unmapped required field or coercion error
    OUT_OF_SCOPE = "out_of_scope"  # Outside the job's projects or date range
    VALID = "valid"  # Passed validation, eligible for import
    INVALID = "invalid"  # Validation error


EXCLUDED_STATUSES = frozenset({
    StagedRecordStatus.MAPPING_REJECTED,
    StagedRecordStatus.OUT_OF_SCOPE,
    StagedRecordStatus.INVALID,
})


__all__ = [
    "EXCLUDED_STATUSES",
    "BatchQualityStats",
    "CanonicalRecord",
    "ColumnResolution",
    "FieldType",
    "MappedRecord",
    "MappingRule",
    "MappingRuleSet",
    "MatchMethod",
    "MigrationScope",
    "RawRecord",
    "ScoredCandidate",
    "SourceDescriptor",
    "SourceProvenance",
    "StagedRecordStatus",
    "ValidationResult",
    "compute_fingerprint",
]
