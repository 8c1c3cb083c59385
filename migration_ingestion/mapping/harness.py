"""
Mapping dry run: map and validate sample rows without staging.

Used when authoring a rule set against a new export: shows which header
each field resolved to, with what confidence, and which rows would be
rejected and why.  Pure function; no database, no job.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from migration_config.schema import MappingRuleSet
from migration_ingestion.domain.entities import EntitySchema
from migration_ingestion.domain.types import (
    RawRecord,
    ScoredCandidate,
    SourceProvenance,
)
from migration_ingestion.domain.validators import RecordValidator, ValidationContext
from migration_ingestion.mapping.engine import FieldMapper
from migration_kernel.domain.dtos import ValidationIssue


@dataclass(frozen=True)
class MappingScanRow:
    row_number: int
    is_valid: bool
    raw_data: dict[str, Any]
    mapped_data: dict[str, Any] | None
    issues: tuple[ValidationIssue, ...]
    confidence: float
    needs_review: bool


@dataclass(frozen=True)
class MappingScanReport:
    rule_set_id: str
    rule_set_version: int
    sample_count: int
    valid_count: int
    invalid_count: int
    review_count: int
    columns: tuple[ScoredCandidate, ...]
    rows: tuple[MappingScanRow, ...]
    issue_counts: dict[str, int]


def scan_mapping(
    rule_set: MappingRuleSet,
    schema: EntitySchema,
    sample_rows: Sequence[dict[str, Any]],
) -> MappingScanReport:
    mapper = FieldMapper(rule_set, schema)
    mapped = [
        mapper.map_record(RawRecord(
            external_id=f"sample:{i + 1}",
            data=dict(row),
            provenance=SourceProvenance("sample", i, i + 1),
        ))
        for i, row in enumerate(sample_rows)
    ]
    known = {m.canonical.natural_key for m in mapped if m.canonical is not None}
    validator = RecordValidator(
        schema, ValidationContext(known_keys={schema.entity_type: known})
    )

    rows: list[MappingScanRow] = []
    codes: Counter[str] = Counter()
    columns: dict[str, ScoredCandidate] = {}
    for m in mapped:
        result = validator.validate(m)
        codes.update(i.code for i in result.issues)
        for match in m.matches:
            columns.setdefault(match.target, match)
        rows.append(MappingScanRow(
            row_number=m.raw.provenance.row_number,
            is_valid=result.is_valid,
            raw_data=m.raw.data,
            mapped_data=dict(m.canonical.fields) if m.canonical else None,
            issues=result.issues,
            confidence=m.confidence,
            needs_review=m.needs_review,
        ))

    stats = validator.stats
    return MappingScanReport(
        rule_set_id=rule_set.rule_set_id,
        rule_set_version=rule_set.version,
        sample_count=len(rows),
        valid_count=stats.valid_count,
        invalid_count=stats.error_count,
        review_count=stats.review_count,
        columns=tuple(columns[t] for t in rule_set.targets if t in columns),
        rows=tuple(rows),
        issue_counts=dict(codes),
    )
