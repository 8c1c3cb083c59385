"""
Record validation in three layers, run in order.

1. Schema: required values present, types, enumerations, bounds.
2. Business rules: cross-field rules registered per entity type.
3. Quality: duplicate natural keys, completeness, referential integrity.

A record with a schema error skips layers 2 and 3 but still gets a result
and is counted.  Any error-severity issue excludes the record from import;
warnings are recorded only.  Functions here are pure apart from the
optional ``exists`` lookup a ValidationContext may carry.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from migration_config.schema import FieldType
from migration_ingestion.domain.entities import EntitySchema, FieldSpec
from migration_ingestion.domain.types import (
    BatchQualityStats,
    CanonicalRecord,
    MappedRecord,
    ValidationResult,
)
from migration_kernel.domain.dtos import ValidationIssue

_TYPE_CHECKS: dict[FieldType, Callable[[Any], bool]] = {
    FieldType.STRING: lambda v: isinstance(v, str),
    FieldType.DECIMAL: lambda v: isinstance(v, Decimal),
    FieldType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldType.BOOLEAN: lambda v: isinstance(v, bool),
    FieldType.DATE: lambda v: isinstance(v, date),
}


@dataclass
class ValidationContext:
    """
    Job-wide knowledge the validator checks references against.

    ``known_keys`` holds the natural keys of every record mapped in this
    job, per entity type.  ``exists`` answers whether a key was already
    imported (normally backed by the destination).
    """

    known_keys: dict[str, set[tuple[str, ...]]] = field(default_factory=dict)
    exists: Callable[[str, tuple[str, ...]], bool] | None = None
    min_completeness: float = 0.5

    def resolves(self, entity_type: str, key: tuple[str, ...]) -> bool:
        if key in self.known_keys.get(entity_type, ()):
            return True
        return self.exists is not None and self.exists(entity_type, key)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# =============================================================================
# Layer 1: schema
# =============================================================================


def _check_bounds(spec: FieldSpec, value: Any) -> list[ValidationIssue]:
    if not isinstance(value, (Decimal, int)) or isinstance(value, bool):
        return []
    issues: list[ValidationIssue] = []
    if spec.min_value is not None:
        below = value <= spec.min_value if spec.min_exclusive else value < spec.min_value
        if below:
            if spec.min_exclusive and spec.min_value == 0:
                issues.append(ValidationIssue.error(
                    f"{spec.name}_must_be_positive",
                    f"{spec.name} must be greater than 0, got {value}",
                    field=spec.name, value=str(value),
                ))
            else:
                issues.append(ValidationIssue.error(
                    "value_below_minimum",
                    f"{spec.name} must be {'>' if spec.min_exclusive else '>='} "
                    f"{spec.min_value}, got {value}",
                    field=spec.name, value=str(value), minimum=str(spec.min_value),
                ))
    if spec.max_value is not None and value > spec.max_value:
        issues.append(ValidationIssue.error(
            "value_above_maximum",
            f"{spec.name} must be <= {spec.max_value}, got {value}",
            field=spec.name, value=str(value), maximum=str(spec.max_value),
        ))
    return issues


def validate_schema(fields: dict[str, Any], schema: EntitySchema) -> list[ValidationIssue]:
    """Structural checks for one record's fields."""
    issues: list[ValidationIssue] = []
    for spec in schema.fields:
        value = fields.get(spec.name)
        if _is_missing(value):
            if spec.required:
                issues.append(ValidationIssue.error(
                    "missing_required_field",
                    f"Required field {spec.name!r} is missing",
                    field=spec.name,
                ))
            continue
        if not _TYPE_CHECKS[spec.field_type](value):
            issues.append(ValidationIssue.error(
                "invalid_type",
                f"{spec.name} expected {spec.field_type.value}, got {type(value).__name__}",
                field=spec.name,
            ))
            continue
        if spec.allowed_values is not None and value not in spec.allowed_values:
            issues.append(ValidationIssue.error(
                "invalid_enum_value",
                f"{spec.name} {value!r} not in {', '.join(spec.allowed_values)}",
                field=spec.name, value=str(value),
            ))
        if spec.max_length is not None and isinstance(value, str) and len(value) > spec.max_length:
            issues.append(ValidationIssue.error(
                "value_too_long",
                f"{spec.name} exceeds {spec.max_length} characters",
                field=spec.name,
            ))
        if spec.pattern is not None and isinstance(value, str) and not re.match(spec.pattern, value):
            issues.append(ValidationIssue.error(
                "invalid_format",
                f"{spec.name} {value!r} does not match {spec.pattern}",
                field=spec.name, value=value,
            ))
        issues.extend(_check_bounds(spec, value))
    return issues


# =============================================================================
# Layer 2: business rules
# =============================================================================

BusinessRule = Callable[[CanonicalRecord, EntitySchema, ValidationContext], list[ValidationIssue]]


def validate_parent_reference(
    record: CanonicalRecord, schema: EntitySchema, ctx: ValidationContext
) -> list[ValidationIssue]:
    parent_key = schema.parent_key_of(record.fields)
    if parent_key is None:
        return []
    if parent_key == record.natural_key:
        return [ValidationIssue.error(
            "parent_is_self",
            f"{record.natural_key_str} names itself as parent",
            field=schema.parent_field,
        )]
    if ctx.resolves(schema.entity_type, parent_key):
        return []
    return [ValidationIssue.error(
        "parent_not_found",
        f"Parent {'|'.join(parent_key)} not found in this job or already imported",
        field=schema.parent_field, parent_key=list(parent_key),
    )]


def validate_positive_rate(
    record: CanonicalRecord, schema: EntitySchema, ctx: ValidationContext
) -> list[ValidationIssue]:
    rate = record.get("rate")
    if isinstance(rate, Decimal) and rate <= 0:
        return [ValidationIssue.error(
            "rate_must_be_positive",
            f"Resource rate must be positive, got {rate}",
            field="rate", value=str(rate),
        )]
    return []


def validate_date_range(
    record: CanonicalRecord, schema: EntitySchema, ctx: ValidationContext
) -> list[ValidationIssue]:
    start, end = record.get("start_date"), record.get("end_date")
    if isinstance(start, date) and isinstance(end, date) and start > end:
        return [ValidationIssue.error(
            "invalid_date_range",
            f"start_date {start.isoformat()} is after end_date {end.isoformat()}",
            field="start_date",
        )]
    return []


BUSINESS_RULES: dict[str, tuple[BusinessRule, ...]] = {
    "cost_item": (validate_parent_reference,),
    "resource": (validate_positive_rate,),
    "schedule_activity": (validate_date_range, validate_parent_reference),
}


def validate_business_rules(
    record: CanonicalRecord, schema: EntitySchema, ctx: ValidationContext
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for rule in BUSINESS_RULES.get(schema.entity_type, ()):
        issues.extend(rule(record, schema, ctx))
    return issues


# =============================================================================
# Layer 3: quality
# =============================================================================


def completeness(fields: dict[str, Any], schema: EntitySchema) -> float:
    """Fraction of optional fields that are populated."""
    optional = schema.optional_fields
    if not optional:
        return 1.0
    populated = sum(1 for name in optional if not _is_missing(fields.get(name)))
    return populated / len(optional)


def validate_references(
    record: CanonicalRecord, schema: EntitySchema, ctx: ValidationContext
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for spec in schema.fields:
        if spec.references is None:
            continue
        value = record.get(spec.name)
        if _is_missing(value):
            continue
        if not ctx.resolves(spec.references, (str(value),)):
            issues.append(ValidationIssue.warning(
                "unresolved_reference",
                f"{spec.name} {value!r} does not match any {spec.references}",
                field=spec.name, references=spec.references,
            ))
    return issues


# =============================================================================
# Streaming validator
# =============================================================================


class RecordValidator:
    """
    Validates a stream of mapped records for one entity type.

    Records must arrive in source order: for a duplicated natural key the
    first record that passes layers 1 and 2 is kept and every later one is
    rejected with duplicate_natural_key.

    Parent references are first checked against every mapped key.  Once the
    stream is done, ``reject_orphans()`` withdraws the records whose parent
    was itself rejected, until no accepted record points at a missing parent.
    """

    def __init__(self, schema: EntitySchema, context: ValidationContext | None = None):
        self.schema = schema
        self.context = context or ValidationContext()
        self._first_seen: dict[tuple[str, ...], str] = {}
        self._count = 0
        self._valid = 0
        self._errors = 0
        self._warnings = 0
        self._duplicates = 0
        self._review = 0
        self._completeness_total = 0.0
        # external_id -> (natural key, parent key) of accepted child-capable records
        self._accepted: dict[str, tuple[tuple[str, ...], tuple[str, ...] | None]] = {}

    def validate(self, mapped: MappedRecord) -> ValidationResult:
        issues = list(mapped.issues)
        record = mapped.canonical
        ratio = completeness(record.fields, self.schema) if record is not None else 0.0
        if record is not None and not any(i.is_error for i in issues):
            issues.extend(self._validate_canonical(record))
        if mapped.needs_review:
            issues.append(ValidationIssue.warning(
                "low_mapping_confidence",
                f"Lowest column match confidence {mapped.confidence:.2f} needs review",
                confidence=mapped.confidence,
            ))
        result = ValidationResult(
            external_id=mapped.raw.external_id,
            issues=tuple(issues),
            needs_review=mapped.needs_review,
            completeness=ratio,
        )
        self._tally(result)
        if result.is_valid and record is not None and self.schema.parent_field is not None:
            self._accepted[record.external_id] = (
                record.natural_key, self.schema.parent_key_of(record.fields),
            )
        return result

    def reject_orphans(self) -> dict[str, ValidationIssue]:
        """
        Reject accepted records whose parent did not survive validation.

        A parent resolves when another accepted record carries its key or
        the destination already holds it.  Rejection cascades down the
        hierarchy.  Returns the new parent_not_found issue per external id;
        the stats move those records from valid to error.
        """
        accepted = dict(self._accepted)
        keys = {key for key, _ in accepted.values()}
        exists = self.context.exists
        rejected: dict[str, ValidationIssue] = {}
        changed = True
        while changed:
            changed = False
            for external_id, (key, parent) in list(accepted.items()):
                if parent is None or parent in keys:
                    continue
                if exists is not None and exists(self.schema.entity_type, parent):
                    continue
                rejected[external_id] = ValidationIssue.error(
                    "parent_not_found",
                    f"Parent {'|'.join(parent)} was rejected and is not already imported",
                    field=self.schema.parent_field, parent_key=list(parent),
                )
                del accepted[external_id]
                keys.discard(key)
                changed = True
        self._accepted = accepted
        self._valid -= len(rejected)
        self._errors += len(rejected)
        return rejected

    def _validate_canonical(self, record: CanonicalRecord) -> list[ValidationIssue]:
        issues = validate_schema(record.fields, self.schema)
        if issues:
            return issues
        issues = validate_business_rules(record, self.schema, self.context)

        first = self._first_seen.get(record.natural_key)
        if first is not None:
            issues.append(ValidationIssue.error(
                "duplicate_natural_key",
                f"{record.natural_key_str} already provided by {first}",
                first_external_id=first,
            ))
        elif not issues:
            self._first_seen[record.natural_key] = record.external_id

        ratio = completeness(record.fields, self.schema)
        if ratio < self.context.min_completeness:
            issues.append(ValidationIssue.warning(
                "low_completeness",
                f"Only {ratio:.0%} of optional fields populated",
                completeness=round(ratio, 4),
            ))
        issues.extend(validate_references(record, self.schema, self.context))
        return issues

    def _tally(self, result: ValidationResult) -> None:
        self._count += 1
        self._completeness_total += result.completeness
        if result.is_valid:
            self._valid += 1
        else:
            self._errors += 1
        if result.warnings:
            self._warnings += 1
        if result.needs_review:
            self._review += 1
        if any(i.code == "duplicate_natural_key" for i in result.issues):
            self._duplicates += 1

    def validate_all(self, records: Iterable[MappedRecord]) -> Iterator[ValidationResult]:
        for mapped in records:
            yield self.validate(mapped)

    @property
    def stats(self) -> BatchQualityStats:
        return BatchQualityStats(
            record_count=self._count,
            valid_count=self._valid,
            error_count=self._errors,
            warning_count=self._warnings,
            duplicate_count=self._duplicates,
            review_count=self._review,
            completeness_rate=(
                self._completeness_total / self._count if self._count else 1.0
            ),
        )


def merge_stats(stats: Iterable[BatchQualityStats]) -> BatchQualityStats:
    """Combine per-entity stats into one job-level figure."""
    items = list(stats)
    total = sum(s.record_count for s in items)
    return BatchQualityStats(
        record_count=total,
        valid_count=sum(s.valid_count for s in items),
        error_count=sum(s.error_count for s in items),
        warning_count=sum(s.warning_count for s in items),
        duplicate_count=sum(s.duplicate_count for s in items),
        review_count=sum(s.review_count for s in items),
        completeness_rate=(
            sum(s.completeness_rate * s.record_count for s in items) / total
            if total else 1.0
        ),
    )
