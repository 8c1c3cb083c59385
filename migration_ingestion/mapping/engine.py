"""
Mapping engine: pure transformation from RawRecord to CanonicalRecord.

Column choice comes from ``matching.resolve_columns``; values are then
transformed, coerced with locale-aware rules and typed.  ZERO I/O.

Issue policy:
    - required field with no accepted column -> error unmapped_required_field
    - coercion failure on a required field -> error; on an optional field
      -> warning and the value is dropped
    - empty values are left absent (the validator's schema layer reports
      missing required values)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from migration_config.schema import FieldType, MappingRule, MappingRuleSet
from migration_ingestion.domain.entities import EntitySchema
from migration_ingestion.domain.types import (
    CanonicalRecord,
    MappedRecord,
    RawRecord,
    compute_fingerprint,
)
from migration_ingestion.mapping import locale as locale_rules
from migration_ingestion.mapping.matching import ColumnResolver
from migration_kernel.domain.dtos import ValidationIssue

# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CoercionResult:
    """Result of coercing a source value to a target type."""

    success: bool
    value: Any = None
    code: str | None = None
    message: str | None = None


# -----------------------------------------------------------------------------
# Transforms (pure)
# -----------------------------------------------------------------------------


def apply_transform(value: Any, transform: str, locale: str = "en_US") -> Any:
    """Apply a named transform. Unknown transforms return the value unchanged."""
    if value is None:
        return None
    t = (transform or "").strip().lower()
    if t in ("strip", "trim"):
        return value.strip() if isinstance(value, str) else value
    if t == "upper":
        return value.strip().upper() if isinstance(value, str) else value
    if t == "lower":
        return value.strip().lower() if isinstance(value, str) else value
    if t == "strip_currency":
        return locale_rules.strip_currency(value) if isinstance(value, str) else value
    if t == "to_decimal":
        try:
            return locale_rules.parse_decimal(value, locale)
        except ValueError:
            return value  # coercion reports the failure
    if t == "normalize_date":
        try:
            return locale_rules.parse_date(value, locale).isoformat()
        except ValueError:
            return value
    return value


# -----------------------------------------------------------------------------
# Coercion (pure)
# -----------------------------------------------------------------------------


def coerce_value(
    value: Any,
    field_type: FieldType,
    locale: str = "en_US",
    format_str: str | None = None,
) -> CoercionResult:
    """Coerce a source value (string, number, date) to ``field_type``."""
    if field_type == FieldType.STRING:
        if isinstance(value, (date, datetime)):
            return CoercionResult(True, value.isoformat())
        if isinstance(value, float) and value == int(value):
            value = int(value)
        return CoercionResult(True, str(value).strip())

    try:
        if field_type == FieldType.DECIMAL:
            return CoercionResult(True, locale_rules.parse_decimal(value, locale))
        if field_type == FieldType.INTEGER:
            return CoercionResult(True, locale_rules.parse_integer(value, locale))
        if field_type == FieldType.BOOLEAN:
            return CoercionResult(True, locale_rules.parse_boolean(value))
        if field_type == FieldType.DATE:
            return CoercionResult(True, locale_rules.parse_date(value, locale, format_str))
    except ValueError as exc:
        return CoercionResult(
            False, code=f"invalid_{field_type.value}", message=str(exc)
        )
    return CoercionResult(
        False, code="unsupported_type", message=f"Unsupported field type: {field_type}"
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# -----------------------------------------------------------------------------
# Field mapper
# -----------------------------------------------------------------------------


class FieldMapper:
    """
    Maps raw records for one rule set and entity schema.

    Stateless apart from the column-resolution cache, so one instance is
    safely shared by every thread mapping the same source.
    """

    def __init__(self, rule_set: MappingRuleSet, schema: EntitySchema):
        self.rule_set = rule_set
        self.schema = schema
        self._resolver = ColumnResolver(rule_set)

    def map_record(self, raw: RawRecord) -> MappedRecord:
        rule_set = self.rule_set
        resolution = self._resolver.resolve(raw.headers)
        issues: list[ValidationIssue] = []
        fields: dict[str, Any] = {}
        used = []

        for rule in rule_set.rules:
            match = resolution.matches.get(rule.target)
            if match is None:
                if rule.required:
                    best = resolution.rejected.get(rule.target)
                    details: dict[str, Any] = {"candidates": list(rule.candidates)}
                    if best is not None:
                        details["best_header"] = best.header
                        details["best_confidence"] = best.confidence
                    issues.append(ValidationIssue.error(
                        "unmapped_required_field",
                        f"No source column matches required field {rule.target!r}",
                        field=rule.target,
                        **details,
                    ))
                elif rule.default is not None:
                    fields[rule.target] = self._default_for(rule)
                continue

            used.append(match)
            raw_value = raw.data.get(match.header)
            if _is_blank(raw_value):
                if rule.default is not None:
                    fields[rule.target] = self._default_for(rule)
                continue

            value = (
                apply_transform(raw_value, rule.transform, rule_set.locale)
                if rule.transform else raw_value
            )
            coerced = coerce_value(value, rule.field_type, rule_set.locale, rule.format)
            if not coerced.success:
                make = ValidationIssue.error if rule.required else ValidationIssue.warning
                issues.append(make(
                    coerced.code or "coercion_failed",
                    coerced.message or "coercion failed",
                    field=rule.target,
                    header=match.header,
                    raw_value=str(raw_value),
                ))
                continue
            fields[rule.target] = coerced.value

        for name, default in self.schema.defaults.items():
            if fields.get(name) in (None, ""):
                fields[name] = default
        self._derive(fields)

        confidence = min((m.confidence for m in used), default=0.0)
        needs_review = bool(used) and confidence < rule_set.review_confidence
        if any(i.is_error for i in issues):
            return MappedRecord(
                raw=raw, canonical=None, issues=tuple(issues),
                matches=tuple(used), confidence=confidence, needs_review=needs_review,
            )

        canonical = CanonicalRecord(
            entity_type=self.schema.entity_type,
            external_id=raw.external_id,
            fields=fields,
            natural_key=self.schema.key_of(fields),
            fingerprint=compute_fingerprint(self.schema.entity_type, fields),
            provenance=raw.provenance,
            mapping_confidence=confidence,
        )
        return MappedRecord(
            raw=raw, canonical=canonical, issues=tuple(issues),
            matches=tuple(used), confidence=confidence, needs_review=needs_review,
        )

    def _default_for(self, rule: MappingRule) -> Any:
        coerced = coerce_value(
            rule.default, rule.field_type, self.rule_set.locale, rule.format
        )
        return coerced.value if coerced.success else rule.default

    def _derive(self, fields: dict[str, Any]) -> None:
        for derived in self.schema.derived:
            inputs = [fields.get(dep) for dep in derived.depends_on]
            if all(isinstance(v, (Decimal, int)) and not isinstance(v, bool) for v in inputs):
                fields[derived.name] = derived.compute(fields)


def map_record(raw: RawRecord, rule_set: MappingRuleSet, schema: EntitySchema) -> MappedRecord:
    """Map one record without a shared resolver cache."""
    return FieldMapper(rule_set, schema).map_record(raw)
