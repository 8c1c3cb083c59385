"""
Configuration Validator (``migration_config.validator``).

Checks rule sets and settings for structural integrity before a job may
extract a single record.  Errors are fatal; warnings are logged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from migration_config.schema import KNOWN_TRANSFORMS, MappingRuleSet, MigrationSettings
from migration_kernel.exceptions import FatalConfigurationError


@dataclass
class ConfigValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_rule_set(
    rule_set: MappingRuleSet,
    schema_fields: Mapping[str, bool] | None = None,
) -> ConfigValidationResult:
    """
    Validate a rule set, optionally against its entity's fields.

    ``schema_fields`` maps canonical field name -> required flag.
    """
    result = ConfigValidationResult()
    if not rule_set.rule_set_id:
        result.errors.append("rule set has no id")
    if not rule_set.rules:
        result.errors.append(f"rule set {rule_set.rule_set_id} has no rules")
    if not 0.0 <= rule_set.min_confidence < 1.0:
        result.errors.append(
            f"min_confidence must be in [0, 1): {rule_set.min_confidence}"
        )
    if rule_set.review_confidence < rule_set.min_confidence:
        result.warnings.append(
            "review_confidence below min_confidence; no record will be flagged"
        )

    seen: set[str] = set()
    for rule in rule_set.rules:
        if rule.target in seen:
            result.errors.append(f"duplicate rule for target {rule.target!r}")
        seen.add(rule.target)
        if not rule.candidates and rule.position is None:
            result.errors.append(
                f"rule {rule.target!r} has no source, aliases or position"
            )
        if rule.transform and rule.transform not in KNOWN_TRANSFORMS:
            result.errors.append(
                f"rule {rule.target!r} uses unknown transform {rule.transform!r}"
            )
        if rule.position is not None and rule.position < 0:
            result.errors.append(f"rule {rule.target!r} has negative position")

    if schema_fields is not None:
        for target in seen - set(schema_fields):
            result.warnings.append(f"rule target {target!r} is not an entity field")
        for name, required in schema_fields.items():
            if required and name not in seen:
                result.errors.append(
                    f"required field {name!r} of {rule_set.entity_type} has no rule"
                )
    return result


def validate_settings(settings: MigrationSettings) -> ConfigValidationResult:
    result = ConfigValidationResult()
    imp = settings.importer
    if imp.batch_size < 1:
        result.errors.append(f"batch_size must be positive: {imp.batch_size}")
    if imp.max_concurrency < 1:
        result.errors.append(
            f"max_concurrency must be positive: {imp.max_concurrency}"
        )
    if imp.max_retries < 0 or settings.source.max_retries < 0:
        result.errors.append("retry counts must not be negative")
    rec = settings.reconciliation
    if rec.count_tolerance < 0 or rec.absolute_tolerance < 0 or rec.relative_tolerance < 0:
        result.errors.append("reconciliation tolerances must not be negative")
    if not 0.0 <= settings.validation.min_completeness <= 1.0:
        result.errors.append("min_completeness must be within [0, 1]")
    if settings.tracker.progress_interval < 1:
        result.errors.append("progress_interval must be positive")
    return result


def require_valid(result: ConfigValidationResult, subject: str) -> None:
    """Raise FatalConfigurationError when a validation result has errors."""
    if not result.is_valid:
        raise FatalConfigurationError(
            f"invalid {subject}: {'; '.join(result.errors)}",
            details={"errors": list(result.errors)},
        )
