"""Structural validation of rule sets and settings before a job starts."""

from dataclasses import replace
from decimal import Decimal

import pytest

from migration_config import default_registry
from migration_config.schema import (
    ImporterSettings,
    MappingRule,
    MappingRuleSet,
    MigrationSettings,
    ReconciliationSettings,
    ValidationSettings,
)
from migration_config.validator import (
    ConfigValidationResult,
    require_valid,
    validate_rule_set,
    validate_settings,
)
from migration_ingestion.domain.entities import ENTITY_SCHEMAS
from migration_kernel.exceptions import FatalConfigurationError


def _rule_set(*rules: MappingRule, **kwargs) -> MappingRuleSet:
    return MappingRuleSet(
        rule_set_id=kwargs.pop("rule_set_id", "estimates"),
        entity_type="cost_item",
        rules=rules,
        **kwargs,
    )


class TestValidateRuleSet:
    def test_bundled_rule_sets_are_valid(self):
        registry = default_registry()
        for entity_type, schema in ENTITY_SCHEMAS.items():
            rule_set = registry.for_entity_type(entity_type)
            result = validate_rule_set(rule_set, schema.required_map())
            assert result.is_valid, result.errors

    def test_empty_rule_set(self):
        result = validate_rule_set(_rule_set())
        assert result.errors == ["rule set estimates has no rules"]

    def test_duplicate_target(self):
        result = validate_rule_set(_rule_set(
            MappingRule(target="code", source="Code"),
            MappingRule(target="code", source="Item"),
        ))
        assert result.errors == ["duplicate rule for target 'code'"]

    def test_rule_without_any_candidate(self):
        result = validate_rule_set(_rule_set(MappingRule(target="code")))
        assert not result.is_valid

    def test_position_only_rule_is_accepted(self):
        result = validate_rule_set(_rule_set(MappingRule(target="code", position=0)))
        assert result.is_valid

    def test_unknown_transform(self):
        result = validate_rule_set(_rule_set(
            MappingRule(target="code", source="Code", transform="titlecase"),
        ))
        assert "unknown transform 'titlecase'" in result.errors[0]

    @pytest.mark.parametrize("min_confidence", [-0.1, 1.0])
    def test_min_confidence_range(self, min_confidence):
        result = validate_rule_set(_rule_set(
            MappingRule(target="code", source="Code"),
            min_confidence=min_confidence,
            review_confidence=1.0,
        ))
        assert not result.is_valid

    def test_review_threshold_below_acceptance_warns(self):
        result = validate_rule_set(_rule_set(
            MappingRule(target="code", source="Code"),
            min_confidence=0.7,
            review_confidence=0.5,
        ))
        assert result.is_valid
        assert len(result.warnings) == 1

    def test_required_schema_field_without_rule(self):
        schema = {"code": True, "name": True, "notes": False}
        result = validate_rule_set(
            _rule_set(MappingRule(target="code", source="Code"),
                      MappingRule(target="colour", source="Colour")),
            schema,
        )
        assert result.errors == ["required field 'name' of cost_item has no rule"]
        assert result.warnings == ["rule target 'colour' is not an entity field"]


class TestValidateSettings:
    def test_defaults_are_valid(self):
        assert validate_settings(MigrationSettings()).is_valid

    @pytest.mark.parametrize(
        "settings",
        [
            replace(MigrationSettings(), importer=ImporterSettings(batch_size=0)),
            replace(MigrationSettings(), importer=ImporterSettings(max_concurrency=0)),
            replace(MigrationSettings(), importer=ImporterSettings(max_retries=-1)),
            replace(
                MigrationSettings(),
                reconciliation=ReconciliationSettings(absolute_tolerance=Decimal("-0.01")),
            ),
            replace(MigrationSettings(), validation=ValidationSettings(min_completeness=1.5)),
        ],
    )
    def test_invalid_values(self, settings):
        assert not validate_settings(settings).is_valid


class TestRequireValid:
    def test_passes_through_valid_results(self):
        require_valid(ConfigValidationResult(warnings=["note"]), "rule set")

    def test_raises_with_every_error(self):
        result = ConfigValidationResult(errors=["first", "second"])
        with pytest.raises(FatalConfigurationError) as exc_info:
            require_valid(result, "rule set x")
        assert exc_info.value.reason == "invalid rule set x: first; second"
        assert exc_info.value.details == {"errors": ["first", "second"]}
