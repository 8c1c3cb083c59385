"""
migration_config -- mapping rule sets and runtime settings.

Architecture position:
    Configuration layer.  Sits above ``migration_kernel`` and below
    ingestion, batch and services.  The kernel never imports from here.

The bundled rule sets under ``sets/rule_sets`` describe common estimating
spreadsheet and scheduling exports; deployments supply their own
directory.
"""

from __future__ import annotations

from pathlib import Path

from migration_config.loader import load_settings
from migration_config.registry import RuleSetRegistry
from migration_config.schema import (
    FieldType,
    MappingRule,
    MappingRuleSet,
    MigrationSettings,
    RevisionPolicy,
)

_DEFAULT_SETS_DIR = Path(__file__).parent / "sets"


def default_registry() -> RuleSetRegistry:
    """Registry loaded from the bundled rule sets."""
    return RuleSetRegistry.from_directory(_DEFAULT_SETS_DIR / "rule_sets")


def default_settings() -> MigrationSettings:
    path = _DEFAULT_SETS_DIR / "settings.yaml"
    if path.exists():
        return load_settings(path)
    return MigrationSettings()


__all__ = [
    "FieldType",
    "MappingRule",
    "MappingRuleSet",
    "MigrationSettings",
    "RevisionPolicy",
    "RuleSetRegistry",
    "default_registry",
    "default_settings",
]
