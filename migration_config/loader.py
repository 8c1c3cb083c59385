"""
Configuration Loader (``migration_config.loader``).

Responsibility
--------------
Loads YAML rule-set and settings files and parses them into typed
``migration_config.schema`` dataclass instances.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown field type or revision policy  -> ``ValueError`` propagates.

Parsing is structural only.  Semantic checks live in
``migration_config.validator``, which raises ``FatalConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from migration_config.schema import (
    FieldType,
    ImporterSettings,
    MappingRule,
    MappingRuleSet,
    MigrationSettings,
    ReconciliationSettings,
    RevisionPolicy,
    SourceSettings,
    TrackerSettings,
    ValidationSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_mapping_rule(data: dict[str, Any]) -> MappingRule:
    position = data.get("position")
    return MappingRule(
        target=data["target"],
        field_type=FieldType(data.get("type", data.get("field_type", "string"))),
        required=bool(data.get("required", False)),
        source=data.get("source"),
        aliases=tuple(str(a) for a in data.get("aliases", ())),
        position=int(position) if position is not None else None,
        transform=data.get("transform"),
        format=data.get("format"),
        default=data.get("default"),
    )


def parse_rule_set(data: dict[str, Any]) -> MappingRuleSet:
    return MappingRuleSet(
        rule_set_id=data["rule_set_id"],
        entity_type=data["entity_type"],
        version=int(data.get("version", 1)),
        rules=tuple(parse_mapping_rule(r) for r in data.get("rules", ())),
        min_confidence=float(data.get("min_confidence", 0.6)),
        review_confidence=float(data.get("review_confidence", 0.8)),
        locale=data.get("locale", "en_US"),
        description=data.get("description", ""),
    )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    return dict(data.get(name) or {})


def parse_settings(data: dict[str, Any]) -> MigrationSettings:
    importer = _section(data, "importer")
    if "revision_policy" in importer:
        importer["revision_policy"] = RevisionPolicy(importer["revision_policy"])
    reconciliation = _section(data, "reconciliation")
    for key in ("absolute_tolerance", "relative_tolerance"):
        if key in reconciliation:
            reconciliation[key] = Decimal(str(reconciliation[key]))
    return MigrationSettings(
        importer=ImporterSettings(**importer),
        source=SourceSettings(**_section(data, "source")),
        validation=ValidationSettings(**_section(data, "validation")),
        reconciliation=ReconciliationSettings(**reconciliation),
        tracker=TrackerSettings(**_section(data, "tracker")),
    )


def load_rule_set(path: Path) -> MappingRuleSet:
    return parse_rule_set(load_yaml_file(path))


def load_rule_sets_from_dir(directory: Path) -> list[MappingRuleSet]:
    """Parse every ``*.yaml`` file in ``directory`` (sorted by name)."""
    return [load_rule_set(p) for p in sorted(Path(directory).glob("*.yaml"))]


def load_settings(path: Path) -> MigrationSettings:
    return parse_settings(load_yaml_file(path))


def compute_checksum(rule_set: MappingRuleSet) -> str:
    """Deterministic SHA-256 over a rule set, for identity and change detection."""
    payload = json.dumps(asdict(rule_set), sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()
