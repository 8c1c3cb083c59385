"""
Versioned rule-set registry.

Rule sets are identified by id and version; ``get`` without a version
returns the highest registered version.  Lookups that cannot be satisfied
raise ``FatalConfigurationError`` so a job aborts before extraction.
"""

from __future__ import annotations

import threading
from pathlib import Path

from migration_config.loader import compute_checksum, load_rule_sets_from_dir
from migration_config.schema import MappingRuleSet
from migration_kernel.exceptions import FatalConfigurationError
from migration_kernel.logging_config import get_logger

logger = get_logger("config.registry")


class RuleSetRegistry:
    """In-process catalogue of mapping rule sets."""

    def __init__(self, rule_sets: list[MappingRuleSet] | None = None):
        self._lock = threading.Lock()
        self._by_id: dict[str, dict[int, MappingRuleSet]] = {}
        for rule_set in rule_sets or ():
            self.register(rule_set)

    @classmethod
    def from_directory(cls, directory: Path) -> RuleSetRegistry:
        return cls(load_rule_sets_from_dir(directory))

    def register(self, rule_set: MappingRuleSet) -> None:
        with self._lock:
            versions = self._by_id.setdefault(rule_set.rule_set_id, {})
            existing = versions.get(rule_set.version)
            if existing is not None and existing != rule_set:
                raise FatalConfigurationError(
                    f"rule set {rule_set.rule_set_id} v{rule_set.version} "
                    "registered twice with different content"
                )
            versions[rule_set.version] = rule_set
        logger.debug(
            "rule_set_registered",
            extra={
                "rule_set_id": rule_set.rule_set_id,
                "version": rule_set.version,
                "checksum": compute_checksum(rule_set),
            },
        )

    def get(self, rule_set_id: str, version: int | None = None) -> MappingRuleSet:
        with self._lock:
            versions = self._by_id.get(rule_set_id)
            if not versions:
                raise FatalConfigurationError(
                    f"mapping rule set {rule_set_id!r} not found",
                    details={"rule_set_id": rule_set_id},
                )
            if version is None:
                return versions[max(versions)]
            if version not in versions:
                raise FatalConfigurationError(
                    f"mapping rule set {rule_set_id!r} has no version {version}",
                    details={"rule_set_id": rule_set_id, "version": version},
                )
            return versions[version]

    def versions(self, rule_set_id: str) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._by_id.get(rule_set_id, {})))

    def __contains__(self, rule_set_id: str) -> bool:
        with self._lock:
            return rule_set_id in self._by_id

    def for_entity_type(self, entity_type: str) -> MappingRuleSet | None:
        """Latest version of the only rule set targeting ``entity_type``, if unambiguous."""
        with self._lock:
            matches = [
                versions[max(versions)]
                for versions in self._by_id.values()
                if versions[max(versions)].entity_type == entity_type
            ]
        return matches[0] if len(matches) == 1 else None
