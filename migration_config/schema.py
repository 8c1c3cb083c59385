"""
Migration configuration schema.

Mapping rule sets and runtime settings are human-authored YAML parsed into
these frozen dataclasses by ``migration_config.loader``.  Nothing here is
mutated during a job; rule sets are shared between worker threads without
locking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class FieldType(str, Enum):
    """Canonical field types a mapping rule can coerce to."""

    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"


class RevisionPolicy(str, Enum):
    """What the importer does when a known record arrives with new content."""

    OVERWRITE = "overwrite"
    REJECT = "reject"


KNOWN_TRANSFORMS: frozenset[str] = frozenset({
    "strip",
    "trim",
    "upper",
    "lower",
    "to_decimal",
    "normalize_date",
    "strip_currency",
})


# ---------------------------------------------------------------------------
# Mapping rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MappingRule:
    """
    Maps one canonical field to its source candidates.

    Candidates are tried as: the exact ``source`` name, then ``aliases`` in
    declared order.  ``position`` is a zero-based column hint used only when
    no name-based candidate is accepted.
    """

    target: str
    field_type: FieldType = FieldType.STRING
    required: bool = False
    source: str | None = None
    aliases: tuple[str, ...] = ()
    position: int | None = None
    transform: str | None = None
    format: str | None = None
    default: Any = None

    @property
    def candidates(self) -> tuple[str, ...]:
        names = (self.source,) if self.source else ()
        return names + tuple(a for a in self.aliases if a != self.source)


@dataclass(frozen=True)
class MappingRuleSet:
    """Versioned, ordered list of mapping rules for one entity type."""

    rule_set_id: str
    entity_type: str
    rules: tuple[MappingRule, ...]
    version: int = 1
    min_confidence: float = 0.6
    review_confidence: float = 0.8
    locale: str = "en_US"
    description: str = ""

    @property
    def targets(self) -> tuple[str, ...]:
        return tuple(r.target for r in self.rules)

    def rule_for(self, target: str) -> MappingRule | None:
        for rule in self.rules:
            if rule.target == target:
                return rule
        return None


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImporterSettings:
    batch_size: int = 500
    max_concurrency: int = 8
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    transaction_timeout_seconds: float = 60.0
    revision_policy: RevisionPolicy = RevisionPolicy.OVERWRITE


@dataclass(frozen=True)
class SourceSettings:
    connector_timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    chunk_size: int = 1000


@dataclass(frozen=True)
class ValidationSettings:
    min_completeness: float = 0.5


@dataclass(frozen=True)
class ReconciliationSettings:
    count_tolerance: int = 0
    absolute_tolerance: Decimal = Decimal("0.01")
    relative_tolerance: Decimal = Decimal("0.00001")


@dataclass(frozen=True)
class TrackerSettings:
    progress_interval: int = 100


@dataclass(frozen=True)
class MigrationSettings:
    """All externally supplied thresholds, with documented defaults."""

    importer: ImporterSettings = field(default_factory=ImporterSettings)
    source: SourceSettings = field(default_factory=SourceSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    reconciliation: ReconciliationSettings = field(
        default_factory=ReconciliationSettings
    )
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
