"""
migration_reconciliation.domain -- Report types and the pure tolerance verdict.

Architecture: pure calculation, zero I/O.  Totals are gathered by
ReconciliationEngine and handed in as Decimals; everything here is
deterministic for identical inputs.

Invariants enforced:
    - Counts must match within ``count_tolerance`` (default 0: exactly).
    - Every expected external id must be present at the target and no
      unexpected id may be present.
    - A financial field passes when
      |target - source| <= max(absolute_tolerance, relative_tolerance * |source|).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from migration_config.schema import ReconciliationSettings

_MAX_LISTED_IDS = 20


def field_tolerance(source_total: Decimal, settings: ReconciliationSettings) -> Decimal:
    return max(settings.absolute_tolerance, settings.relative_tolerance * abs(source_total))


@dataclass(frozen=True)
class FieldTotal:
    """Independent source and target total of one financial field."""

    field: str
    source_total: Decimal
    target_total: Decimal
    variance: Decimal  # target - source, signed
    tolerance: Decimal
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "source_total": str(self.source_total),
            "target_total": str(self.target_total),
            "variance": str(self.variance),
            "tolerance": str(self.tolerance),
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldTotal:
        return cls(
            field=data["field"],
            source_total=Decimal(data["source_total"]),
            target_total=Decimal(data["target_total"]),
            variance=Decimal(data["variance"]),
            tolerance=Decimal(data["tolerance"]),
            passed=bool(data["passed"]),
        )


@dataclass(frozen=True)
class EntityReconciliation:
    """Count, identity and totals comparison for one entity type."""

    entity_type: str
    source_count: int  # every record the sources returned
    excluded_count: int  # rejected or out of scope, with a recorded reason
    expected_count: int
    target_count: int
    count_variance: int  # target - expected
    matched_count: int
    unmatched_source: tuple[str, ...] = ()  # expected but missing at target
    unmatched_target: tuple[str, ...] = ()  # at target but not expected
    totals: tuple[FieldTotal, ...] = ()
    count_passed: bool = True
    passed: bool = True

    def failures(self) -> list[str]:
        found: list[str] = []
        if not self.count_passed:
            found.append(
                f"{self.entity_type}: expected {self.expected_count} records, "
                f"target has {self.target_count} (variance {self.count_variance:+d})"
            )
        if self.unmatched_source:
            found.append(
                f"{self.entity_type}: {len(self.unmatched_source)} source records missing at target"
            )
        if self.unmatched_target:
            found.append(
                f"{self.entity_type}: {len(self.unmatched_target)} unexpected records at target"
            )
        for total in self.totals:
            if not total.passed:
                found.append(
                    f"{self.entity_type}.{total.field}: source {total.source_total} "
                    f"target {total.target_total} variance {total.variance} "
                    f"exceeds tolerance {total.tolerance}"
                )
        return found

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_count": self.source_count,
            "excluded_count": self.excluded_count,
            "expected_count": self.expected_count,
            "target_count": self.target_count,
            "count_variance": self.count_variance,
            "matched_count": self.matched_count,
            "unmatched_source": list(self.unmatched_source),
            "unmatched_target": list(self.unmatched_target),
            "totals": [t.to_dict() for t in self.totals],
            "count_passed": self.count_passed,
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityReconciliation:
        return cls(
            entity_type=data["entity_type"],
            source_count=data["source_count"],
            excluded_count=data["excluded_count"],
            expected_count=data["expected_count"],
            target_count=data["target_count"],
            count_variance=data["count_variance"],
            matched_count=data["matched_count"],
            unmatched_source=tuple(data.get("unmatched_source") or ()),
            unmatched_target=tuple(data.get("unmatched_target") or ()),
            totals=tuple(FieldTotal.from_dict(t) for t in data.get("totals") or ()),
            count_passed=bool(data["count_passed"]),
            passed=bool(data["passed"]),
        )


@dataclass(frozen=True)
class ReconciliationReport:
    """
    Proof that a job preserved counts and financial totals.

    ``to_dict()`` is the machine-checkable form persisted with the job;
    ``summary_lines()`` is the human-readable one.
    """

    job_id: str
    entities: tuple[EntityReconciliation, ...]
    passed: bool
    count_tolerance: int
    absolute_tolerance: Decimal
    relative_tolerance: Decimal
    generated_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def failures(self) -> tuple[str, ...]:
        return tuple(f for e in self.entities for f in e.failures())

    def entity(self, entity_type: str) -> EntityReconciliation | None:
        for item in self.entities:
            if item.entity_type == entity_type:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "passed": self.passed,
            "tolerances": {
                "count": self.count_tolerance,
                "absolute": str(self.absolute_tolerance),
                "relative": str(self.relative_tolerance),
            },
            "generated_at": self.generated_at.isoformat(),
            "entities": [e.to_dict() for e in self.entities],
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationReport:
        tolerances = data["tolerances"]
        return cls(
            job_id=data["job_id"],
            entities=tuple(EntityReconciliation.from_dict(e) for e in data["entities"]),
            passed=bool(data["passed"]),
            count_tolerance=int(tolerances["count"]),
            absolute_tolerance=Decimal(tolerances["absolute"]),
            relative_tolerance=Decimal(tolerances["relative"]),
            generated_at=datetime.fromisoformat(data["generated_at"]),
            details=dict(data.get("details") or {}),
        )

    def summary_lines(self) -> list[str]:
        lines = [
            f"Reconciliation for job {self.job_id}: {'PASSED' if self.passed else 'FAILED'}",
            f"  tolerances: count={self.count_tolerance} "
            f"absolute={self.absolute_tolerance} relative={self.relative_tolerance}",
        ]
        for e in self.entities:
            lines.append(
                f"  {e.entity_type}: source={e.source_count} excluded={e.excluded_count} "
                f"expected={e.expected_count} target={e.target_count} "
                f"variance={e.count_variance:+d} [{'ok' if e.count_passed else 'MISMATCH'}]"
            )
            for t in e.totals:
                lines.append(
                    f"    {t.field}: source={t.source_total} target={t.target_total} "
                    f"variance={t.variance} tolerance={t.tolerance} "
                    f"[{'ok' if t.passed else 'OUT OF TOLERANCE'}]"
                )
            if e.unmatched_source:
                lines.append(
                    "    missing at target: " + ", ".join(e.unmatched_source[:_MAX_LISTED_IDS])
                )
            if e.unmatched_target:
                lines.append(
                    "    unexpected at target: " + ", ".join(e.unmatched_target[:_MAX_LISTED_IDS])
                )
        return lines


def evaluate_entity(
    *,
    entity_type: str,
    source_count: int,
    excluded_count: int,
    expected_ids: set[str],
    target_ids: set[str],
    target_count: int,
    source_totals: dict[str, Decimal],
    target_totals: dict[str, Decimal],
    settings: ReconciliationSettings,
) -> EntityReconciliation:
    """Compare one entity type's source and target figures against tolerance."""
    expected_count = source_count - excluded_count
    count_variance = target_count - expected_count
    unmatched_source = tuple(sorted(expected_ids - target_ids))
    unmatched_target = tuple(sorted(target_ids - expected_ids))
    count_passed = (
        abs(count_variance) <= settings.count_tolerance
        and len(unmatched_source) + len(unmatched_target) <= settings.count_tolerance
    )

    totals: list[FieldTotal] = []
    for name in sorted(set(source_totals) | set(target_totals)):
        source_total = source_totals.get(name, Decimal("0"))
        target_total = target_totals.get(name, Decimal("0"))
        variance = target_total - source_total
        tolerance = field_tolerance(source_total, settings)
        totals.append(FieldTotal(
            field=name,
            source_total=source_total,
            target_total=target_total,
            variance=variance,
            tolerance=tolerance,
            passed=abs(variance) <= tolerance,
        ))

    return EntityReconciliation(
        entity_type=entity_type,
        source_count=source_count,
        excluded_count=excluded_count,
        expected_count=expected_count,
        target_count=target_count,
        count_variance=count_variance,
        matched_count=len(expected_ids & target_ids),
        unmatched_source=unmatched_source,
        unmatched_target=unmatched_target,
        totals=tuple(totals),
        count_passed=count_passed,
        passed=count_passed and all(t.passed for t in totals),
    )
