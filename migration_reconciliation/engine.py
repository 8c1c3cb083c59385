"""
ReconciliationEngine -- independent verification of a finished import.

Contract:
    ``reconcile()`` re-reads every source through its connector and re-maps
    it with the pure field mapper, then re-reads the destination.  Neither
    side uses a running total kept by the importer, so a defect in the
    import path cannot hide itself.

Architecture: migration_reconciliation.  Imports from migration_ingestion
    (connectors, mapper), migration_batch.destinations and the kernel.

Failure modes:
    - TransientSourceError / PermanentSourceError from re-reading a source
      propagate; the caller fails the job.
    - The engine itself never raises on a mismatch: it returns a report
      with ``passed=False`` and the caller decides (the orchestrator raises
      IntegrityError).
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from migration_batch.destinations.base import Destination
from migration_config.schema import MappingRuleSet, ReconciliationSettings, SourceSettings
from migration_ingestion.adapters.base import SourceConnector, opened
from migration_ingestion.domain.entities import get_entity_schema
from migration_ingestion.domain.types import MigrationScope, SourceDescriptor
from migration_ingestion.mapping.engine import FieldMapper
from migration_kernel.domain.clock import Clock, SystemClock
from migration_kernel.exceptions import FatalConfigurationError, PermanentMappingError
from migration_kernel.logging_config import LogContext, get_logger
from migration_reconciliation.domain import ReconciliationReport, evaluate_entity

logger = get_logger("reconciliation.engine")


@dataclass(frozen=True)
class ReconciliationSource:
    """A source to re-read, with the connector and rule set the job used."""

    descriptor: SourceDescriptor
    connector: SourceConnector
    rule_set: MappingRuleSet


@dataclass
class _SourceSide:
    count: int = 0
    excluded: int = 0
    expected_ids: set[str] = field(default_factory=set)
    totals: dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))


class ReconciliationEngine:
    def __init__(
        self,
        destination: Destination,
        settings: ReconciliationSettings | None = None,
        *,
        source_settings: SourceSettings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._destination = destination
        self._settings = settings or ReconciliationSettings()
        self._source_settings = source_settings or SourceSettings()
        self._clock = clock or SystemClock()
        self._sleep = sleep

    def reconcile(
        self,
        job_id: str,
        scope: MigrationScope,
        sources: Sequence[ReconciliationSource],
        excluded_ids: Collection[str] = frozenset(),
    ) -> ReconciliationReport:
        """
        Build the reconciliation report for ``job_id``.

        ``excluded_ids`` are the external ids the job rejected with a
        recorded reason (mapping, scope, validation or destination refusal).
        They are counted on the source side but not expected at the target.
        """
        start_time = time.monotonic()
        sides: dict[str, _SourceSide] = {
            entity_type: _SourceSide() for entity_type in scope.entity_types
        }
        excluded = set(excluded_ids)

        for source in sources:
            side = sides.setdefault(source.descriptor.entity_type, _SourceSide())
            self._read_source(scope, source, excluded, side)

        entities = []
        for entity_type, side in sides.items():
            schema = get_entity_schema(entity_type)
            if schema is None:
                raise FatalConfigurationError(f"unknown entity type {entity_type!r}")
            target_totals = {
                name: self._destination.sum_field(job_id, entity_type, name)
                for name in schema.financial_fields
            }
            source_totals = {name: side.totals[name] for name in schema.financial_fields}
            entities.append(evaluate_entity(
                entity_type=entity_type,
                source_count=side.count,
                excluded_count=side.excluded,
                expected_ids=side.expected_ids,
                target_ids=self._destination.external_ids(job_id, entity_type),
                target_count=self._destination.count_records(job_id, entity_type),
                source_totals=source_totals,
                target_totals=target_totals,
                settings=self._settings,
            ))

        report = ReconciliationReport(
            job_id=job_id,
            entities=tuple(entities),
            passed=all(e.passed for e in entities),
            count_tolerance=self._settings.count_tolerance,
            absolute_tolerance=self._settings.absolute_tolerance,
            relative_tolerance=self._settings.relative_tolerance,
            generated_at=self._clock.now(),
            details={"sources": [s.descriptor.source_id for s in sources]},
        )

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        log = logger.info if report.passed else logger.error
        log(
            "reconciliation_completed",
            extra={
                "job_id": job_id,
                "passed": report.passed,
                "entity_types": [e.entity_type for e in entities],
                "failures": list(report.failures),
                "duration_ms": duration_ms,
            },
        )
        return report

    def _read_source(
        self,
        scope: MigrationScope,
        source: ReconciliationSource,
        excluded: set[str],
        side: _SourceSide,
    ) -> None:
        schema = get_entity_schema(source.descriptor.entity_type)
        if schema is None:
            raise FatalConfigurationError(
                f"unknown entity type {source.descriptor.entity_type!r}",
                details={"source_id": source.descriptor.source_id},
            )
        mapper = FieldMapper(source.rule_set, schema)
        with LogContext.bind(source_id=source.descriptor.source_id):
            with opened(
                source.connector,
                scope,
                max_retries=self._source_settings.max_retries,
                backoff_base=self._source_settings.backoff_base_seconds,
                sleep=self._sleep,
            ) as connector:
                for raw in connector.records():
                    side.count += 1
                    if raw.external_id in excluded:
                        side.excluded += 1
                        continue
                    side.expected_ids.add(raw.external_id)
                    try:
                        canonical = mapper.map_record(raw).raise_for_errors()
                    except PermanentMappingError as exc:
                        # Still expected at the target, so the report fails.
                        logger.warning(
                            "reconciliation_unmappable_record",
                            extra={"external_id": exc.external_id, "fields": exc.fields},
                        )
                        continue
                    for name in schema.financial_fields:
                        value = canonical.get(name)
                        if isinstance(value, Decimal):
                            side.totals[name] += value
