"""
MigrationOrchestrator -- drives one job through every phase.

Contract:
    ``run()`` takes a JobTracker for a PENDING job (or an interrupted one
    when ``resume=True``) and leaves it COMPLETED, FAILED or CANCELED.
    Each phase is a discrete pass over the job's staging data, so any phase
    can be restarted from its phase-start checkpoint and the import phase
    can continue from its last contiguous batch checkpoint.

Architecture: migration_services.  Composes migration_ingestion (connectors,
    mapper, validator, staging), migration_batch (importer),
    migration_reconciliation and migration_jobs (tracker).

Phase passes:
    DISCOVERY       resolve and validate rule sets, probe every source
    EXTRACTION      stage raw records, one thread per source
    TRANSFORMATION  map staged records, apply the job scope
    VALIDATION      schema, business rules and quality checks
    IMPORT          batch import of valid records in staging order
    VERIFICATION    reconciliation; a failing report fails the job

Failure modes:
    - Record-level problems (mapping, validation, destination refusal) are
      recorded as job errors and the job continues.
    - FatalConfigurationError, unrecoverable source errors,
      RetriesExhaustedError and IntegrityError fail the job.
    - Only ``Exception`` is handled.  Anything else (interpreter shutdown,
      KeyboardInterrupt) propagates and leaves the job resumable.
"""

from __future__ import annotations

import contextvars
import time
from collections import defaultdict
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date

from migration_batch.destinations.base import Destination
from migration_batch.services.checkpoint import CheckpointAdvance
from migration_batch.services.importer import BatchImporter, backoff_delay
from migration_config.registry import RuleSetRegistry
from migration_config.schema import MappingRuleSet, MigrationSettings
from migration_config.validator import require_valid, validate_rule_set, validate_settings
from migration_ingestion.adapters.base import open_with_retry, opened
from migration_ingestion.adapters.registry import ConnectorRegistry, default_connector_registry
from migration_ingestion.domain.entities import EntitySchema, get_entity_schema
from migration_ingestion.domain.types import (
    EXCLUDED_STATUSES,
    CanonicalRecord,
    MigrationScope,
    RawRecord,
    SourceDescriptor,
    StagedRecordStatus,
)
from migration_ingestion.domain.validators import (
    RecordValidator,
    ValidationContext,
    merge_stats,
)
from migration_ingestion.mapping.engine import FieldMapper
from migration_ingestion.staging.base import MappingUpdate, StagingStore, ValidationUpdate
from migration_jobs.domain.types import (
    WORKING_PHASES,
    Checkpoint,
    JobErrorRecord,
    MigrationJob,
    Phase,
)
from migration_jobs.tracker import JobTracker
from migration_kernel.domain.clock import Clock, SystemClock
from migration_kernel.domain.dtos import Severity, ValidationIssue
from migration_kernel.exceptions import (
    FatalConfigurationError,
    IntegrityError,
    MigrationError,
    PermanentMappingError,
    TransientSourceError,
    ValidationError,
)
from migration_kernel.logging_config import LogContext, get_logger
from migration_reconciliation.domain import ReconciliationReport
from migration_reconciliation.engine import ReconciliationEngine, ReconciliationSource
from migration_services.cancellation import CancellationToken

logger = get_logger("services.orchestrator")


class _CancelRequested(Exception):
    def __init__(self, reason: str | None):
        self.reason = reason or "canceled by request"
        super().__init__(self.reason)


@dataclass(frozen=True)
class ResolvedSource:
    """A scope source with the rule set and schema it is processed under."""

    index: int
    descriptor: SourceDescriptor
    rule_set: MappingRuleSet
    schema: EntitySchema

    @property
    def source_id(self) -> str:
        return self.descriptor.source_id


def in_scope(scope: MigrationScope, schema: EntitySchema, record: CanonicalRecord) -> bool:
    """Project and date-range filter over a mapped record."""
    if not scope.includes_project(record.get("project_code")):
        return False
    if schema.date_field is not None:
        value = record.get(schema.date_field)
        if isinstance(value, date):
            return scope.includes_date(value)
    return True


class MigrationOrchestrator:
    def __init__(
        self,
        *,
        staging: StagingStore,
        destination: Destination,
        rule_sets: RuleSetRegistry,
        connectors: ConnectorRegistry | None = None,
        settings: MigrationSettings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._staging = staging
        self._destination = destination
        self._rule_sets = rule_sets
        self._connectors = connectors or default_connector_registry()
        self._settings = settings or MigrationSettings()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._importer = BatchImporter(destination, self._settings.importer, sleep=sleep)
        self._reconciler = ReconciliationEngine(
            destination,
            self._settings.reconciliation,
            source_settings=self._settings.source,
            clock=self._clock,
            sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        tracker: JobTracker,
        cancel_token: CancellationToken | None = None,
        resume: bool = False,
    ) -> MigrationJob:
        token = cancel_token or CancellationToken()
        job = tracker.job
        start_time = time.monotonic()
        with LogContext.bind(job_id=job.job_id, correlation_id=job.correlation_id):
            logger.info(
                "migration_job_started",
                extra={"resume": resume, "phase": job.phase.value, "source_system": job.source_system},
            )
            try:
                self._drive(tracker, token, resume)
            except _CancelRequested as exc:
                if not tracker.job.is_terminal:
                    tracker.cancel(exc.reason)
            except MigrationError as exc:
                self._abort(tracker, exc.code, str(exc))
            except Exception as exc:
                logger.exception("migration_job_unexpected_error")
                self._abort(tracker, "UNEXPECTED_ERROR", f"{type(exc).__name__}: {exc}")

            final = tracker.job
            logger.info(
                "migration_job_finished",
                extra={
                    "phase": final.phase.value,
                    "counters": final.counters.to_dict(),
                    "duration_ms": round((time.monotonic() - start_time) * 1000, 2),
                },
            )
        return final

    def _abort(self, tracker: JobTracker, code: str, message: str) -> None:
        if tracker.job.is_terminal:
            return
        tracker.record_error(code, message)
        tracker.fail(message, code)

    def _drive(self, tracker: JobTracker, token: CancellationToken, resume: bool) -> None:
        checkpoint = tracker.restore_from_checkpoint() if resume else None
        start = checkpoint.phase if checkpoint is not None else Phase.DISCOVERY
        sources: list[ResolvedSource] | None = None

        for phase in WORKING_PHASES[WORKING_PHASES.index(start):]:
            self._check_cancel(token)
            restart = checkpoint if checkpoint is not None and phase == checkpoint.phase else None
            if restart is None:
                tracker.enter_phase(phase)
            with LogContext.bind(phase=phase.value):
                if restart is not None:
                    logger.info(
                        "phase_restarting",
                        extra={"sequence": restart.sequence, "records_through": restart.records_through},
                    )
                if phase == Phase.DISCOVERY:
                    sources = self._discover(tracker)
                else:
                    if sources is None:
                        sources = self._resolve_sources(tracker.job)
                    self._run_phase(phase, tracker, sources, token, restart)
            tracker.complete_phase()

        tracker.complete()

    def _run_phase(
        self,
        phase: Phase,
        tracker: JobTracker,
        sources: list[ResolvedSource],
        token: CancellationToken,
        restart: Checkpoint | None,
    ) -> None:
        if phase == Phase.EXTRACTION:
            self._extract(tracker, sources, token, restart)
        elif phase == Phase.TRANSFORMATION:
            self._transform(tracker, sources, token, restart)
        elif phase == Phase.VALIDATION:
            self._validate(tracker, sources, token, restart)
        elif phase == Phase.IMPORT:
            self._import(tracker, token, restart)
        elif phase == Phase.VERIFICATION:
            self._verify(tracker, sources, restart)

    def _check_cancel(self, token: CancellationToken) -> None:
        if token.is_set():
            raise _CancelRequested(token.reason)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _resolve_rule_set(self, job: MigrationJob, descriptor: SourceDescriptor) -> MappingRuleSet:
        if descriptor.rule_set_id:
            return self._rule_sets.get(descriptor.rule_set_id)
        if job.rule_set_id:
            rule_set = self._rule_sets.get(job.rule_set_id)
            if rule_set.entity_type == descriptor.entity_type:
                return rule_set
        rule_set = self._rule_sets.for_entity_type(descriptor.entity_type)
        if rule_set is None:
            raise FatalConfigurationError(
                f"no mapping rule set for source {descriptor.source_id!r}",
                details={"source_id": descriptor.source_id, "entity_type": descriptor.entity_type},
            )
        return rule_set

    def _resolve_sources(self, job: MigrationJob) -> list[ResolvedSource]:
        """Rule set and schema per source.  Pure; raises FatalConfigurationError."""
        if not job.scope.sources:
            raise FatalConfigurationError("job scope has no sources")
        seen: set[str] = set()
        resolved: list[ResolvedSource] = []
        for index, descriptor in enumerate(job.scope.sources):
            if descriptor.source_id in seen:
                raise FatalConfigurationError(
                    f"duplicate source id {descriptor.source_id!r} in job scope"
                )
            seen.add(descriptor.source_id)
            schema = get_entity_schema(descriptor.entity_type)
            if schema is None:
                raise FatalConfigurationError(
                    f"unknown entity type {descriptor.entity_type!r}",
                    details={"source_id": descriptor.source_id},
                )
            rule_set = self._resolve_rule_set(job, descriptor)
            if rule_set.entity_type != descriptor.entity_type:
                raise FatalConfigurationError(
                    f"rule set {rule_set.rule_set_id!r} maps {rule_set.entity_type}, "
                    f"source {descriptor.source_id!r} provides {descriptor.entity_type}",
                )
            require_valid(
                validate_rule_set(rule_set, schema.required_map()),
                f"rule set {rule_set.rule_set_id} v{rule_set.version}",
            )
            resolved.append(ResolvedSource(index, descriptor, rule_set, schema))
        return resolved

    def _discover(self, tracker: JobTracker) -> list[ResolvedSource]:
        require_valid(validate_settings(self._settings), "migration settings")
        sources = self._resolve_sources(tracker.job)
        source_settings = self._settings.source
        estimated = 0
        for source in sources:
            with LogContext.bind(source_id=source.source_id):
                connector = self._connectors.create(source.descriptor, source_settings)
                retries = open_with_retry(
                    connector,
                    tracker.job.scope,
                    max_retries=source_settings.max_retries,
                    backoff_base=source_settings.backoff_base_seconds,
                    sleep=self._sleep,
                )
                try:
                    count = connector.estimated_count()
                finally:
                    connector.close()
                tracker.advance("retries", retries)
                estimated += count
                logger.info(
                    "source_discovered",
                    extra={
                        "system": source.descriptor.system,
                        "entity_type": source.descriptor.entity_type,
                        "rule_set_id": source.rule_set.rule_set_id,
                        "rule_set_version": source.rule_set.version,
                        "estimated_count": count,
                    },
                )
            tracker.record_progress(processed=1)
        tracker.set_estimated_total(len(sources))
        logger.info(
            "discovery_completed",
            extra={"sources": len(sources), "estimated_records": estimated},
        )
        return sources

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def _extract(
        self,
        tracker: JobTracker,
        sources: list[ResolvedSource],
        token: CancellationToken,
        restart: Checkpoint | None,
    ) -> None:
        job_id = tracker.job_id
        if restart is not None:
            tracker.discard_errors(Phase.EXTRACTION)
        self._staging.clear(job_id)

        workers = max(1, min(len(sources), self._settings.importer.max_concurrency))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract") as pool:
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    self._extract_source, tracker, source, token,
                )
                for source in sources
            ]
            errors: list[Exception] = []
            for future in futures:
                try:
                    future.result()
                except Exception as exc:
                    errors.append(exc)
        if errors:
            raise errors[0]

    def _extract_source(
        self, tracker: JobTracker, source: ResolvedSource, token: CancellationToken
    ) -> None:
        settings = self._settings.source
        with LogContext.bind(source_id=source.source_id):
            attempt = 0
            while True:
                self._staging.clear(tracker.job_id, source.source_id)
                try:
                    count = self._stream_source(tracker, source, token)
                except TransientSourceError as exc:
                    attempt += 1
                    if attempt > settings.max_retries:
                        logger.error(
                            "source_extraction_retries_exhausted",
                            extra={"attempts": attempt, "reason": exc.reason},
                        )
                        raise
                    delay = backoff_delay(
                        attempt,
                        settings.backoff_base_seconds,
                        self._settings.importer.backoff_max_seconds,
                    )
                    logger.warning(
                        "source_extraction_retry",
                        extra={"attempt": attempt, "delay_seconds": delay, "reason": exc.reason},
                    )
                    tracker.advance("retries")
                    tracker.record_error(
                        exc.code, str(exc), severity=Severity.WARNING,
                        details={"source_id": source.source_id, "attempt": attempt},
                    )
                    self._sleep(delay)
                    continue
                tracker.advance("discovered", count)
                tracker.advance("extracted", count)
                logger.info("source_extracted", extra={"records": count, "retries": attempt})
                return

    def _stream_source(
        self, tracker: JobTracker, source: ResolvedSource, token: CancellationToken
    ) -> int:
        settings = self._settings.source
        connector = self._connectors.create(source.descriptor, settings)
        count = 0
        chunk: list[RawRecord] = []

        def flush() -> None:
            nonlocal count, chunk
            if not chunk:
                return
            self._staging.add_raw(
                tracker.job_id, source.index, source.descriptor.entity_type, chunk
            )
            count += len(chunk)
            tracker.record_progress(processed=len(chunk))
            chunk = []

        with opened(
            connector,
            tracker.job.scope,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base_seconds,
            sleep=self._sleep,
        ):
            for raw in connector.records():
                chunk.append(raw)
                if len(chunk) >= settings.chunk_size:
                    flush()
                    self._check_cancel(token)
            flush()
        return count

    # -------------------------------------------------------------------------
    # Transformation
    # -------------------------------------------------------------------------

    def _transform(
        self,
        tracker: JobTracker,
        sources: list[ResolvedSource],
        token: CancellationToken,
        restart: Checkpoint | None,
    ) -> None:
        job_id = tracker.job_id
        if restart is not None:
            tracker.discard_errors(Phase.TRANSFORMATION)
            self._staging.reset_mapping(job_id)

        scope = tracker.job.scope
        by_source = {s.source_id: (FieldMapper(s.rule_set, s.schema), s) for s in sources}
        chunk_size = self._settings.source.chunk_size
        updates: list[MappingUpdate] = []
        errors: list[JobErrorRecord] = []
        tallies: dict[str, int] = defaultdict(int)

        def flush() -> None:
            self._staging.set_mapping(job_id, updates)
            tracker.record_errors(errors)
            tracker.record_progress(
                processed=len(updates),
                errors=sum(1 for u in updates if u.status == StagedRecordStatus.MAPPING_REJECTED),
            )
            updates.clear()
            errors.clear()

        tracker.set_estimated_total(self._staging.count(job_id, [StagedRecordStatus.EXTRACTED]))
        for staged in self._staging.iter_records(job_id, statuses=[StagedRecordStatus.EXTRACTED]):
            mapper, source = by_source[staged.source_id]
            mapped = mapper.map_record(staged.raw)
            warnings = [i for i in mapped.issues if not i.is_error]

            try:
                canonical = mapped.raise_for_errors()
            except PermanentMappingError as exc:
                status = StagedRecordStatus.MAPPING_REJECTED
                tracker.advance("failed")
                errors.extend(tracker.issue_records(staged.external_id, mapped.issues))
                logger.debug(
                    "transform_record_rejected",
                    extra={"external_id": exc.external_id, "error_code": exc.code,
                           "fields": exc.fields},
                )
            else:
                if in_scope(scope, source.schema, canonical):
                    status = StagedRecordStatus.MAPPED
                    tracker.advance("transformed")
                    errors.extend(tracker.issue_records(staged.external_id, warnings))
                else:
                    status = StagedRecordStatus.OUT_OF_SCOPE
                    errors.extend(tracker.issue_records(staged.external_id, [
                        ValidationIssue.warning("out_of_scope", "Outside the job's projects or date range"),
                    ]))
            tracker.advance("warnings", len(warnings))
            tallies[status.value] += 1

            updates.append(MappingUpdate(
                source_id=staged.source_id,
                ordinal=staged.ordinal,
                status=status,
                canonical=mapped.canonical,
                issues=mapped.issues,
                confidence=mapped.confidence,
                needs_review=mapped.needs_review,
            ))
            if len(updates) >= chunk_size:
                flush()
                self._check_cancel(token)
        flush()
        logger.info("transformation_completed", extra={"statuses": dict(tallies)})

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(
        self,
        tracker: JobTracker,
        sources: list[ResolvedSource],
        token: CancellationToken,
        restart: Checkpoint | None,
    ) -> None:
        job_id = tracker.job_id
        if restart is not None:
            tracker.discard_errors(Phase.VALIDATION)
            self._staging.reset_validation(job_id)

        mapped_status = [StagedRecordStatus.MAPPED]
        known: dict[str, set[tuple[str, ...]]] = defaultdict(set)
        for staged in self._staging.iter_records(job_id, statuses=mapped_status):
            known[staged.entity_type].add(staged.canonical.natural_key)

        context = ValidationContext(
            known_keys=dict(known),
            exists=self._destination.has_natural_key,
            min_completeness=self._settings.validation.min_completeness,
        )
        validators: dict[str, RecordValidator] = {}
        for source in sources:
            validators.setdefault(source.schema.entity_type, RecordValidator(source.schema, context))

        chunk_size = self._settings.source.chunk_size
        updates: list[ValidationUpdate] = []
        errors: list[JobErrorRecord] = []

        def flush() -> None:
            self._staging.set_validation(job_id, updates)
            tracker.record_errors(errors)
            tracker.record_progress(
                processed=len(updates),
                errors=sum(1 for u in updates if u.status == StagedRecordStatus.INVALID),
            )
            updates.clear()
            errors.clear()

        # validated/failed advance once parent rejections have cascaded.
        tallies = {StagedRecordStatus.VALID: 0, StagedRecordStatus.INVALID: 0}
        tracker.set_estimated_total(sum(len(keys) for keys in known.values()))
        for staged in self._staging.iter_records(job_id, statuses=mapped_status):
            result = validators[staged.entity_type].validate(staged.to_mapped())
            # Mapping issues were recorded by the transformation pass.
            new_issues = result.issues[len(staged.mapping_issues):]
            try:
                result.raise_for_errors()
            except ValidationError as exc:
                status = StagedRecordStatus.INVALID
                logger.debug(
                    "validation_record_rejected",
                    extra={"external_id": exc.external_id, "error_code": exc.code,
                           "issue_codes": exc.issue_codes},
                )
            else:
                status = StagedRecordStatus.VALID
            tallies[status] += 1
            tracker.advance("warnings", sum(1 for i in new_issues if not i.is_error))
            errors.extend(tracker.issue_records(staged.external_id, new_issues))
            updates.append(ValidationUpdate(
                source_id=staged.source_id,
                ordinal=staged.ordinal,
                status=status,
                issues=new_issues,
            ))
            if len(updates) >= chunk_size:
                flush()
                self._check_cancel(token)
        flush()

        orphans: dict[str, ValidationIssue] = {}
        for validator in validators.values():
            orphans.update(validator.reject_orphans())
        if orphans:
            for staged in self._staging.iter_records(job_id, statuses=[StagedRecordStatus.VALID]):
                issue = orphans.get(staged.external_id)
                if issue is None:
                    continue
                errors.extend(tracker.issue_records(staged.external_id, [issue]))
                updates.append(ValidationUpdate(
                    source_id=staged.source_id,
                    ordinal=staged.ordinal,
                    status=StagedRecordStatus.INVALID,
                    issues=staged.validation_issues + (issue,),
                ))
            # Already counted as processed by the first pass.
            self._staging.set_validation(job_id, updates)
            tracker.record_errors(errors)
            tracker.record_progress(errors=len(updates))
            logger.warning("validation_orphans_rejected", extra={"count": len(updates)})
            updates.clear()
            errors.clear()

        tracker.advance("validated", tallies[StagedRecordStatus.VALID] - len(orphans))
        tracker.advance("failed", tallies[StagedRecordStatus.INVALID] + len(orphans))
        quality = merge_stats(v.stats for v in validators.values())
        logger.info("validation_quality", extra=quality.to_dict())

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def _import(
        self,
        tracker: JobTracker,
        token: CancellationToken,
        restart: Checkpoint | None,
    ) -> None:
        job_id = tracker.job_id
        start_sequence, start_offset = 0, 0
        if restart is not None:
            if restart.sequence >= 0:
                start_sequence = restart.sequence + 1
                start_offset = restart.records_through
            tracker.discard_errors(Phase.IMPORT, after_sequence=restart.sequence)

        valid = [StagedRecordStatus.VALID]
        tracker.set_estimated_total(self._staging.count(job_id, valid))
        records = (
            staged.canonical
            for staged in self._staging.iter_records(job_id, statuses=valid, offset=start_offset)
        )

        def on_checkpoint(advance: CheckpointAdvance) -> None:
            errors: list[JobErrorRecord] = []
            now = self._clock.now()
            for outcome in advance.outcomes:
                tracker.advance("imported", outcome.success_count)
                tracker.advance("failed", outcome.failure_count)
                tracker.advance("retries", outcome.retry_count)
                tracker.record_progress(
                    processed=outcome.record_count, errors=outcome.failure_count
                )
                errors.extend(
                    JobErrorRecord(
                        job_id=job_id,
                        phase=Phase.IMPORT,
                        code=failure.code,
                        message=failure.message,
                        external_id=failure.external_id,
                        batch_sequence=failure.sequence,
                        details={"entity_type": failure.entity_type},
                        recorded_at=now,
                    )
                    for failure in outcome.failures
                )
            tracker.record_errors(errors)
            tracker.save_checkpoint(
                sequence=advance.sequence,
                records_through=advance.records_through,
                details={
                    "transactions": [
                        o.transaction_id for o in advance.outcomes if o.transaction_id
                    ],
                },
            )

        result = self._importer.run(
            job_id,
            records,
            start_sequence=start_sequence,
            start_offset=start_offset,
            on_checkpoint=on_checkpoint,
            cancel_token=token,
        )
        if result.canceled:
            raise _CancelRequested(token.reason)

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def excluded_ids(self, tracker: JobTracker) -> set[str]:
        """External ids rejected with a recorded reason, at any phase."""
        excluded = {
            staged.external_id
            for staged in self._staging.iter_records(tracker.job_id, statuses=EXCLUDED_STATUSES)
        }
        excluded.update(
            error.external_id
            for error in tracker.errors(Phase.IMPORT)
            if error.external_id is not None and error.severity == Severity.ERROR
        )
        return excluded

    def reconcile(
        self, tracker: JobTracker, sources: Sequence[ResolvedSource]
    ) -> ReconciliationReport:
        job = tracker.job
        return self._reconciler.reconcile(
            job.job_id,
            job.scope,
            [
                ReconciliationSource(
                    descriptor=s.descriptor,
                    connector=self._connectors.create(s.descriptor, self._settings.source),
                    rule_set=s.rule_set,
                )
                for s in sources
            ],
            self.excluded_ids(tracker),
        )

    def _verify(
        self,
        tracker: JobTracker,
        sources: list[ResolvedSource],
        restart: Checkpoint | None,
    ) -> None:
        if restart is not None:
            tracker.discard_errors(Phase.VERIFICATION)
        report = self.reconcile(tracker, sources)
        tracker.save_report(report)
        for line in report.summary_lines():
            logger.debug("reconciliation_summary", extra={"line": line})
        if not report.passed:
            raise IntegrityError(tracker.job_id, report.failures)
