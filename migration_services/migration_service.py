"""
MigrationService -- the public surface for submitting and controlling jobs.

Contract:
    submit_job() persists a PENDING job and returns its id.  run_job()
    drives it synchronously, start_job() on a background thread.  The
    orchestrator is shared; trackers and cancel tokens are per job.

Architecture: migration_services.  Wires the stores, the destination and
    the registries into a MigrationOrchestrator.

Invariants enforced:
    - At most one run per job id at a time (JobAlreadyRunningError).
    - Terminal jobs are never run again (JobImmutableError).
    - A non-PENDING, non-terminal job is resumed from its latest checkpoint.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from migration_batch.destinations import InMemoryDestination, SqlDestination
from migration_batch.destinations.base import Destination
from migration_config import default_registry
from migration_config.registry import RuleSetRegistry
from migration_config.schema import MigrationSettings
from migration_ingestion.adapters.registry import ConnectorRegistry
from migration_ingestion.domain.types import MigrationScope
from migration_ingestion.staging import InMemoryStagingStore, SqlStagingStore
from migration_ingestion.staging.base import StagingStore
from migration_jobs.domain.types import (
    JobErrorRecord,
    JobEvent,
    JobEventType,
    MigrationJob,
    Phase,
)
from migration_jobs.events import EventDispatcher, Listener
from migration_jobs.store import InMemoryJobStore, SqlJobStore
from migration_jobs.store.base import JobStore
from migration_jobs.tracker import JobTracker
from migration_kernel.db.engine import (
    create_migration_engine,
    create_tables,
    make_session_factory,
)
from migration_kernel.domain.clock import Clock, SystemClock
from migration_kernel.exceptions import (
    JobAlreadyRunningError,
    JobImmutableError,
    JobNotFoundError,
)
from migration_kernel.logging_config import get_logger
from migration_reconciliation.domain import ReconciliationReport
from migration_services.cancellation import CancellationToken
from migration_services.orchestrator import MigrationOrchestrator

logger = get_logger("services.migration")


@dataclass
class _RunningJob:
    tracker: JobTracker
    token: CancellationToken = field(default_factory=CancellationToken)
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)


class MigrationService:
    def __init__(
        self,
        *,
        store: JobStore,
        staging: StagingStore,
        destination: Destination,
        rule_sets: RuleSetRegistry | None = None,
        connectors: ConnectorRegistry | None = None,
        settings: MigrationSettings | None = None,
        clock: Clock | None = None,
        dispatcher: EventDispatcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._settings = settings or MigrationSettings()
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher or EventDispatcher()
        self._orchestrator = MigrationOrchestrator(
            staging=staging,
            destination=destination,
            rule_sets=rule_sets or default_registry(),
            connectors=connectors,
            settings=self._settings,
            clock=self._clock,
            sleep=sleep,
        )
        self._running: dict[str, _RunningJob] = {}
        self._lock = threading.Lock()
        self._engine: Engine | None = None

    @classmethod
    def in_memory(cls, **kwargs) -> MigrationService:
        """Service over in-memory stores and destination."""
        settings = kwargs.get("settings") or MigrationSettings()
        kwargs.setdefault("store", InMemoryJobStore())
        kwargs.setdefault("staging", InMemoryStagingStore())
        kwargs.setdefault("destination", InMemoryDestination(settings.importer.revision_policy))
        return cls(**kwargs)

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker[Session],
        *,
        destination: Destination | None = None,
        **kwargs,
    ) -> MigrationService:
        """Service persisting jobs and staging through ``session_factory``."""
        settings = kwargs.get("settings") or MigrationSettings()
        if destination is None:
            destination = SqlDestination(
                session_factory,
                revision_policy=settings.importer.revision_policy,
                max_connections=settings.importer.max_concurrency,
                transaction_timeout_seconds=settings.importer.transaction_timeout_seconds,
            )
        kwargs.setdefault("store", SqlJobStore(session_factory))
        kwargs.setdefault("staging", SqlStagingStore(session_factory, settings.source.chunk_size))
        return cls(destination=destination, **kwargs)

    @classmethod
    def from_url(
        cls, database_url: str, *, create_schema: bool = True, **kwargs
    ) -> MigrationService:
        """Service over its own engine; close() disposes it."""
        settings = kwargs.get("settings") or MigrationSettings()
        engine = create_migration_engine(
            database_url, pool_size=settings.importer.max_concurrency + 1
        )
        if create_schema:
            create_tables(engine)
        service = cls.from_session_factory(make_session_factory(engine), **kwargs)
        service._engine = engine
        return service

    @property
    def orchestrator(self) -> MigrationOrchestrator:
        return self._orchestrator

    # -------------------------------------------------------------------------
    # Job control
    # -------------------------------------------------------------------------

    def submit_job(
        self,
        scope: MigrationScope,
        rule_set_id: str | None = None,
        source_system: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        job = MigrationJob(
            job_id=str(uuid4()),
            source_system=source_system or ",".join(dict.fromkeys(s.system for s in scope.sources)),
            scope=scope,
            rule_set_id=rule_set_id,
            phase=Phase.PENDING,
            created_at=self._clock.now(),
            correlation_id=correlation_id or str(uuid4()),
        )
        self._store.save_job(job)
        logger.info(
            "migration_job_submitted",
            extra={
                "job_id": job.job_id,
                "source_system": job.source_system,
                "sources": len(scope.sources),
                "rule_set_id": rule_set_id,
            },
        )
        self._dispatcher.emit(JobEvent(
            event_type=JobEventType.JOB_SUBMITTED,
            job_id=job.job_id,
            phase=job.phase,
            occurred_at=job.created_at,
            payload={"source_system": job.source_system, "rule_set_id": rule_set_id},
        ))
        return job.job_id

    def run_job(self, job_id: str) -> MigrationJob:
        """Run (or resume) a job on the calling thread until it is terminal."""
        running = self._claim(job_id)
        return self._execute(running)

    def resume_job(self, job_id: str) -> MigrationJob:
        """Continue an interrupted job from its latest checkpoint."""
        return self.run_job(job_id)

    def start_job(self, job_id: str) -> threading.Thread:
        """Run a job on a background thread; use wait() to join it."""
        running = self._claim(job_id)
        thread = threading.Thread(
            target=self._execute, args=(running,), name=f"migration-{job_id[:8]}", daemon=True
        )
        running.thread = thread
        thread.start()
        return thread

    def wait(self, job_id: str, timeout: float | None = None) -> MigrationJob:
        with self._lock:
            running = self._running.get(job_id)
        if running is not None:
            running.done.wait(timeout)
        return self.get_job_status(job_id)

    def cancel_job(self, job_id: str, reason: str = "canceled by request") -> MigrationJob:
        """
        Request cancellation.

        A running job stops at its next batch or chunk boundary; an idle
        non-terminal job is canceled immediately.
        """
        with self._lock:
            running = self._running.get(job_id)
            if running is not None:
                running.token.cancel(reason)
                logger.info("migration_job_cancel_requested", extra={"job_id": job_id})
                return running.tracker.job
            job = self._require_job(job_id)
            if job.is_terminal:
                raise JobImmutableError(job_id, job.phase.value)
            tracker = self._tracker(job)
            tracker.cancel(reason)
            return tracker.job

    def _tracker(self, job: MigrationJob) -> JobTracker:
        return JobTracker(
            self._store,
            job,
            clock=self._clock,
            dispatcher=self._dispatcher,
            settings=self._settings.tracker,
        )

    def _require_job(self, job_id: str) -> MigrationJob:
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _claim(self, job_id: str) -> _RunningJob:
        with self._lock:
            if job_id in self._running:
                raise JobAlreadyRunningError(job_id)
            job = self._require_job(job_id)
            if job.is_terminal:
                raise JobImmutableError(job_id, job.phase.value)
            running = _RunningJob(tracker=self._tracker(job))
            self._running[job_id] = running
            return running

    def _execute(self, running: _RunningJob) -> MigrationJob:
        job_id = running.tracker.job_id
        resume = running.tracker.job.phase != Phase.PENDING
        try:
            return self._orchestrator.run(running.tracker, running.token, resume=resume)
        finally:
            with self._lock:
                self._running.pop(job_id, None)
            running.done.set()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> MigrationJob:
        with self._lock:
            running = self._running.get(job_id)
        if running is not None:
            return running.tracker.job
        return self._require_job(job_id)

    def get_reconciliation_report(self, job_id: str) -> ReconciliationReport | None:
        self._require_job(job_id)
        return self._store.get_report(job_id)

    def list_job_errors(
        self, job_id: str, phase: Phase | None = None, limit: int | None = None
    ) -> list[JobErrorRecord]:
        self._require_job(job_id)
        return self._store.list_errors(job_id, phase, limit)

    def list_jobs(self, phase: Phase | None = None) -> list[MigrationJob]:
        return self._store.list_jobs(phase)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._dispatcher.add_listener(listener)

    def flush_events(self) -> None:
        self._dispatcher.flush()

    def close(self) -> None:
        self._dispatcher.close()
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
