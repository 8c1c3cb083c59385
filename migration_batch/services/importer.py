"""
BatchImporter -- transactional, idempotent, concurrent batch loading.

Contract:
    ``run()`` groups a deterministic stream of valid canonical records into
    fixed-size ImportBatches and applies each one atomically through a
    Destination transaction on a bounded worker pool.

Architecture: migration_batch/services.  Imports from migration_batch.domain,
    migration_batch.destinations and the kernel.

Invariants enforced:
    - Atomic batches: every record of a batch commits or none do.
    - Idempotency: upserts are keyed by (job_id, entity_type, external_id);
      an unchanged fingerprint is a no-op success.
    - Bounded memory: at most ``max_workers`` batches are in flight.
    - Contiguous checkpoint: ``on_checkpoint`` only ever covers batches with
      no uncommitted predecessor, and is called from the coordinating thread.
    - Cancellation is observed between batches, never inside one.

Failure modes:
    - TransientDestinationError / TimeoutError: rollback, exponential
      backoff, retry up to ``max_retries``; then RetriesExhaustedError is
      raised once every in-flight batch has settled.
    - PermanentDestinationError: rollback, then each record is re-applied in
      its own transaction so only the offenders fail.  The run continues.
"""

from __future__ import annotations

import contextvars
import os
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Protocol, TypeVar

from migration_batch.destinations.base import Destination
from migration_batch.domain.types import (
    BatchOutcome,
    BatchStatus,
    ImportBatch,
    ImportResult,
    RecordFailure,
    UpsertOutcome,
)
from migration_batch.services.checkpoint import CheckpointAdvance, ContiguousCheckpoint
from migration_config.schema import ImporterSettings
from migration_ingestion.domain.types import CanonicalRecord
from migration_kernel.exceptions import (
    PermanentDestinationError,
    RetriesExhaustedError,
    TransientDestinationError,
)
from migration_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.importer")

T = TypeVar("T")

CheckpointCallback = Callable[[CheckpointAdvance], None]


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(base * 2 ** (attempt - 1), maximum)


def iter_batches(
    job_id: str,
    records: Iterable[CanonicalRecord],
    batch_size: int,
    start_sequence: int = 0,
    start_offset: int = 0,
) -> Iterator[ImportBatch]:
    """Chunk ``records`` into ImportBatches numbered from ``start_sequence``."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    sequence = start_sequence
    consumed = start_offset
    chunk: list[CanonicalRecord] = []
    for record in records:
        chunk.append(record)
        if len(chunk) == batch_size:
            consumed += len(chunk)
            yield ImportBatch(job_id, sequence, tuple(chunk), consumed)
            sequence += 1
            chunk = []
    if chunk:
        consumed += len(chunk)
        yield ImportBatch(job_id, sequence, tuple(chunk), consumed)


class BatchImporter:
    """
    Applies canonical records to a Destination in concurrent atomic batches.

    ``sleep`` is injected so tests can observe backoff without waiting.
    """

    def __init__(
        self,
        destination: Destination,
        settings: ImporterSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int | None = None,
    ):
        self._destination = destination
        self._settings = settings or ImporterSettings()
        self._sleep = sleep
        self._max_workers = max_workers or max(
            1, min(os.cpu_count() or 1, self._settings.max_concurrency)
        )

    @property
    def max_workers(self) -> int:
        return self._max_workers

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        job_id: str,
        records: Iterable[CanonicalRecord],
        start_sequence: int = 0,
        start_offset: int = 0,
        on_checkpoint: CheckpointCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ImportResult:
        """
        Import ``records`` starting at batch ``start_sequence``.

        ``start_offset`` is the count of valid records already covered by
        the checkpoint being resumed; it seeds ``records_through``.

        Raises:
            RetriesExhaustedError: A batch kept failing transiently.
        """
        start_time = time.monotonic()
        checkpoint = ContiguousCheckpoint(start_sequence, start_offset)
        outcomes: list[BatchOutcome] = []
        fatal: BaseException | None = None
        canceled = False

        logger.info(
            "import_started",
            extra={
                "job_id": job_id,
                "start_sequence": start_sequence,
                "start_offset": start_offset,
                "batch_size": self._settings.batch_size,
                "max_workers": self._max_workers,
            },
        )

        batches = iter_batches(
            job_id, records, self._settings.batch_size, start_sequence, start_offset
        )
        in_flight: dict[Future[BatchOutcome], ImportBatch] = {}

        def settle(done: Iterable[Future[BatchOutcome]]) -> None:
            nonlocal fatal
            for future in sorted(done, key=lambda f: in_flight[f].sequence):
                batch = in_flight.pop(future)
                try:
                    outcome = future.result()
                except Exception as exc:
                    if fatal is None:
                        fatal = exc
                    logger.error(
                        "import_batch_aborted",
                        extra={
                            "job_id": job_id,
                            "sequence": batch.sequence,
                            "error": str(exc),
                        },
                    )
                    continue
                outcomes.append(outcome)
                advance = checkpoint.complete(outcome)
                if advance is not None and on_checkpoint is not None:
                    on_checkpoint(advance)

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="importer"
        ) as pool:
            while True:
                if cancel_token is not None and cancel_token.is_set():
                    canceled = True
                    logger.info("import_cancel_observed", extra={"job_id": job_id})
                    break
                if fatal is not None:
                    break
                batch = next(batches, None)
                if batch is None:
                    break
                ctx = contextvars.copy_context()
                in_flight[pool.submit(ctx.run, self._apply_batch, batch)] = batch
                if len(in_flight) >= self._max_workers:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    settle(done)
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                settle(done)

        result = ImportResult(
            job_id=job_id,
            batches=tuple(sorted(outcomes, key=lambda o: o.sequence)),
            last_sequence=checkpoint.sequence,
            records_through=checkpoint.records_through,
            canceled=canceled,
        )
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if fatal is not None:
            logger.error(
                "import_failed",
                extra={
                    "job_id": job_id,
                    "last_sequence": checkpoint.sequence,
                    "records_through": checkpoint.records_through,
                    "duration_ms": duration_ms,
                },
            )
            raise fatal

        logger.info(
            "import_completed",
            extra={
                "job_id": job_id,
                "batches": len(outcomes),
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "retry_count": result.retry_count,
                "canceled": canceled,
                "duration_ms": duration_ms,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Per-batch work (worker threads)
    # -------------------------------------------------------------------------

    def _apply_batch(self, batch: ImportBatch) -> BatchOutcome:
        with LogContext.bind(job_id=batch.job_id, batch_sequence=batch.sequence):
            try:
                (transaction_id, results), retries = self._with_retries(
                    batch.sequence, lambda: self._commit(batch, batch.records)
                )
            except PermanentDestinationError as exc:
                logger.warning(
                    "import_batch_isolating",
                    extra={
                        "sequence": batch.sequence,
                        "record_count": batch.record_count,
                        "reason": exc.reason,
                    },
                )
                return self._isolate(batch, exc)

            outcome = BatchOutcome(
                sequence=batch.sequence,
                record_count=batch.record_count,
                status=BatchStatus.COMMITTED,
                success_count=len(results),
                inserted_count=results.count(UpsertOutcome.INSERTED),
                unchanged_count=results.count(UpsertOutcome.UNCHANGED),
                updated_count=results.count(UpsertOutcome.UPDATED),
                retry_count=retries,
                records_through=batch.records_through,
                transaction_id=transaction_id,
            )
            logger.info(
                "import_batch_committed",
                extra={
                    "sequence": batch.sequence,
                    "record_count": batch.record_count,
                    "inserted": outcome.inserted_count,
                    "unchanged": outcome.unchanged_count,
                    "updated": outcome.updated_count,
                    "retry_count": retries,
                    "transaction_id": transaction_id,
                },
            )
            return outcome

    def _commit(
        self, batch: ImportBatch, records: Iterable[CanonicalRecord]
    ) -> tuple[str, list[UpsertOutcome]]:
        txn = self._destination.begin_batch(batch.job_id, batch.sequence)
        try:
            results = [txn.upsert(record) for record in records]
            txn.commit()
        except BaseException:
            txn.rollback()
            raise
        return txn.transaction_id, results

    def _with_retries(self, sequence: int, op: Callable[[], T]) -> tuple[T, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return op(), attempt - 1
            except (TransientDestinationError, TimeoutError) as exc:
                if attempt > self._settings.max_retries:
                    raise RetriesExhaustedError(sequence, attempt, str(exc)) from exc
                delay = backoff_delay(
                    attempt,
                    self._settings.backoff_base_seconds,
                    self._settings.backoff_max_seconds,
                )
                logger.warning(
                    "import_batch_retry",
                    extra={
                        "sequence": sequence,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "reason": str(exc),
                    },
                )
                self._sleep(delay)

    def _isolate(self, batch: ImportBatch, cause: PermanentDestinationError) -> BatchOutcome:
        """Re-apply each record alone so one bad record cannot sink the batch."""
        results: list[UpsertOutcome] = []
        failures: list[RecordFailure] = []
        total_retries = 0
        for record in batch.records:
            try:
                (_, single), retries = self._with_retries(
                    batch.sequence, lambda r=record: self._commit(batch, (r,))
                )
            except PermanentDestinationError as exc:
                failures.append(RecordFailure(
                    external_id=record.external_id,
                    entity_type=record.entity_type,
                    code=exc.error_code,
                    message=exc.reason,
                    sequence=batch.sequence,
                ))
                logger.warning(
                    "import_record_rejected",
                    extra={
                        "sequence": batch.sequence,
                        "external_id": record.external_id,
                        "error_code": exc.error_code,
                    },
                )
                continue
            total_retries += retries
            results.extend(single)

        if not failures:
            # The batch-level failure did not reproduce record by record.
            logger.info(
                "import_batch_isolation_clean",
                extra={"sequence": batch.sequence, "reason": cause.reason},
            )
        status = (
            BatchStatus.COMMITTED if not failures
            else BatchStatus.FAILED if not results
            else BatchStatus.PARTIAL
        )
        return BatchOutcome(
            sequence=batch.sequence,
            record_count=batch.record_count,
            status=status,
            success_count=len(results),
            failure_count=len(failures),
            inserted_count=results.count(UpsertOutcome.INSERTED),
            unchanged_count=results.count(UpsertOutcome.UNCHANGED),
            updated_count=results.count(UpsertOutcome.UPDATED),
            retry_count=total_retries,
            records_through=batch.records_through,
            failures=tuple(failures),
        )
