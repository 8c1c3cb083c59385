"""
Source connector protocol and shared row-streaming base.

Contract:
    open(scope) prepares the source; records() yields RawRecords in a stable
    order (same scope -> same sequence on every run); estimated_count() is a
    best-effort total; close() releases resources and is safe to repeat.

Failure classification:
    TimeoutError, ConnectionError and PermissionError (a locked file) become
    TransientSourceError.  Missing files, unreadable formats and unsupported
    schema versions become PermanentSourceError.

Architecture: migration_ingestion/adapters.  Source I/O only, no staging or
destination imports.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol, runtime_checkable

from migration_ingestion.domain.types import (
    MigrationScope,
    RawRecord,
    SourceDescriptor,
    SourceProvenance,
)
from migration_kernel.exceptions import (
    PermanentSourceError,
    SourceError,
    TransientSourceError,
)
from migration_kernel.logging_config import get_logger

logger = get_logger("ingestion.source")


@runtime_checkable
class SourceConnector(Protocol):
    """Uniform extraction interface every legacy system is adapted to."""

    source_id: str

    def open(self, scope: MigrationScope) -> None:
        ...

    def records(self) -> Iterator[RawRecord]:
        ...

    def estimated_count(self) -> int:
        ...

    def close(self) -> None:
        ...


def classify_source_error(source_id: str, exc: BaseException) -> SourceError:
    """Map a builtin I/O failure onto the transient/permanent taxonomy."""
    if isinstance(exc, SourceError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError, PermissionError)):
        return TransientSourceError(source_id, f"{type(exc).__name__}: {exc}")
    return PermanentSourceError(source_id, f"{type(exc).__name__}: {exc}")


class RowSourceConnector:
    """
    Base for connectors that read a sequence of row dicts.

    Subclasses implement ``_iter_rows`` (and optionally ``_connect``,
    ``_count_rows``, ``_disconnect``).  The base turns rows into RawRecords
    with provenance and external ids.

    External id: ``"{source_id}:{key}"`` where key is the ``key_field``
    option value, or the 1-based row number when no key field is set.  A
    repeated key value gets ``"@{row_number}"`` appended so every raw record
    keeps a distinct id.
    """

    system: str = "rows"

    def __init__(self, descriptor: SourceDescriptor):
        self.descriptor = descriptor
        self.source_id = descriptor.source_id
        self.options: dict[str, Any] = dict(descriptor.options)
        self.scope: MigrationScope | None = None
        self._is_open = False

    @property
    def locator(self) -> str | None:
        return self.options.get("path") or self.options.get("table")

    def open(self, scope: MigrationScope) -> None:
        try:
            self._connect(scope)
        except (OSError, ValueError, LookupError) as exc:
            raise classify_source_error(self.source_id, exc) from exc
        self.scope = scope
        self._is_open = True
        logger.info(
            "source_opened",
            extra={
                "source_id": self.source_id,
                "system": self.system,
                "locator": self.locator,
            },
        )

    def records(self) -> Iterator[RawRecord]:
        if not self._is_open:
            raise PermanentSourceError(self.source_id, "connector is not open")
        key_field = self.options.get("key_field")
        seen_keys: set[str] = set()
        rows = self._iter_rows()
        ordinal = 0
        while True:
            try:
                row = next(rows)
            except StopIteration:
                return
            except (OSError, ValueError, LookupError) as exc:
                raise classify_source_error(self.source_id, exc) from exc
            row_number = ordinal + 1
            key = row.get(key_field) if key_field else None
            if key in (None, ""):
                key = str(row_number)
            else:
                key = str(key).strip()
                if key in seen_keys:
                    key = f"{key}@{row_number}"
                seen_keys.add(key)
            yield RawRecord(
                external_id=f"{self.source_id}:{key}",
                data=row,
                provenance=SourceProvenance(
                    source_id=self.source_id,
                    ordinal=ordinal,
                    row_number=row_number,
                    locator=self.locator,
                ),
            )
            ordinal += 1

    def estimated_count(self) -> int:
        try:
            return max(int(self._count_rows()), 0)
        except (OSError, ValueError, LookupError, SourceError):
            logger.warning(
                "source_count_unavailable",
                extra={"source_id": self.source_id},
                exc_info=True,
            )
            return 0

    def close(self) -> None:
        if self._is_open:
            self._is_open = False
            self._disconnect()
            logger.debug("source_closed", extra={"source_id": self.source_id})

    # Subclass hooks

    def _connect(self, scope: MigrationScope) -> None:
        pass

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        raise NotImplementedError

    def _count_rows(self) -> int:
        return 0

    def _disconnect(self) -> None:
        pass


def open_with_retry(
    connector: SourceConnector,
    scope: MigrationScope,
    *,
    max_retries: int = 3,
    backoff_base: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Open a connector, retrying transient failures with exponential backoff.

    Returns the number of retries that were needed.
    Raises the last TransientSourceError when retries are exhausted, and
    PermanentSourceError immediately.
    """
    attempt = 0
    while True:
        try:
            connector.open(scope)
            return attempt
        except TransientSourceError as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error(
                    "source_open_retries_exhausted",
                    extra={"source_id": connector.source_id, "attempts": attempt},
                )
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning(
                "source_open_retry",
                extra={
                    "source_id": connector.source_id,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "reason": exc.reason,
                },
            )
            sleep(delay)


@contextmanager
def opened(
    connector: SourceConnector,
    scope: MigrationScope,
    *,
    max_retries: int = 0,
    backoff_base: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[SourceConnector]:
    """Open (with retry) and always close a connector."""
    open_with_retry(
        connector, scope, max_retries=max_retries, backoff_base=backoff_base, sleep=sleep
    )
    try:
        yield connector
    finally:
        connector.close()
