"""
Typed Exception Hierarchy for the Migration System.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The orchestrator decides between "retry", "reject the record and continue"
and "fail the job" purely on exception type. Message parsing would make
that decision fragile, so:
  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, persisted with
     the job's error records)
  3. Exceptions carry structured DATA (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    MigrationError (base)
    |
    +-- SourceError
    |   +-- TransientSourceError          retry connector operation
    |   +-- PermanentSourceError          source unusable, job fails
    |       +-- UnsupportedSchemaVersionError
    |
    +-- PermanentMappingError             required field unmappable, record rejected
    +-- ValidationError                   record rejected, job continues
    |
    +-- DestinationError
    |   +-- TransientDestinationError     retry batch with backoff
    |   |   +-- RetriesExhaustedError     job aborts
    |   +-- PermanentDestinationError     isolate offending record, job continues
    |
    +-- IntegrityError                    reconciliation out of tolerance, job fails
    +-- FatalConfigurationError           missing/invalid rule set, job aborts
    |
    +-- JobError
        +-- JobNotFoundError
        +-- InvalidPhaseTransitionError
        +-- JobImmutableError
        +-- JobAlreadyRunningError

===============================================================================
PROPAGATION POLICY
===============================================================================

Record-level errors (PermanentMappingError, ValidationError,
PermanentDestinationError) never abort a job. Transient errors are retried
locally. Only FatalConfigurationError, RetriesExhaustedError, an unusable
source and IntegrityError move a job to FAILED.
"""

from typing import Any


class MigrationError(Exception):
    """
    Base exception for all migration errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "MIGRATION_ERROR"


# Source-related exceptions


class SourceError(MigrationError):
    """Base exception for source connector errors."""

    code: str = "SOURCE_ERROR"

    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Source {source_id}: {reason}")


class TransientSourceError(SourceError):
    """Connection or lock failure that may succeed on retry."""

    code: str = "TRANSIENT_SOURCE_ERROR"


class PermanentSourceError(SourceError):
    """Source cannot be read no matter how often it is retried."""

    code: str = "PERMANENT_SOURCE_ERROR"


class UnsupportedSchemaVersionError(PermanentSourceError):
    """Legacy source reports a schema version no adapter understands."""

    code: str = "UNSUPPORTED_SCHEMA_VERSION"

    def __init__(self, source_id: str, version: str, supported: tuple[str, ...]):
        self.version = version
        self.supported = supported
        super().__init__(
            source_id,
            f"schema version {version!r} not supported "
            f"(supported: {', '.join(supported) or 'none'})",
        )


# Record-level exceptions


class PermanentMappingError(MigrationError):
    """A required canonical field has no acceptable source column or value."""

    code: str = "PERMANENT_MAPPING_ERROR"

    def __init__(self, external_id: str, fields: tuple[str, ...]):
        self.external_id = external_id
        self.fields = fields
        super().__init__(
            f"Record {external_id}: required fields not mappable: {', '.join(fields)}"
        )


class ValidationError(MigrationError):
    """Record failed one or more blocking validation checks."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, external_id: str, issue_codes: tuple[str, ...]):
        self.external_id = external_id
        self.issue_codes = issue_codes
        super().__init__(
            f"Record {external_id} rejected: {', '.join(issue_codes)}"
        )


# Destination-related exceptions


class DestinationError(MigrationError):
    """Base exception for destination store errors."""

    code: str = "DESTINATION_ERROR"


class TransientDestinationError(DestinationError):
    """Timeout, deadlock or outage. The batch is rolled back and retried."""

    code: str = "TRANSIENT_DESTINATION_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Transient destination failure: {reason}")


class RetriesExhaustedError(TransientDestinationError):
    """A batch kept failing transiently after every allowed retry."""

    code: str = "RETRIES_EXHAUSTED"

    def __init__(self, sequence: int, attempts: int, reason: str):
        self.sequence = sequence
        self.attempts = attempts
        super().__init__(
            f"batch {sequence} failed after {attempts} attempts: {reason}"
        )


class PermanentDestinationError(DestinationError):
    """Constraint violation unrelated to concurrency."""

    code: str = "PERMANENT_DESTINATION_ERROR"

    def __init__(
        self,
        reason: str,
        external_id: str | None = None,
        error_code: str = "constraint_violation",
    ):
        self.reason = reason
        self.external_id = external_id
        self.error_code = error_code
        target = f" for {external_id}" if external_id else ""
        super().__init__(f"Destination rejected write{target}: {reason}")


# Job-level exceptions


class IntegrityError(MigrationError):
    """Reconciliation did not pass tolerance."""

    code: str = "RECONCILIATION_INTEGRITY"

    def __init__(self, job_id: str, failures: tuple[str, ...]):
        self.job_id = job_id
        self.failures = failures
        super().__init__(
            f"Job {job_id} failed reconciliation: {'; '.join(failures)}"
        )


class FatalConfigurationError(MigrationError):
    """Missing or invalid configuration. Raised before any extraction."""

    code: str = "FATAL_CONFIGURATION"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"Configuration error: {reason}")


class JobError(MigrationError):
    """Base exception for job lifecycle errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    """Job with given ID was not found."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Migration job not found: {job_id}")


class InvalidPhaseTransitionError(JobError):
    """Transition not present in the phase transition table."""

    code: str = "INVALID_PHASE_TRANSITION"

    def __init__(self, job_id: str, from_phase: str, to_phase: str):
        self.job_id = job_id
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(
            f"Job {job_id}: cannot transition from {from_phase} to {to_phase}"
        )


class JobImmutableError(JobError):
    """Attempt to mutate a job that already reached a terminal phase."""

    code: str = "JOB_IMMUTABLE"

    def __init__(self, job_id: str, phase: str):
        self.job_id = job_id
        self.phase = phase
        super().__init__(f"Job {job_id} is terminal ({phase}) and cannot change")


class JobAlreadyRunningError(JobError):
    """Job is already being driven by another runner."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already running")
