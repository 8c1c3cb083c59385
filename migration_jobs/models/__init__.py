"""ORM models for migration jobs."""

from migration_jobs.models.jobs import (
    CheckpointModel,
    JobErrorModel,
    MigrationJobModel,
    ReconciliationReportModel,
)

__all__ = [
    "CheckpointModel",
    "JobErrorModel",
    "MigrationJobModel",
    "ReconciliationReportModel",
]
