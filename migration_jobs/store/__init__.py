"""Job persistence."""

from migration_jobs.store.base import JobStore
from migration_jobs.store.memory import InMemoryJobStore
from migration_jobs.store.sql import SqlJobStore

__all__ = ["InMemoryJobStore", "JobStore", "SqlJobStore"]
