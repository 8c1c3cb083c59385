"""Per-job staging of raw, mapped and validated records."""

from migration_ingestion.staging.base import (
    MappingUpdate,
    StagedRecord,
    StagingStore,
    ValidationUpdate,
)
from migration_ingestion.staging.memory import InMemoryStagingStore
from migration_ingestion.staging.sql import SqlStagingStore

__all__ = [
    "InMemoryStagingStore",
    "MappingUpdate",
    "SqlStagingStore",
    "StagedRecord",
    "StagingStore",
    "ValidationUpdate",
]
