"""ORM models for the migration destination."""

from migration_batch.models.destination import (
    MigratedRecordModel,
    MigratedRecordValueModel,
    natural_key_text,
)

__all__ = [
    "MigratedRecordModel",
    "MigratedRecordValueModel",
    "natural_key_text",
]
