"""Staging ORM models."""

from migration_ingestion.models.staging import StagedRecordModel

__all__ = ["StagedRecordModel"]
