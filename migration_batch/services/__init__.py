"""Batch import services."""

from migration_batch.services.checkpoint import CheckpointAdvance, ContiguousCheckpoint
from migration_batch.services.importer import BatchImporter, backoff_delay, iter_batches

__all__ = [
    "BatchImporter",
    "CheckpointAdvance",
    "ContiguousCheckpoint",
    "backoff_delay",
    "iter_batches",
]
