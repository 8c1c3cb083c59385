"""Destinations the batch importer writes to."""

from migration_batch.destinations.base import Destination, DestinationTxn, decide_upsert
from migration_batch.destinations.memory import InMemoryDestination, InMemoryDestinationTxn
from migration_batch.destinations.sql import SqlDestination, SqlDestinationTxn

__all__ = [
    "Destination",
    "DestinationTxn",
    "InMemoryDestination",
    "InMemoryDestinationTxn",
    "SqlDestination",
    "SqlDestinationTxn",
    "decide_upsert",
]
