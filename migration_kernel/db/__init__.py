"""Database layer: declarative base, engines, sessions and table creation."""

from migration_kernel.db.base import Base, TimestampedBase, UUIDString
from migration_kernel.db.engine import (
    create_migration_engine,
    create_tables,
    drop_tables,
    make_session_factory,
    session_scope,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "UUIDString",
    "create_migration_engine",
    "create_tables",
    "drop_tables",
    "make_session_factory",
    "session_scope",
]
