"""
migration_services -- job orchestration and the public service surface.

Architecture position:
    Top layer.  Composes ingestion, batch import, reconciliation and the
    job tracker; nothing below imports from here.
"""

from migration_services.cancellation import CancellationToken
from migration_services.migration_service import MigrationService
from migration_services.orchestrator import MigrationOrchestrator, ResolvedSource

__all__ = [
    "CancellationToken",
    "MigrationOrchestrator",
    "MigrationService",
    "ResolvedSource",
]
