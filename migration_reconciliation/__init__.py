"""
migration_reconciliation -- Post-import proof that counts and financial
totals survived the migration.
"""

from migration_reconciliation.domain import (
    EntityReconciliation,
    FieldTotal,
    ReconciliationReport,
    evaluate_entity,
    field_tolerance,
)
from migration_reconciliation.engine import ReconciliationEngine, ReconciliationSource

__all__ = [
    "EntityReconciliation",
    "FieldTotal",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationSource",
    "evaluate_entity",
    "field_tolerance",
]
