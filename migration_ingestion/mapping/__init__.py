"""Field mapping: scored column matching, locale-aware coercion, canonical build."""

from migration_ingestion.mapping.engine import (
    CoercionResult,
    FieldMapper,
    apply_transform,
    coerce_value,
    map_record,
)
from migration_ingestion.mapping.harness import MappingScanReport, scan_mapping
from migration_ingestion.mapping.matching import (
    ColumnResolver,
    normalize_header,
    resolve_columns,
    similarity,
)

__all__ = [
    "CoercionResult",
    "ColumnResolver",
    "FieldMapper",
    "MappingScanReport",
    "apply_transform",
    "coerce_value",
    "map_record",
    "normalize_header",
    "resolve_columns",
    "scan_mapping",
    "similarity",
]
