"""Source connectors: one adapter module per legacy system or file format."""

from migration_ingestion.adapters.base import (
    RowSourceConnector,
    SourceConnector,
    open_with_retry,
    opened,
)
from migration_ingestion.adapters.csv_connector import CsvSourceConnector
from migration_ingestion.adapters.iterable_connector import IterableSourceConnector
from migration_ingestion.adapters.json_connector import JsonSourceConnector
from migration_ingestion.adapters.registry import (
    ConnectorRegistry,
    default_connector_registry,
)
from migration_ingestion.adapters.sql_connector import SqlSourceConnector
from migration_ingestion.adapters.xlsx_connector import XlsxSourceConnector

__all__ = [
    "ConnectorRegistry",
    "CsvSourceConnector",
    "IterableSourceConnector",
    "JsonSourceConnector",
    "RowSourceConnector",
    "SourceConnector",
    "SqlSourceConnector",
    "XlsxSourceConnector",
    "default_connector_registry",
    "open_with_retry",
    "opened",
]
