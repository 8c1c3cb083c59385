"""
Connector registry: the one place a source system key selects an adapter.

Factories receive the descriptor and the source settings.  Deployments
register adapters for further legacy systems without touching the core.
"""

from __future__ import annotations

from typing import Callable

from migration_config.schema import SourceSettings
from migration_ingestion.adapters.base import SourceConnector
from migration_ingestion.adapters.csv_connector import CsvSourceConnector
from migration_ingestion.adapters.iterable_connector import IterableSourceConnector
from migration_ingestion.adapters.json_connector import JsonSourceConnector
from migration_ingestion.adapters.sql_connector import SqlSourceConnector
from migration_ingestion.adapters.xlsx_connector import XlsxSourceConnector
from migration_ingestion.domain.types import SourceDescriptor
from migration_kernel.exceptions import FatalConfigurationError

ConnectorFactory = Callable[[SourceDescriptor, SourceSettings], SourceConnector]


class ConnectorRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, ConnectorFactory] = {}

    def register(self, system: str, factory: ConnectorFactory) -> None:
        self._factories[system] = factory

    def systems(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def create(
        self, descriptor: SourceDescriptor, settings: SourceSettings | None = None
    ) -> SourceConnector:
        factory = self._factories.get(descriptor.system)
        if factory is None:
            raise FatalConfigurationError(
                f"no connector registered for source system {descriptor.system!r}",
                details={"source_id": descriptor.source_id, "system": descriptor.system},
            )
        return factory(descriptor, settings or SourceSettings())


def default_connector_registry() -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register("csv", lambda d, s: CsvSourceConnector(d))
    registry.register("json", lambda d, s: JsonSourceConnector(d))
    registry.register("xlsx", lambda d, s: XlsxSourceConnector(d))
    registry.register("memory", lambda d, s: IterableSourceConnector(d))
    registry.register(
        "estimating_db",
        lambda d, s: SqlSourceConnector(d, timeout=s.connector_timeout_seconds),
    )
    return registry
