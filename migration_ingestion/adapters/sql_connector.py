"""
Legacy estimating database connector.

Reads one table (or view) of a legacy estimating database through
SQLAlchemy Core, ordered by a key column so the stream is stable across
retries.  Rows are fetched in chunks (``stream_results``), never all at
once.

Options:
  url: SQLAlchemy database URL (or pass ``engine`` to the constructor).
  table: table or view name.  schema: optional schema name.
  key_column: ordering column (also used as key_field unless one is given).
  project_column: when set and the scope names projects, rows are
      filtered at the source.
  version_table / version_column / supported_versions: optional schema
      version check; a mismatch is permanent.
"""

from __future__ import annotations

from typing import Any, Iterator

from sqlalchemy import MetaData, Table, create_engine, func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from migration_ingestion.adapters.base import RowSourceConnector
from migration_ingestion.domain.types import MigrationScope, SourceDescriptor
from migration_kernel.exceptions import (
    PermanentSourceError,
    TransientSourceError,
    UnsupportedSchemaVersionError,
)


class SqlSourceConnector(RowSourceConnector):
    """Stream rows from a legacy relational estimating system."""

    system = "estimating_db"

    def __init__(
        self,
        descriptor: SourceDescriptor,
        engine: Engine | None = None,
        timeout: float | None = None,
    ):
        super().__init__(descriptor)
        self._engine = engine
        self._owns_engine = engine is None
        self._timeout = timeout
        self._table: Table | None = None
        self.options.setdefault("key_field", self.options.get("key_column"))

    @property
    def locator(self) -> str | None:
        return self.options.get("table")

    def _translate(self, exc: sa_exc.SQLAlchemyError) -> Exception:
        if isinstance(exc, (sa_exc.OperationalError, sa_exc.TimeoutError)):
            return TransientSourceError(self.source_id, str(exc.__cause__ or exc))
        return PermanentSourceError(self.source_id, str(exc.__cause__ or exc))

    def _connect(self, scope: MigrationScope) -> None:
        if "table" not in self.options or "key_column" not in self.options:
            raise PermanentSourceError(
                self.source_id, "options 'table' and 'key_column' are required"
            )
        try:
            if self._engine is None:
                connect_args: dict[str, Any] = {}
                url = self.options["url"]
                if self._timeout is not None:
                    if url.startswith("sqlite"):
                        connect_args["timeout"] = self._timeout
                    else:
                        connect_args["connect_timeout"] = int(self._timeout)
                self._engine = create_engine(url, connect_args=connect_args)
            self._check_version()
            self._table = Table(
                self.options["table"],
                MetaData(),
                schema=self.options.get("schema"),
                autoload_with=self._engine,
            )
            if self.options["key_column"] not in self._table.c:
                raise PermanentSourceError(
                    self.source_id,
                    f"key column {self.options['key_column']!r} not in table",
                )
        except sa_exc.NoSuchTableError as exc:
            raise PermanentSourceError(self.source_id, f"no such table: {exc}") from exc
        except sa_exc.SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    def _check_version(self) -> None:
        version_table = self.options.get("version_table")
        if not version_table:
            return
        supported = tuple(str(v) for v in self.options.get("supported_versions", ()))
        table = Table(version_table, MetaData(), autoload_with=self._engine)
        column = table.c[self.options.get("version_column", "version")]
        with self._engine.connect() as conn:
            version = conn.execute(select(column).limit(1)).scalar()
        if version is None or str(version) not in supported:
            raise UnsupportedSchemaVersionError(self.source_id, str(version), supported)

    def _select(self):
        table = self._table
        stmt = select(table)
        project_column = self.options.get("project_column")
        if project_column and self.scope is not None and self.scope.projects:
            stmt = stmt.where(table.c[project_column].in_(self.scope.projects))
        return stmt

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        stmt = self._select().order_by(self._table.c[self.options["key_column"]])
        chunk = int(self.options.get("chunk_size", 1000))
        try:
            with self._engine.connect() as conn:
                result = conn.execution_options(
                    stream_results=True, yield_per=chunk
                ).execute(stmt)
                for row in result.mappings():
                    yield dict(row)
        except sa_exc.SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    def _count_rows(self) -> int:
        stmt = select(func.count()).select_from(self._select().subquery())
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar() or 0)
        except sa_exc.SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    def _disconnect(self) -> None:
        if self._owns_engine and self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._table = None
