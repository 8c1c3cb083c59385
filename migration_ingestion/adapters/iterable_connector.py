"""In-memory connector over a list of row dicts (programmatic and test use)."""

from __future__ import annotations

from typing import Any, Iterable, Iterator

from migration_ingestion.adapters.base import RowSourceConnector
from migration_ingestion.domain.types import SourceDescriptor


class IterableSourceConnector(RowSourceConnector):
    """Rows come from ``rows`` or the descriptor's ``rows`` option."""

    system = "memory"

    def __init__(
        self,
        descriptor: SourceDescriptor,
        rows: Iterable[dict[str, Any]] | None = None,
    ):
        super().__init__(descriptor)
        source_rows = rows if rows is not None else self.options.get("rows", ())
        self._rows = [dict(r) for r in source_rows]

    @property
    def locator(self) -> str | None:
        return "memory"

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        for row in self._rows:
            yield dict(row)

    def _count_rows(self) -> int:
        return len(self._rows)
