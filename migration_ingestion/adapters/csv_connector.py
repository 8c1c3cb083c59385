"""
CSV source connector.

Uses csv.DictReader. Configurable: path, delimiter, encoding, has_header,
quoting, skip_rows, columns. Handles BOM via utf-8-sig when encoding is
utf-8. Streams rows; the file is never loaded whole.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterator

from migration_ingestion.adapters.base import RowSourceConnector
from migration_ingestion.domain.types import MigrationScope

_QUOTING = {
    "minimal": csv.QUOTE_MINIMAL,
    "all": csv.QUOTE_ALL,
    "nonnumeric": csv.QUOTE_NONNUMERIC,
    "none": csv.QUOTE_NONE,
}


def _get_encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding", "utf-8")
    if enc.lower() == "utf-8":
        return "utf-8-sig"  # Strip BOM if present
    return enc


def _get_quoting(options: dict[str, Any]) -> int:
    q = options.get("quoting", "minimal")
    if isinstance(q, int):
        return q
    return _QUOTING.get(str(q).lower(), csv.QUOTE_MINIMAL)


class CsvSourceConnector(RowSourceConnector):
    """Read a CSV export as one row dict per data line."""

    system = "csv"

    @property
    def path(self) -> Path:
        return Path(self.options["path"])

    def _connect(self, scope: MigrationScope) -> None:
        if not self.path.is_file():
            raise FileNotFoundError(f"CSV file not found: {self.path}")

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        encoding = _get_encoding(self.options)
        delimiter = self.options.get("delimiter", ",")
        has_header = self.options.get("has_header", True)
        skip_rows = int(self.options.get("skip_rows", 0))
        quoting = _get_quoting(self.options)

        with self.path.open("r", encoding=encoding, newline="") as f:
            for _ in range(skip_rows):
                next(f, None)
            if has_header:
                reader = csv.DictReader(f, delimiter=delimiter, quoting=quoting)
                for row in reader:
                    # Short rows yield None for missing cells; extra cells land under None
                    yield {k: v for k, v in row.items() if k is not None}
            else:
                columns = self.options.get("columns")
                reader = csv.reader(f, delimiter=delimiter, quoting=quoting)
                for row in reader:
                    if columns is None:
                        columns = [f"field_{i}" for i in range(len(row))]
                    yield dict(zip(columns, row))

    def _count_rows(self) -> int:
        encoding = _get_encoding(self.options)
        skip_rows = int(self.options.get("skip_rows", 0))
        header_lines = 1 if self.options.get("has_header", True) else 0
        with self.path.open("r", encoding=encoding, newline="") as f:
            lines = sum(1 for line in f if line.strip())
        return max(lines - skip_rows - header_lines, 0)
