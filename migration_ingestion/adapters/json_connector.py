"""
JSON source connector.

Handles JSON array (file is [{...}, {...}, ...]) and JSON Lines (one object
per line).  Configurable: path, json_path for nested arrays (e.g.
"data.items"), format "array" | "jsonl", encoding.  Non-object entries are
skipped.  Keys are kept as exported so rule-set aliases match the source's
own headers.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

from migration_ingestion.adapters.base import RowSourceConnector
from migration_ingestion.domain.types import MigrationScope


def _get_nested(data: Any, path: str) -> Any:
    """Follow dot-separated path into dict/list. Returns None if key missing."""
    if not path.strip():
        return data
    for key in path.split("."):
        key = key.strip()
        if not key:
            continue
        if isinstance(data, list):
            try:
                data = data[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(data, dict) and key in data:
            data = data[key]
        else:
            return None
    return data


class JsonSourceConnector(RowSourceConnector):
    """Read a JSON array or JSON Lines export as one dict per record."""

    system = "json"

    @property
    def path(self) -> Path:
        return Path(self.options["path"])

    @property
    def _format(self) -> str:
        fmt = self.options.get("format")
        if fmt:
            return fmt
        return "jsonl" if self.path.suffix.lower() in (".jsonl", ".ndjson") else "array"

    def _connect(self, scope: MigrationScope) -> None:
        if not self.path.is_file():
            raise FileNotFoundError(f"JSON file not found: {self.path}")

    def _load_array(self) -> list[Any]:
        encoding = self.options.get("encoding", "utf-8")
        json_path = self.options.get("json_path")
        with self.path.open("r", encoding=encoding) as f:
            data = json.load(f)
        root = _get_nested(data, json_path) if json_path else data
        if not isinstance(root, list):
            raise ValueError(
                f"JSON root{' at ' + json_path if json_path else ''} is not an array"
            )
        return root

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        if self._format == "jsonl":
            encoding = self.options.get("encoding", "utf-8")
            with self.path.open("r", encoding=encoding) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    item = json.loads(line)
                    if isinstance(item, dict):
                        yield item
            return
        for item in self._load_array():
            if isinstance(item, dict):
                yield item

    def _count_rows(self) -> int:
        if self._format == "jsonl":
            encoding = self.options.get("encoding", "utf-8")
            with self.path.open("r", encoding=encoding) as f:
                return sum(1 for line in f if line.strip())
        return len(self._load_array())
