"""
Typed JSON codec for staged and persisted record payloads.

JSON has no Decimal or date, and a migrated amount must come back as the
exact Decimal that went in.  Non-native values are wrapped as
``{"$t": <tag>, "v": <text>}``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

_TAG = "$t"


def encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return {_TAG: "decimal", "v": str(value)}
    if isinstance(value, datetime):
        return {_TAG: "datetime", "v": value.isoformat()}
    if isinstance(value, date):
        return {_TAG: "date", "v": value.isoformat()}
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    if isinstance(value, float) and value != value:  # NaN from spreadsheets
        return None
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        tag = value.get(_TAG)
        if tag == "decimal":
            return Decimal(value["v"])
        if tag == "datetime":
            return datetime.fromisoformat(value["v"])
        if tag == "date":
            return date.fromisoformat(value["v"])
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {str(k): encode_value(v) for k, v in fields.items()}


def decode_fields(data: dict[str, Any] | None) -> dict[str, Any]:
    return {k: decode_value(v) for k, v in (data or {}).items()}
