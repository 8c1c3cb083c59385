"""
Canonical entity schemas for construction migration targets.

Each EntitySchema declares the typed fields of one target entity, its
natural key, the fields reconciliation sums, and any derived fields the
mapper computes after coercion.  Schemas are data: validators and the
mapper read them, nothing mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from migration_config.schema import FieldType

COST_TYPES = ("MATERIAL", "LABOR", "EQUIPMENT", "SUBCONTRACTOR", "OTHER")
RESOURCE_TYPES = ("LABOR", "EQUIPMENT", "MATERIAL", "SUBCONTRACTOR")
ACTIVITY_STATUSES = ("NOT_STARTED", "IN_PROGRESS", "COMPLETED", "ON_HOLD", "CANCELED")
PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")


@dataclass(frozen=True)
class FieldSpec:
    """Declared shape and bounds of one canonical field."""

    name: str
    field_type: FieldType = FieldType.STRING
    required: bool = False
    allowed_values: tuple[str, ...] | None = None
    min_value: Decimal | None = None
    min_exclusive: bool = False
    max_value: Decimal | None = None
    max_length: int | None = None
    pattern: str | None = None
    references: str | None = None  # entity type whose natural key this field names


@dataclass(frozen=True)
class DerivedField:
    name: str
    depends_on: tuple[str, ...]
    compute: Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class EntitySchema:
    entity_type: str
    fields: tuple[FieldSpec, ...]
    natural_key: tuple[str, ...]
    financial_fields: tuple[str, ...] = ()
    date_field: str | None = None
    parent_field: str | None = None
    derived: tuple[DerivedField, ...] = ()
    defaults: dict[str, Any] = field(default_factory=dict)

    def spec_for(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def optional_fields(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields if not f.required)

    def required_map(self) -> dict[str, bool]:
        """Field name -> required flag, for rule-set validation."""
        return {f.name: f.required for f in self.fields}

    def key_of(self, fields: dict[str, Any]) -> tuple[str, ...]:
        return tuple("" if fields.get(k) is None else str(fields[k]) for k in self.natural_key)

    def parent_key_of(self, fields: dict[str, Any]) -> tuple[str, ...] | None:
        """Natural key of the record's parent, or None when it has no parent."""
        if self.parent_field is None:
            return None
        parent = fields.get(self.parent_field)
        if parent in (None, ""):
            return None
        key = list(self.key_of(fields))
        key[-1] = str(parent)
        return tuple(key)


def _amount(fields: dict[str, Any]) -> Decimal:
    return fields["quantity"] * fields["unit_cost"]


_ZERO = Decimal("0")

COST_ITEM = EntitySchema(
    entity_type="cost_item",
    fields=(
        FieldSpec("project_code", required=True, max_length=50),
        FieldSpec("code", required=True, max_length=50),
        FieldSpec("name", required=True, max_length=255),
        FieldSpec("cost_type", required=True, allowed_values=COST_TYPES),
        FieldSpec("quantity", FieldType.DECIMAL, required=True,
                  min_value=_ZERO, min_exclusive=True),
        FieldSpec("unit", required=True, max_length=20),
        FieldSpec("unit_cost", FieldType.DECIMAL, required=True, min_value=_ZERO),
        FieldSpec("currency", max_length=3, pattern=r"^[A-Z]{3}$"),
        FieldSpec("parent_code", max_length=50),
        FieldSpec("phase", max_length=50),
        FieldSpec("resource_code", max_length=50, references="resource"),
        FieldSpec("description"),
        FieldSpec("notes"),
    ),
    natural_key=("project_code", "code"),
    financial_fields=("amount", "quantity"),
    parent_field="parent_code",
    derived=(DerivedField("amount", ("quantity", "unit_cost"), _amount),),
    defaults={"currency": "USD"},
)

RESOURCE = EntitySchema(
    entity_type="resource",
    fields=(
        FieldSpec("code", required=True, max_length=50),
        FieldSpec("name", required=True, max_length=255),
        FieldSpec("resource_type", required=True, allowed_values=RESOURCE_TYPES),
        FieldSpec("rate", FieldType.DECIMAL, required=True),
        FieldSpec("unit", max_length=20),
        FieldSpec("currency", max_length=3, pattern=r"^[A-Z]{3}$"),
    ),
    natural_key=("code",),
    financial_fields=("rate",),
    defaults={"currency": "USD"},
)

SCHEDULE_ACTIVITY = EntitySchema(
    entity_type="schedule_activity",
    fields=(
        FieldSpec("project_code", required=True, max_length=50),
        FieldSpec("code", required=True, max_length=50),
        FieldSpec("name", required=True, max_length=255),
        FieldSpec("start_date", FieldType.DATE, required=True),
        FieldSpec("end_date", FieldType.DATE, required=True),
        FieldSpec("duration_days", FieldType.INTEGER, min_value=_ZERO),
        FieldSpec("percent_complete", FieldType.DECIMAL,
                  min_value=_ZERO, max_value=Decimal("100")),
        FieldSpec("status", allowed_values=ACTIVITY_STATUSES),
        FieldSpec("priority", allowed_values=PRIORITIES),
        FieldSpec("parent_code", max_length=50),
        FieldSpec("budgeted_cost", FieldType.DECIMAL, min_value=_ZERO),
    ),
    natural_key=("project_code", "code"),
    financial_fields=("budgeted_cost",),
    date_field="start_date",
    parent_field="parent_code",
)

ENTITY_SCHEMAS: dict[str, EntitySchema] = {
    s.entity_type: s for s in (COST_ITEM, RESOURCE, SCHEDULE_ACTIVITY)
}


def get_entity_schema(entity_type: str) -> EntitySchema | None:
    return ENTITY_SCHEMAS.get(entity_type)
