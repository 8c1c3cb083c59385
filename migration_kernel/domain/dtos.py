"""
Kernel DTOs shared by the mapper, validator, importer and job tracker.

Contract:
    Issues are plain immutable values. Raising is left to the caller; a
    ValidationIssue IS the error representation at record level.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Issue severity. Errors exclude a record from import; warnings do not."""

    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """
    A single mapping or validation finding for one record.

    Guarantees:
        - Immutable (frozen dataclass)
        - code is always present and machine-readable (snake_case)
    """

    code: str
    message: str
    field: str | None = None
    severity: Severity = Severity.ERROR
    # The ``field`` attribute above shadows dataclasses.field in this scope.
    details: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    @classmethod
    def error(
        cls, code: str, message: str, field: str | None = None, **details: Any
    ) -> ValidationIssue:
        return cls(code=code, message=message, field=field,
                   severity=Severity.ERROR, details=details)

    @classmethod
    def warning(
        cls, code: str, message: str, field: str | None = None, **details: Any
    ) -> ValidationIssue:
        return cls(code=code, message=message, field=field,
                   severity=Severity.WARNING, details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity.value,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationIssue:
        return cls(
            code=data["code"],
            message=data.get("message", ""),
            field=data.get("field"),
            severity=Severity(data.get("severity", "error")),
            details=dict(data.get("details") or {}),
        )
