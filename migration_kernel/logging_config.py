"""
Structured JSON logging for migration jobs.

One JSON object per line on the ``migration`` logger hierarchy.  Messages
are event names (``import_batch_committed``) and the facts go in
``extra``.  The job, phase, source and batch a line belongs to come from
``LogContext``, which the orchestrator and importer bind as they descend,
so call sites never repeat them.

Context variables do not follow work into a ThreadPoolExecutor; code that
runs on a worker binds its own context.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

ROOT_LOGGER = "migration"

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = ("correlation_id", "job_id", "phase", "source_id", "batch_sequence")

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"migration_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """Job-scoped fields added to every log line on the current thread or task."""

    FIELDS = _CONTEXT_FIELDS

    @staticmethod
    def set(**fields: Any) -> None:
        """Set known fields; None values and unknown names are ignored."""
        for name, value in fields.items():
            if value is not None and name in _context:
                _context[name].set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        values = {name: var.get() for name, var in _context.items()}
        return {name: value for name, value in values.items() if value is not None}

    @staticmethod
    def clear() -> None:
        for var in _context.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields for the duration of a block, then restore the previous values."""
        tokens = [
            (_context[name], _context[name].set(str(value)))
            for name, value in fields.items()
            if value is not None and name in _context
        ]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "taskName",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, tuple):
        return list(value)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Typed migration errors carry their facts as public attributes.
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_jsonable)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger ``migration.<name>``; ``name`` is ``<area>.<module>``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


_configured = False
_setup_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``migration`` logger.

    Only the first call has an effect until ``reset_logging()``.  The
    hierarchy does not propagate to the root logger, so an embedding
    application's handlers never see duplicate lines.
    """
    global _configured
    with _setup_lock:
        if _configured:
            return
        _configured = True
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level)
        root.propagate = False
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)


def reset_logging() -> None:
    """Remove the handler and forget configuration.  Tests only."""
    global _configured
    with _setup_lock:
        _configured = False
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
