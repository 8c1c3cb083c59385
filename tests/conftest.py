"""
Pytest fixtures for the migration test suite.

Provides:
- Structured logging configured once per session, plus log capture
- In-memory SQLite engines and session factories with all tables created
- A deterministic clock and a recording ``sleep`` so backoff never waits
- Builders for cost item rows, scopes and memory-backed sources
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any

import pytest

from migration_config import default_registry
from migration_config.schema import (
    ImporterSettings,
    MigrationSettings,
    SourceSettings,
    TrackerSettings,
)
from migration_ingestion.domain.types import (
    CanonicalRecord,
    MigrationScope,
    SourceDescriptor,
    SourceProvenance,
    compute_fingerprint,
)
from migration_kernel.db.engine import (
    create_migration_engine,
    create_tables,
    make_session_factory,
)
from migration_kernel.domain.clock import DeterministicClock
from migration_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture migration logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "import_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("migration")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_migration_engine("sqlite://")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File-backed SQLite shared by several threads.

    The job store, staging store and destination each open their own
    connections, so writers wait on the file lock instead of sharing one
    connection.
    """
    eng = create_migration_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    create_tables(eng)
    yield make_session_factory(eng)
    eng.dispose()


# =============================================================================
# Time and backoff
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(
        fixed_time=datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc),
    )


class SleepRecorder:
    """Stand-in for time.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


# =============================================================================
# Settings and rule sets
# =============================================================================


@pytest.fixture
def settings():
    return MigrationSettings(
        importer=ImporterSettings(batch_size=100, max_concurrency=4),
        source=SourceSettings(chunk_size=250),
        tracker=TrackerSettings(progress_interval=50),
    )


@pytest.fixture(scope="session")
def rule_sets():
    return default_registry()


# =============================================================================
# Record builders
# =============================================================================


def cost_row(
    code: str,
    quantity: Any = "1",
    unit_cost: Any = "10.00",
    *,
    project: str = "PRJ-100",
    cost_type: str = "MATERIAL",
    unit: str = "ea",
    **extra: Any,
) -> dict[str, Any]:
    """One estimating-spreadsheet row using the bundled cost item headers."""
    row = {
        "Project": project,
        "Code": code,
        "Description": f"Item {code}",
        "Type": cost_type,
        "Quantity": str(quantity),
        "Unit": unit,
        "Unit Cost": str(unit_cost),
    }
    row.update(extra)
    return row


def memory_source(
    source_id: str,
    rows: list[dict[str, Any]],
    entity_type: str = "cost_item",
    **options: Any,
) -> SourceDescriptor:
    return SourceDescriptor(
        source_id=source_id,
        system="memory",
        entity_type=entity_type,
        options={"rows": rows, "key_field": options.pop("key_field", "Code"), **options},
    )


def scope_of(*sources: SourceDescriptor, **kwargs: Any) -> MigrationScope:
    return MigrationScope(sources=tuple(sources), **kwargs)


def estimate_rows(count: int, total: Decimal) -> list[dict[str, Any]]:
    """``count`` single-quantity rows whose unit costs sum exactly to ``total``."""
    base = (total / count).quantize(Decimal("0.01"))
    rows = [cost_row(f"C{i:05d}", "1", base) for i in range(count - 1)]
    rows.append(cost_row(f"C{count - 1:05d}", "1", total - base * (count - 1)))
    return rows


def canonical(
    code: str,
    amount: Any = "10.00",
    *,
    source_id: str = "est",
    ordinal: int = 0,
    entity_type: str = "cost_item",
    project: str = "PRJ-100",
) -> CanonicalRecord:
    """A ready-to-import cost item, bypassing mapping."""
    fields = {
        "project_code": project,
        "code": code,
        "quantity": Decimal("1"),
        "unit_cost": Decimal(str(amount)),
        "amount": Decimal(str(amount)),
    }
    return CanonicalRecord(
        entity_type=entity_type,
        external_id=f"{source_id}:{code}",
        fields=fields,
        natural_key=(project, code),
        fingerprint=compute_fingerprint(entity_type, fields),
        provenance=SourceProvenance(source_id, ordinal, ordinal + 1),
    )


def canonical_records(count: int, amount: Any = "10.00") -> list[CanonicalRecord]:
    return [canonical(f"C{i:05d}", amount, ordinal=i) for i in range(count)]
