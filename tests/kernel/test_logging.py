"""Tests for the structured logging system (migration_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from migration_jobs.domain.types import Phase
from migration_kernel.exceptions import RetriesExhaustedError
from migration_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "migration.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("import_batch_committed", extra={"sequence": 4, "inserted": 500})

        record = _parse_log(stream)
        assert record["sequence"] == 4
        assert record["inserted"] == 500

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(job_id="job-1", phase="import")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["job_id"] == "job-1"
        assert record["phase"] == "import"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_migration_exception_fields_extracted(self):
        """Migration exceptions carry a .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise RetriesExhaustedError(7, 4, "deadlock detected")
        except RetriesExhaustedError:
            get_logger("test").error("import_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "RETRIES_EXHAUSTED"
        assert record["exc_type"] == "RetriesExhaustedError"
        assert record["exc_sequence"] == 7
        assert record["exc_attempts"] == 4

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "job_id" not in record
        assert "correlation_id" not in record

    def test_domain_values_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info(
            "with_values",
            extra={
                "transaction_id": uid,
                "amount": Decimal("523417.89"),
                "phase_value": Phase.IMPORT,
                "statuses": frozenset({"valid"}),
            },
        )

        record = _parse_log(stream)
        assert record["transaction_id"] == str(uid)
        assert record["amount"] == "523417.89"
        assert record["phase_value"] == "import"
        assert record["statuses"] == ["valid"]

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # Default level is INFO.
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= record.keys()


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(correlation_id="x", job_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "job_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(source_id="outer")
        with LogContext.bind(source_id="inner"):
            assert LogContext.get_all()["source_id"] == "inner"
        assert LogContext.get_all()["source_id"] == "outer"

    def test_bind_restores_none(self):
        assert "phase" not in LogContext.get_all()
        with LogContext.bind(phase="extraction"):
            assert LogContext.get_all()["phase"] == "extraction"
        assert "phase" not in LogContext.get_all()

    def test_bind_stringifies_values(self):
        with LogContext.bind(batch_sequence=12):
            assert LogContext.get_all()["batch_sequence"] == "12"

    def test_bind_ignores_unknown_and_none(self):
        with LogContext.bind(job_id=None, actor_id="a"):
            assert LogContext.get_all() == {}

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            job_id="j",
            phase="p",
            source_id="s",
            batch_sequence="3",
        )
        assert len(LogContext.get_all()) == 5


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        root = logging.getLogger("migration")
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        before = list(root.handlers)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op

        # Only count our own handlers; the test runner may attach capture handlers.
        assert root.handlers == before
        assert h1 in root.handlers and h2 not in root.handlers
        ours = [h for h in root.handlers if isinstance(h.formatter, StructuredFormatter)]
        assert ours == [h1]

    def test_get_logger_returns_child(self):
        assert get_logger("batch.importer").name == "migration.batch.importer"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "migration.deep.nested.module"
