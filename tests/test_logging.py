"""Tests for the structured logging system (harvest_kernel/logging_config.py)."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from harvest_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's config."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


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
        assert record["logger"] == "harvest_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("decision_recorded", extra={"points_earned": 13, "decision_type": "saving"})

        record = _parse_log(stream)
        assert record["points_earned"] == 13
        assert record["decision_type"] == "saving"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(simulation_id="sim-1", owner_id="farmer-7")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["simulation_id"] == "sim-1"
        assert record["owner_id"] == "farmer-7"

    def test_decimal_serialized_as_string(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("cash", extra={"cash": Decimal("5000.00")})

        assert _parse_log(stream)["cash"] == "5000.00"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """Kernel exceptions carry a .code attribute and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from harvest_kernel.exceptions import UndoWindowClosedError

        try:
            raise UndoWindowClosedError("sim-1", 3, 4)
        except UndoWindowClosedError:
            logger.error("undo_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "UNDO_WINDOW_CLOSED"
        assert record["exc_type"] == "UndoWindowClosedError"
        assert record["exc_decision_period"] == 3
        assert record["exc_current_period"] == 4

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "simulation_id" not in record
        assert "action_id" not in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"event_id": uid})

        assert _parse_log(stream)["event_id"] == str(uid)

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= record.keys()


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", simulation_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "simulation_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(simulation_id="outer")
        with LogContext.bind(simulation_id="inner"):
            assert LogContext.get_all()["simulation_id"] == "inner"
        assert LogContext.get_all()["simulation_id"] == "outer"

    def test_bind_restores_none(self):
        assert "action_id" not in LogContext.get_all()
        with LogContext.bind(action_id="temp"):
            assert LogContext.get_all()["action_id"] == "temp"
        assert "action_id" not in LogContext.get_all()

    def test_bind_ignores_none_values(self):
        LogContext.set(owner_id="keep")
        with LogContext.bind(owner_id=None, simulation_id="s"):
            assert LogContext.get_all() == {"owner_id": "keep", "simulation_id": "s"}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            LogContext.set(entry_id="x")
        with pytest.raises(ValueError):
            with LogContext.bind(trace="x"):
                pass

    def test_carry_into_pool_thread(self):
        with LogContext.bind(correlation_id="corr-1", simulation_id="sim-9"):
            carried = LogContext.carry(LogContext.get_all)
        with ThreadPoolExecutor(max_workers=1) as pool:
            assert pool.submit(carried).result() == {
                "correlation_id": "corr-1",
                "simulation_id": "sim-9",
            }
            assert pool.submit(LogContext.get_all).result() == {}

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            simulation_id="s",
            owner_id="o",
            action_id="a",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 4
        assert ctx["action_id"] == "a"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        root = logging.getLogger("harvest_kernel")
        assert h1 in root.handlers
        assert h2 not in root.handlers

    def test_get_logger_returns_child(self):
        logger = get_logger("services.simulation")
        assert logger.name == "harvest_kernel.services.simulation"

    def test_logger_hierarchy(self):
        """Child loggers inherit the harvest_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("sync.queue").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "harvest_kernel.sync.queue"
