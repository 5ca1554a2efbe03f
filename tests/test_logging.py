"""Tests for the structured logging system (market_kernel/logging_config.py)."""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from market_kernel.domain.lifecycle import ContractState
from market_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


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

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "market_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("offer_submitted", extra={"sequence": 3, "quantity": 80})

        record = _parse_log(stream)
        assert record["sequence"] == 3
        assert record["quantity"] == 80

    def test_domain_values_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info(
            "values",
            extra={
                "payout_ref": uid,
                "amount": Decimal("722.00"),
                "state": ContractState.FULFILLED,
                "parties": frozenset({"b", "a"}),
            },
        )

        record = _parse_log(stream)
        assert record["payout_ref"] == str(uid)
        assert record["amount"] == "722.00"
        assert record["state"] == "fulfilled"
        assert record["parties"] == ["a", "b"]

    def test_datetimes_and_unknown_objects(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        when = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)
        get_logger("test").info("values", extra={"end_time": when, "opaque": object()})

        record = _parse_log(stream)
        assert record["end_time"] == "2024-01-08T12:00:00+00:00"
        assert record["opaque"].startswith("<object object")

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        contract_id = uuid4()
        with LogContext.bind(actor_id="farmer-1", contract_id=contract_id):
            get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["actor_id"] == "farmer-1"
        assert record["contract_id"] == str(contract_id)

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
        """Market kernel exceptions carry a .code attribute and typed fields."""
        from market_kernel.exceptions import PriceExceedsCeilingError

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise PriceExceedsCeilingError("c-1", "10.50", "10.00")
        except PriceExceedsCeilingError:
            logger.warning("offer_rejected", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "PRICE_EXCEEDS_CEILING"
        assert record["exc_type"] == "PriceExceedsCeilingError"
        assert record["exc_price"] == "10.50"
        assert record["exc_max_price"] == "10.00"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "actor_id" not in record
        assert "contract_id" not in record

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", payout_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "payout_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(contract_id="outer")
        with LogContext.bind(contract_id="inner"):
            assert LogContext.get_all()["contract_id"] == "inner"
        assert LogContext.get_all()["contract_id"] == "outer"

    def test_bind_restores_none(self):
        assert "actor_id" not in LogContext.get_all()
        with LogContext.bind(actor_id="temp"):
            assert LogContext.get_all()["actor_id"] == "temp"
        assert "actor_id" not in LogContext.get_all()

    def test_set_stringifies_ids(self):
        payout_id = uuid4()
        LogContext.set(payout_id=payout_id, actor_id=None)
        assert LogContext.get_all() == {"payout_id": str(payout_id)}

    def test_bind_ignores_unknown_fields(self):
        with LogContext.bind(actor_id="a", shoe_size="44"):
            assert LogContext.get_all() == {"actor_id": "a"}

    def test_all_fields(self):
        LogContext.set(correlation_id="c", actor_id="a", contract_id="k", payout_id="p")
        ctx = LogContext.get_all()
        assert len(ctx) == 4
        assert ctx["payout_id"] == "p"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        handlers = logging.getLogger("market_kernel").handlers
        assert h1 in handlers
        assert h2 not in handlers

    def test_get_logger_returns_child(self):
        assert get_logger("services.contract_ledger").name == (
            "market_kernel.services.contract_ledger"
        )

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "market_kernel.deep.nested.module"
