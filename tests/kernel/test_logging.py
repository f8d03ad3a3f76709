"""JSON log formatting, LogContext and configure_logging."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.exceptions import DiscountRejectedError
from billing_kernel.logging_config import (
    LOGGER_ROOT,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state, then restore the suite-wide configuration."""
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
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "billing.test"
        assert "ts" in record

    def test_extra_fields_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        sub_id = uuid4()
        get_logger("test").info(
            "invoice_generated", extra={"subscription_id": sub_id, "total": Decimal("1062.00")}
        )

        record = _parse_log(stream)
        assert record["subscription_id"] == str(sub_id)
        assert record["total"] == "1062.00"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", order_id="order_0001")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["order_id"] == "order_0001"

    def test_billing_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise DiscountRejectedError("ONCE", "USAGE_LIMIT_REACHED", "usage limit 1 reached")
        except DiscountRejectedError:
            get_logger("test").error("discount_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "DiscountRejectedError"
        assert record["exc_code"] == "DISCOUNT_REJECTED"
        assert record["exc_reason_code"] == "USAGE_LIMIT_REACHED"
        assert "traceback" in record

    def test_credentials_masked(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").warning(
            "callback_rejected", extra={"signature": "deadbeef", "key_secret": "s3cr3t", "order_id_hint": "o1"}
        )

        record = _parse_log(stream)
        assert record["signature"] == "***"
        assert record["key_secret"] == "***"
        assert record["order_id_hint"] == "o1"


class TestLogContext:
    def test_bind_restores_previous_values(self):
        LogContext.set(subscription_id="outer")
        with LogContext.bind(subscription_id="inner", invoice_id="inv"):
            assert LogContext.get_all() == {"subscription_id": "inner", "invoice_id": "inv"}
        assert LogContext.get_all() == {"subscription_id": "outer"}

    def test_none_values_skipped(self):
        with LogContext.bind(actor_id=None, correlation_id="c1"):
            assert LogContext.get_all() == {"correlation_id": "c1"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(tenant="acme")

    def test_clear(self):
        LogContext.set(actor_id="admin")
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestConfigureLogging:
    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        assert logging.getLogger(LOGGER_ROOT).handlers == [handler]

    def test_level_applied(self):
        handler, stream = _make_handler()
        configure_logging(level=logging.WARNING, handler=handler)
        get_logger("test").info("dropped")
        assert stream.getvalue() == ""
