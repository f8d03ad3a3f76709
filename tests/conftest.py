"""
Pytest fixtures for the billing core test suite.

Provides:
- A fresh SQLite database per test (reconciliation commits, so isolation
  cannot rely on rollback)
- A file-backed SQLite database for thread concurrency tests
- Deterministic clock, fake payment gateway, recording notifier
- Catalog factories and captured structured logs

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  in-memory SQLite.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from itertools import count

import pytest

from billing_config.schema import BillingSettings, GatewaySettings
from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.exceptions import GatewayUnavailableError
from billing_kernel.logging_config import (
    LOGGER_ROOT,
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules.catalog.orm import (
    CustomerModel,
    DiscountModel,
    ProductModel,
    QuotationTemplateLineModel,
    QuotationTemplateModel,
    RecurringPlanModel,
    TaxModel,
)
from billing_services.gateway import GatewayOrder, sign_payment, signature_matches

GATEWAY_SECRET = "test_gateway_secret"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
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
    Capture billing logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "invoice_generated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger(LOGGER_ROOT)
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite://")


@pytest.fixture
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine):
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def file_db(tmp_path):
    """
    File-backed SQLite for thread tests; every thread gets its own
    connection from the returned session factory.
    """
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'billing.db'}"
    init_engine_from_url(url, echo=False, statement_timeout_ms=30000)
    create_tables()
    yield get_session_factory()
    drop_tables()
    reset_engine()


# =============================================================================
# Clock, settings, external collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return BillingSettings(
        gateway=GatewaySettings(key_id="rzp_test_key", key_secret=GATEWAY_SECRET),
    )


@dataclass
class FakeGateway:
    """In-memory gateway that signs callbacks with the real HMAC scheme."""

    secret: str = GATEWAY_SECRET
    key_id: str = "rzp_test_key"
    fail_with: Exception | None = None
    echo_amount_minor_units: int | None = None
    orders: list[GatewayOrder] = field(default_factory=list)
    _ids: count = field(default_factory=lambda: count(1))

    def create_order(self, amount_minor_units, currency, receipt=None, notes=None):
        if self.fail_with is not None:
            raise self.fail_with
        order = GatewayOrder(
            order_id=f"order_{next(self._ids):04d}",
            amount_minor_units=self.echo_amount_minor_units or amount_minor_units,
            currency=currency,
            receipt=receipt,
        )
        self.orders.append(order)
        return order

    def verify_signature(self, order_id, payment_id, signature):
        return signature_matches(self.secret, order_id, payment_id, signature)

    def sign(self, order_id, payment_id):
        return sign_payment(self.secret, order_id, payment_id)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def unavailable_gateway():
    return FakeGateway(fail_with=GatewayUnavailableError("orders", "read timed out"))


@dataclass
class RecordingNotifier:
    sent: list = field(default_factory=list)
    fail: bool = False

    def invoice_paid(self, invoice, recipient, customer_name):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((invoice.invoice_number, recipient))


@pytest.fixture
def notifier():
    return RecordingNotifier()


# =============================================================================
# Catalog factories
# =============================================================================


@pytest.fixture
def customer(session):
    row = CustomerModel(name="Asha Rao", email="asha@example.com", country="India", state="KA")
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def other_customer(session):
    row = CustomerModel(name="Ben Cole", email="ben@example.com", country="UK")
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def gst(session):
    row = TaxModel(name="GST 18%", rate=Decimal("18"), tax_type="GST", country="India")
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def product(session):
    row = ProductModel(name="Pro Seat", product_type="Service", sales_price=Decimal("1000.00"))
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def addon(session):
    row = ProductModel(name="Storage Pack", product_type="Digital", sales_price=Decimal("250.00"))
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def plan(session):
    row = RecurringPlanModel(name="Pro Monthly", price=Decimal("1000.00"), billing_period="MONTHLY")
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def make_plan(session):
    def _make(**overrides):
        values = {"name": "Plan", "price": Decimal("500.00"), "billing_period": "MONTHLY"}
        values.update(overrides)
        row = RecurringPlanModel(**values)
        session.add(row)
        session.commit()
        return row

    return _make


@pytest.fixture
def make_discount(session):
    def _make(**overrides):
        values = {
            "name": "WELCOME10",
            "discount_type": "PERCENTAGE",
            "value": Decimal("10"),
            "usage_count": 0,
        }
        values.update(overrides)
        row = DiscountModel(**values)
        session.add(row)
        session.commit()
        return row

    return _make


@pytest.fixture
def welcome10(make_discount):
    return make_discount()


@pytest.fixture
def template(session, product, plan, gst):
    row = QuotationTemplateModel(name="Starter quote", plan_id=plan.id)
    row.lines = [
        QuotationTemplateLineModel(
            line_number=1,
            product_id=product.id,
            description="Pro Seat",
            quantity=2,
            unit_price=Decimal("1000.00"),
            tax_id=gst.id,
        )
    ]
    session.add(row)
    session.commit()
    return row


@pytest.fixture
def today(clock) -> date:
    return clock.today()
