"""
Two-phase payment reconciliation.

Covers:
- Order creation: pricing, discount redemption, CONFIRMED transition
- Rollback of every write when pricing or the gateway fails
- Callback verification: signature check, unknown orders, replays
- Settlement invoice issued PAID, failures logged for replay
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    DiscountRejectedError,
    GatewayError,
    GatewayUnavailableError,
    InvalidStateError,
    NoPayableAmountError,
    NotFoundError,
    SignatureMismatchError,
)
from billing_modules.invoicing import InvoiceStatus
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.subscriptions import (
    NewSubscriptionLine,
    SubscriptionService,
    SubscriptionStatus,
)
from billing_modules.subscriptions.orm import SubscriptionModel
from billing_services import PaymentReconciliationService


@pytest.fixture
def reconciler(session, gateway, settings, clock, notifier):
    return PaymentReconciliationService(session, gateway, settings, clock=clock, notifier=notifier)


@pytest.fixture
def draft(session, clock, customer, product):
    sub = SubscriptionService(session, clock).create_subscription(
        customer.id, lines=[NewSubscriptionLine(product.id, 2)]
    )
    session.commit()
    return sub


def _messages(captured_logs, level=None):
    return [
        r["message"] for r in captured_logs() if level is None or r["level"] == level
    ]


class TestCreateOrder:
    def test_portal_checkout_with_discount(self, reconciler, gateway, customer, plan, welcome10, session):
        order = reconciler.subscribe_to_plan(customer.id, plan.id, discount_code="WELCOME10")

        assert order.discount_amount == Decimal("100.00")
        assert order.amount_due == Decimal("1062.00")
        assert order.amount_minor_units == 106200
        assert order.currency == "INR"
        assert order.key_id == "rzp_test_key"
        assert gateway.orders[0].amount_minor_units == 106200

        stored = session.get(SubscriptionModel, order.subscription_id)
        assert stored.status == SubscriptionStatus.CONFIRMED.value
        assert stored.gateway_order_id == order.order_id
        assert stored.amount_due == Decimal("1062.00")
        assert stored.expiration_date.isoformat() == "2025-02-15"
        session.refresh(welcome10)
        assert welcome10.usage_count == 1

    def test_existing_draft(self, reconciler, draft, gateway):
        order = reconciler.create_order(draft.id, performed_by="admin")
        assert order.amount_due == Decimal("2360.00")
        assert gateway.orders[0].receipt == draft.subscription_number

    def test_payment_link_expiry(self, reconciler, draft, clock):
        order = reconciler.create_order(draft.id)
        assert (order.expires_at - clock.now()).total_seconds() == 24 * 3600

    def test_not_draft_rejected(self, reconciler, draft, gateway):
        reconciler.create_order(draft.id)
        with pytest.raises(InvalidStateError):
            reconciler.create_order(draft.id)
        assert len(gateway.orders) == 1

    def test_free_plan_has_nothing_to_pay(self, reconciler, customer, make_plan, session, gateway):
        free = make_plan(name="Free", price=Decimal("0"))
        with pytest.raises(NoPayableAmountError):
            reconciler.subscribe_to_plan(customer.id, free.id)
        assert session.query(SubscriptionModel).count() == 0
        assert gateway.orders == []

    def test_full_discount_has_nothing_to_pay(self, reconciler, draft, make_discount):
        make_discount(name="FREEBIE", value=Decimal("100"))
        with pytest.raises(NoPayableAmountError):
            reconciler.create_order(draft.id, discount_code="freebie")

    def test_unknown_code(self, reconciler, draft, session):
        with pytest.raises(NotFoundError):
            reconciler.create_order(draft.id, discount_code="NOPE")
        assert session.get(SubscriptionModel, draft.id).status == SubscriptionStatus.DRAFT.value

    def test_exhausted_code(self, reconciler, draft, make_discount):
        make_discount(name="ONCE", limit_usage=1, usage_count=1)
        with pytest.raises(DiscountRejectedError) as exc_info:
            reconciler.create_order(draft.id, discount_code="ONCE")
        assert exc_info.value.reason_code == "USAGE_LIMIT_REACHED"

    def test_gateway_failure_rolls_back_redemption(
        self, session, unavailable_gateway, settings, clock, draft, make_discount
    ):
        once = make_discount(name="ONCE", limit_usage=1)
        reconciler = PaymentReconciliationService(session, unavailable_gateway, settings, clock=clock)
        with pytest.raises(GatewayUnavailableError):
            reconciler.create_order(draft.id, discount_code="ONCE")

        session.refresh(once)
        assert once.usage_count == 0
        stored = session.get(SubscriptionModel, draft.id)
        session.refresh(stored)
        assert stored.status == SubscriptionStatus.DRAFT.value
        assert stored.gateway_order_id is None

    def test_gateway_amount_mismatch_rolls_back(self, session, gateway, settings, clock, draft):
        gateway.echo_amount_minor_units = 100
        reconciler = PaymentReconciliationService(session, gateway, settings, clock=clock)
        with pytest.raises(GatewayError):
            reconciler.create_order(draft.id)

        stored = session.get(SubscriptionModel, draft.id)
        session.refresh(stored)
        assert stored.status == SubscriptionStatus.DRAFT.value
        assert stored.gateway_order_id is None

    def test_quote_has_no_side_effects(self, reconciler, draft, welcome10, session, gateway):
        quote = reconciler.quote(draft.id, "WELCOME10")
        assert quote.totals.total == Decimal("2124.00")
        session.refresh(welcome10)
        assert welcome10.usage_count == 0
        assert gateway.orders == []


class TestVerifyPayment:
    @pytest.fixture
    def order(self, reconciler, customer, plan, welcome10):
        return reconciler.subscribe_to_plan(customer.id, plan.id, discount_code="WELCOME10")

    def test_activates_and_invoices(self, reconciler, gateway, order, notifier, captured_logs):
        signature = gateway.sign(order.order_id, "pay_0001")
        result = reconciler.verify_payment(order.order_id, "pay_0001", signature)

        assert result.replayed is False
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.amount_due == Decimal("0")
        assert result.subscription.next_invoice_date.isoformat() == "2025-02-15"

        invoice = result.invoice
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.subtotal == Decimal("900.00")
        assert invoice.tax_amount == Decimal("162.00")
        assert invoice.total_amount == order.amount_due
        assert invoice.paid_amount == invoice.total_amount
        assert invoice.gateway_payment_id == "pay_0001"
        assert notifier.sent == [(invoice.invoice_number, "asha@example.com")]
        assert "subscription_activated" in _messages(captured_logs)

    def test_discount_exhausted_after_order_still_settles(
        self, reconciler, gateway, customer, plan, make_discount, session
    ):
        make_discount(name="ONCE", limit_usage=1, discount_type="FIXED", value=Decimal("100"))
        order = reconciler.subscribe_to_plan(customer.id, plan.id, discount_code="ONCE")
        result = reconciler.verify_payment(
            order.order_id, "pay_0001", gateway.sign(order.order_id, "pay_0001")
        )
        assert result.invoice.total_amount == order.amount_due == Decimal("1062.00")

    def test_bad_signature(self, reconciler, order, session, captured_logs):
        with pytest.raises(SignatureMismatchError):
            reconciler.verify_payment(order.order_id, "pay_0001", "0" * 64)

        assert "payment_signature_mismatch" in _messages(captured_logs, "CRITICAL")
        stored = session.get(SubscriptionModel, order.subscription_id)
        assert stored.status == SubscriptionStatus.CONFIRMED.value
        assert session.query(InvoiceModel).count() == 0

    def test_unknown_order(self, reconciler, gateway, captured_logs):
        with pytest.raises(NotFoundError):
            reconciler.verify_payment("order_9999", "pay_x", gateway.sign("order_9999", "pay_x"))
        assert "payment_order_not_found" in _messages(captured_logs, "ERROR")

    def test_replay_is_idempotent(self, reconciler, gateway, order, session, clock):
        signature = gateway.sign(order.order_id, "pay_0001")
        first = reconciler.verify_payment(order.order_id, "pay_0001", signature)
        history_len = len(SubscriptionService(session, clock).history(order.subscription_id))

        second = reconciler.verify_payment(order.order_id, "pay_0001", signature)

        assert second.replayed is True
        assert second.invoice.id == first.invoice.id
        assert session.query(InvoiceModel).count() == 1
        assert len(SubscriptionService(session, clock).history(order.subscription_id)) == history_len

    def test_second_payment_on_active_rejected(self, reconciler, gateway, order):
        reconciler.verify_payment(order.order_id, "pay_0001", gateway.sign(order.order_id, "pay_0001"))
        with pytest.raises(InvalidStateError):
            reconciler.verify_payment(
                order.order_id, "pay_0002", gateway.sign(order.order_id, "pay_0002")
            )

    def test_invoicing_failure_keeps_activation(
        self, reconciler, gateway, order, session, captured_logs, monkeypatch
    ):
        def _broken(**kwargs):
            raise RuntimeError("invoice numbering unavailable")

        monkeypatch.setattr(reconciler._invoices, "create_paid_invoice", _broken)
        signature = gateway.sign(order.order_id, "pay_0001")
        result = reconciler.verify_payment(order.order_id, "pay_0001", signature)

        assert result.invoice is None
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        failed = [r for r in captured_logs() if r["message"] == "auto_invoice_failed"]
        assert failed and failed[0]["level"] == "ERROR"
        assert failed[0]["payment_id"] == "pay_0001"

        monkeypatch.undo()
        retried = reconciler.verify_payment(order.order_id, "pay_0001", signature)
        assert retried.replayed is True
        assert retried.invoice is not None

    def test_price_change_after_order_is_dead_lettered(
        self, reconciler, gateway, customer, plan, session, captured_logs
    ):
        order = reconciler.subscribe_to_plan(customer.id, plan.id)
        plan.price = Decimal("1500.00")
        session.commit()

        signature = gateway.sign(order.order_id, "pay_0001")
        result = reconciler.verify_payment(order.order_id, "pay_0001", signature)

        assert result.invoice is None
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert session.query(InvoiceModel).count() == 0
        [failed] = [r for r in captured_logs() if r["message"] == "auto_invoice_failed"]
        assert failed["exc_type"] == "SettlementMismatchError"
        assert failed["exc_collected"] == "1180.00"
        assert failed["exc_invoiced"] == "1770.00"

        plan.price = Decimal("1000.00")
        session.commit()
        retried = reconciler.verify_payment(order.order_id, "pay_0001", signature)
        assert retried.invoice.total_amount == Decimal("1180.00")

    def test_notification_failure_is_logged(self, reconciler, gateway, order, notifier, captured_logs):
        notifier.fail = True
        result = reconciler.verify_payment(
            order.order_id, "pay_0001", gateway.sign(order.order_id, "pay_0001")
        )
        assert result.invoice is not None
        assert "invoice_notification_failed" in _messages(captured_logs, "ERROR")

    def test_log_context_carries_order(self, reconciler, gateway, order, captured_logs):
        reconciler.verify_payment(order.order_id, "pay_0001", gateway.sign(order.order_id, "pay_0001"))
        activated = [r for r in captured_logs() if r["message"] == "subscription_activated"]
        assert activated[0]["order_id"] == order.order_id


def test_unknown_subscription(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.create_order(uuid4())
