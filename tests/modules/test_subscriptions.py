"""
Tests for the subscription state machine.

Covers:
- Allowed and rejected transitions, with state left unchanged on rejection
- Exactly one history entry per status change, append-only history
- Line management, header edits and DRAFT deletion
- Close policy, auto-close, renewal and upsell
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from billing_modules.subscriptions import (
    HistoryAction,
    NewSubscriptionLine,
    SubscriptionService,
    SubscriptionStatus,
)
from billing_modules.subscriptions.orm import SubscriptionHistoryModel, SubscriptionModel


@pytest.fixture
def subs(session, clock):
    return SubscriptionService(session, clock)


@pytest.fixture
def draft(subs, session, customer, product, gst, plan):
    sub = subs.create_subscription(
        customer.id,
        plan_id=plan.id,
        lines=[NewSubscriptionLine(product.id, 2, tax_id=gst.id)],
        performed_by="admin",
    )
    session.commit()
    return sub


@pytest.fixture
def activate(subs, session):
    def _activate(subscription_id, order_id="order_0001", payment_id="pay_0001"):
        model = subs.get_model(subscription_id, lock=True)
        subs.mark_payment_initiated(
            model,
            order_id=order_id,
            amount_due=model.recurring_total,
            payment_link_expiry=datetime(2025, 1, 16, tzinfo=timezone.utc),
            discount_id=None,
            discount_amount=Decimal("0"),
            checkout_tax_rate=Decimal("18"),
        )
        subs.mark_payment_verified(model, payment_id)
        session.commit()
        return subs.get(subscription_id)

    return _activate


def status_changes(subs, subscription_id):
    return [
        h for h in subs.history(subscription_id) if h.action == HistoryAction.STATUS_CHANGE.value
    ]


class TestCreateSubscription:
    def test_draft_with_number_and_total(self, draft):
        assert draft.status == SubscriptionStatus.DRAFT
        assert draft.subscription_number == "SUB-000001"
        assert draft.recurring_total == Decimal("2360.00")
        [line] = draft.lines
        assert line.unit_price == Decimal("1000.00")
        assert line.tax_amount == Decimal("360.00")

    def test_creation_history(self, subs, draft):
        [entry] = subs.history(draft.id)
        assert entry.entry_number == 1
        assert entry.description == "Subscription created"
        assert entry.to_status == "DRAFT"
        assert entry.performed_by == "admin"

    def test_expiration_before_start(self, subs, customer, today):
        with pytest.raises(ValidationError):
            subs.create_subscription(
                customer.id, start_date=today, expiration_date=today - timedelta(days=1)
            )

    def test_unknown_customer(self, subs):
        with pytest.raises(NotFoundError):
            subs.create_subscription(uuid4())

    def test_quotation_from_template(self, subs, template, customer):
        sub = subs.create_from_quotation(template.id, customer.id)
        assert sub.status == SubscriptionStatus.QUOTATION
        assert sub.subscription_number.startswith("SUB-")
        assert sub.recurring_total == Decimal("2360.00")


class TestTransitions:
    def test_full_lifecycle(self, subs, draft, activate, session):
        active = activate(draft.id)
        assert active.status == SubscriptionStatus.ACTIVE
        assert active.amount_due == Decimal("0")
        assert active.gateway_payment_id == "pay_0001"

        closed = subs.close(draft.id, performed_by="admin")
        assert closed.status == SubscriptionStatus.CLOSED

        moves = [(h.from_status, h.to_status) for h in status_changes(subs, draft.id)]
        payments = [h for h in subs.history(draft.id) if h.action == HistoryAction.PAYMENT.value]
        assert moves == [(None, "DRAFT"), ("DRAFT", "CONFIRMED"), ("ACTIVE", "CLOSED")]
        assert [(h.from_status, h.to_status) for h in payments] == [("CONFIRMED", "ACTIVE")]
        assert "pay_0001" in payments[0].description

    def test_entry_numbers_are_gapless(self, subs, draft, activate):
        activate(draft.id)
        subs.close(draft.id)
        numbers = [h.entry_number for h in subs.history(draft.id)]
        assert numbers == list(range(1, len(numbers) + 1))

    def test_close_from_draft_rejected_and_state_kept(self, subs, draft):
        with pytest.raises(InvalidStateError) as exc_info:
            subs.close(draft.id)
        assert exc_info.value.allowed == ("ACTIVE",)
        assert subs.get(draft.id).status == SubscriptionStatus.DRAFT
        assert len(subs.history(draft.id)) == 1

    def test_verify_without_order_rejected(self, subs, draft):
        model = subs.get_model(draft.id)
        with pytest.raises(InvalidStateError):
            subs.mark_payment_verified(model, "pay_x")
        assert model.gateway_payment_id is None

    def test_closed_is_terminal(self, subs, draft, activate):
        activate(draft.id)
        subs.close(draft.id)
        model = subs.get_model(draft.id)
        with pytest.raises(InvalidStateError):
            subs.mark_payment_verified(model, "pay_again")

    def test_non_closable_plan(self, subs, session, customer, make_plan, activate):
        locked_plan = make_plan(name="Annual lock-in", closable=False)
        sub = subs.create_subscription(customer.id, plan_id=locked_plan.id)
        activate(sub.id)
        with pytest.raises(PolicyViolationError):
            subs.close(sub.id)
        assert subs.get(sub.id).status == SubscriptionStatus.ACTIVE


class TestHistoryImmutability:
    def test_history_update_rejected(self, subs, draft, session):
        entry = session.query(SubscriptionHistoryModel).filter_by(subscription_id=draft.id).one()
        entry.description = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_history_delete_rejected(self, draft, session):
        entry = session.query(SubscriptionHistoryModel).filter_by(subscription_id=draft.id).one()
        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()


class TestLinesAndEdits:
    def test_add_line_recomputes_total(self, subs, draft, addon):
        sub = subs.add_line(draft.id, NewSubscriptionLine(addon.id, 1))
        assert len(sub.lines) == 2
        assert sub.recurring_total == Decimal("2610.00")
        assert subs.history(draft.id)[-1].description == "Line added: Storage Pack x1"

    def test_delete_line(self, subs, draft):
        sub = subs.delete_line(draft.id, draft.lines[0].id)
        assert sub.lines == ()
        assert sub.recurring_total == Decimal("0.00")
        assert subs.history(draft.id)[-1].description == "Line removed: Pro Seat"

    def test_line_edits_rejected_when_active(self, subs, draft, activate, addon):
        activate(draft.id)
        with pytest.raises(InvalidStateError):
            subs.add_line(draft.id, NewSubscriptionLine(addon.id, 1))

    def test_update_header(self, subs, draft, today):
        sub = subs.update_subscription(
            draft.id, expiration_date=today + timedelta(days=365), payment_terms="Net 15"
        )
        assert sub.expiration_date == today + timedelta(days=365)

    def test_update_unknown_field(self, subs, draft):
        with pytest.raises(ValidationError):
            subs.update_subscription(draft.id, status="ACTIVE")

    def test_delete_draft_removes_history(self, subs, draft, session):
        subs.delete_subscription(draft.id)
        session.commit()
        assert session.get(SubscriptionModel, draft.id) is None
        assert session.query(SubscriptionHistoryModel).filter_by(subscription_id=draft.id).count() == 0

    def test_delete_active_rejected(self, subs, draft, activate):
        activate(draft.id)
        with pytest.raises(InvalidStateError):
            subs.delete_subscription(draft.id)


class TestRenewAndUpsell:
    def test_renew_copies_lines(self, subs, draft, activate):
        parent = activate(draft.id)
        child = subs.renew(parent.id, performed_by="admin")
        assert child.status == SubscriptionStatus.DRAFT
        assert child.parent_subscription_id == parent.id
        assert child.renewal_type == "renewal"
        assert child.recurring_total == parent.recurring_total
        assert subs.history(child.id)[0].description == f"Renewed from {parent.subscription_number}"
        assert subs.history(parent.id)[-1].description == f"Renewal created: {child.subscription_number}"

    def test_renew_closed(self, subs, draft, activate):
        activate(draft.id)
        subs.close(draft.id)
        assert subs.renew(draft.id).status == SubscriptionStatus.DRAFT

    def test_renew_draft_rejected(self, subs, draft):
        with pytest.raises(InvalidStateError):
            subs.renew(draft.id)

    def test_renew_non_renewable_plan(self, subs, customer, make_plan, activate):
        one_off = make_plan(name="One-off", renewable=False)
        sub = subs.create_subscription(customer.id, plan_id=one_off.id)
        activate(sub.id)
        with pytest.raises(PolicyViolationError):
            subs.renew(sub.id)

    def test_upsell_adds_lines(self, subs, draft, activate, addon):
        activate(draft.id)
        child = subs.upsell(draft.id, [NewSubscriptionLine(addon.id, 2)])
        assert child.renewal_type == "upsell"
        assert [l.line_number for l in child.lines] == [1, 2]
        assert child.recurring_total == Decimal("2860.00")

    def test_upsell_needs_lines(self, subs, draft, activate):
        activate(draft.id)
        with pytest.raises(ValidationError):
            subs.upsell(draft.id, [])


class TestCloseExpired:
    def test_closes_only_auto_close_plans_past_expiration(
        self, subs, session, customer, make_plan, activate, today
    ):
        auto = make_plan(name="Trial", auto_close=True)
        manual = make_plan(name="Manual")
        expired = subs.create_subscription(
            customer.id, plan_id=auto.id, start_date=today - timedelta(days=40),
            expiration_date=today - timedelta(days=10),
        )
        kept = subs.create_subscription(
            customer.id, plan_id=manual.id, start_date=today - timedelta(days=40),
            expiration_date=today - timedelta(days=10),
        )
        activate(expired.id, order_id="order_a", payment_id="pay_a")
        activate(kept.id, order_id="order_b", payment_id="pay_b")

        assert subs.close_expired(today) == [expired.id]
        assert subs.get(expired.id).status == SubscriptionStatus.CLOSED
        assert subs.get(kept.id).status == SubscriptionStatus.ACTIVE
