"""
billing_services.reconciliation -- two-phase gateway payment reconciliation.

Responsibility:
    Phase one (``create_order``) prices a subscription, redeems its discount,
    opens a gateway order and moves the subscription to CONFIRMED.  Phase two
    (``verify_payment``) authenticates the gateway callback, activates the
    subscription and issues the PAID invoice for the collected amount.

Architecture position:
    Services -- owns the transaction boundaries.  Module services below it
    only flush; this module commits and rolls back.

Invariants enforced:
    - No gateway order is created for a subscription that cannot be
      confirmed, or for a total <= 0.
    - Discount redemption, the gateway order and the CONFIRMED transition
      commit together or not at all.
    - A callback is trusted only after a constant-time HMAC comparison.
    - Activation commits before invoicing; an invoicing failure leaves the
      subscription ACTIVE and is logged as ``auto_invoice_failed`` for
      replay.
    - One invoice per gateway payment id; a replayed callback returns the
      invoice that already exists.

Failure modes:
    - SignatureMismatchError: logged at CRITICAL, nothing written.
    - NotFoundError: no subscription carries the order id, logged at ERROR.
    - InvalidStateError: the subscription cannot take the transition.
    - GatewayError / GatewayUnavailableError: the order was not created;
      the transaction is rolled back.

Usage:
    reconciler = PaymentReconciliationService(session, gateway, settings)
    order = reconciler.create_order(subscription_id, discount_code="WELCOME10")
    ...
    result = reconciler.verify_payment(order.order_id, payment_id, signature)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_config.schema import BillingSettings
from billing_engines.checkout import CheckoutQuote, PricedLine, price_checkout
from billing_engines.discount import DiscountQuote
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import (
    GatewayError,
    NoPayableAmountError,
    NotFoundError,
    SettlementMismatchError,
    SignatureMismatchError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.catalog.models import period_end
from billing_modules.catalog.orm import CustomerModel, DiscountModel
from billing_modules.discounts.service import DiscountService
from billing_modules.invoicing.models import Invoice
from billing_modules.invoicing.service import InvoiceService
from billing_modules.subscriptions.models import Subscription, SubscriptionStatus
from billing_modules.subscriptions.orm import SubscriptionModel
from billing_modules.subscriptions.service import SubscriptionService
from billing_modules.subscriptions.workflows import SUBSCRIPTION_WORKFLOW
from billing_services.gateway import PaymentGateway
from billing_services.notifications import InvoiceNotifier, LoggingInvoiceNotifier

logger = get_logger("services.reconciliation")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class OrderResult:
    """What the client needs to open the gateway checkout."""

    subscription_id: UUID
    order_id: str
    amount_due: Decimal
    amount_minor_units: int
    currency: str
    key_id: str
    discount_amount: Decimal
    expires_at: datetime


@dataclass(frozen=True)
class VerificationResult:
    subscription: Subscription
    invoice: Invoice | None
    replayed: bool = False


class PaymentReconciliationService:
    """
    Order creation and callback settlement.

    All module services share ``session``; they are constructed here and
    nowhere else.
    """

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        settings: BillingSettings,
        clock: Clock | None = None,
        notifier: InvoiceNotifier | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self._gateway = gateway
        self._settings = settings
        self._notifier = notifier or LoggingInvoiceNotifier()
        self._subscriptions = SubscriptionService(session, self.clock)
        self._discounts = DiscountService(session, self.clock)
        self._invoices = InvoiceService(session, self.clock, due_days=settings.invoice_due_days)

    # =========================================================================
    # Pricing
    # =========================================================================

    def _priced_lines(self, subscription: SubscriptionModel) -> list[PricedLine]:
        if subscription.lines:
            return [
                PricedLine(
                    product_id=line.product_id,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount=line.discount,
                )
                for line in subscription.lines
            ]
        plan = self._subscriptions.plan_for(subscription)
        if plan is None:
            return []
        return [PricedLine(product_id=None, description=plan.name, quantity=1, unit_price=plan.price)]

    def quote(self, subscription_id: UUID, discount_code: str | None = None) -> CheckoutQuote:
        """Price a subscription for checkout without side effects."""
        subscription = self._subscriptions.get_model(subscription_id)
        return self._quote(subscription, discount_code)

    def _quote(self, subscription: SubscriptionModel, discount_code: str | None) -> CheckoutQuote:
        terms = self._discounts.terms_for(discount_code) if discount_code else None
        quote = price_checkout(
            self._priced_lines(subscription),
            tax_rate=self._settings.checkout_tax_rate,
            discount_terms=terms,
            reference_date=self.clock.today(),
            currency=self._settings.currency,
        )
        if quote.totals.total <= _ZERO:
            raise NoPayableAmountError(str(subscription.id), quote.totals.total)
        return quote

    # =========================================================================
    # Phase one: order creation
    # =========================================================================

    def create_order(
        self,
        subscription_id: UUID,
        discount_code: str | None = None,
        performed_by: str | None = None,
    ) -> OrderResult:
        """
        Open a gateway order for a DRAFT or QUOTATION subscription.

        Raises:
            NotFoundError: unknown subscription or discount code.
            InvalidStateError: the subscription is not DRAFT or QUOTATION.
            DiscountRejectedError: the code does not apply or its usage
                limit was reached.
            NoPayableAmountError: the priced total is not positive.
            GatewayError: the gateway did not create the order.
        """
        with LogContext.bind(subscription_id=str(subscription_id), actor_id=performed_by):
            try:
                subscription = self._subscriptions.get_model(subscription_id, lock=True)
                result = self._open_order(
                    subscription, discount_code, performed_by, "Payment initiated via gateway"
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return result

    def subscribe_to_plan(
        self,
        customer_id: UUID,
        plan_id: UUID,
        discount_code: str | None = None,
        performed_by: str | None = None,
    ) -> OrderResult:
        """
        Portal checkout: create a DRAFT subscription on ``plan_id`` and open
        its gateway order in one transaction.

        The expiration date is one billing period after today.
        """
        with LogContext.bind(actor_id=performed_by):
            try:
                plan = self._subscriptions.get_plan(plan_id)
                today = self.clock.today()
                created = self._subscriptions.create_subscription(
                    customer_id,
                    plan_id=plan.id,
                    start_date=today,
                    expiration_date=period_end(today, plan.billing_period),
                    performed_by=performed_by,
                    description="Subscription created via portal",
                )
                subscription = self._subscriptions.get_model(created.id, lock=True)
                result = self._open_order(
                    subscription, discount_code, performed_by, "Payment initiated via gateway"
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        logger.info(
            "portal_subscription_created",
            extra={"subscription_id": str(result.subscription_id), "plan_id": str(plan_id)},
        )
        return result

    def _open_order(
        self,
        subscription: SubscriptionModel,
        discount_code: str | None,
        performed_by: str | None,
        description: str,
    ) -> OrderResult:
        SUBSCRIPTION_WORKFLOW.find_transition(
            subscription.status, "initiate_payment", str(subscription.id)
        )
        quote = self._quote(subscription, discount_code)
        if quote.discount is not None:
            self._discounts.redeem(quote.discount.discount_id)

        order = self._gateway.create_order(
            quote.amount_minor_units,
            quote.currency,
            receipt=subscription.subscription_number,
            notes={"subscription_id": str(subscription.id)},
        )
        if order.amount != Money.of(quote.totals.total, quote.currency):
            raise GatewayError(
                "orders",
                f"order {order.order_id} was created for {order.amount}, "
                f"expected {quote.totals.total} {quote.currency}",
            )
        expires_at = self.clock.now() + timedelta(hours=self._settings.payment_link_ttl_hours)
        with LogContext.bind(order_id=order.order_id):
            self._subscriptions.mark_payment_initiated(
                subscription,
                order_id=order.order_id,
                amount_due=quote.totals.total,
                payment_link_expiry=expires_at,
                discount_id=quote.discount.discount_id if quote.discount else None,
                discount_amount=quote.discount_amount,
                checkout_tax_rate=quote.tax_rate,
                performed_by=performed_by,
                description=description,
            )
            logger.info(
                "payment_order_created",
                extra={
                    "subscription_id": str(subscription.id),
                    "order_id": order.order_id,
                    "amount_due": quote.totals.total,
                    "discount_amount": quote.discount_amount,
                },
            )
        return OrderResult(
            subscription_id=subscription.id,
            order_id=order.order_id,
            amount_due=quote.totals.total,
            amount_minor_units=quote.amount_minor_units,
            currency=quote.currency,
            key_id=self._gateway.key_id,
            discount_amount=quote.discount_amount,
            expires_at=expires_at,
        )

    # =========================================================================
    # Phase two: callback verification and settlement
    # =========================================================================

    def verify_payment(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        performed_by: str | None = None,
    ) -> VerificationResult:
        """
        Settle a gateway payment callback.

        Raises:
            SignatureMismatchError: the signature does not authenticate
                ``order_id|payment_id``.
            NotFoundError: no subscription carries ``order_id``.
            InvalidStateError: the subscription is neither CONFIRMED nor
                already settled by this payment.
        """
        with LogContext.bind(order_id=order_id, actor_id=performed_by):
            if not self._gateway.verify_signature(order_id, payment_id, signature):
                logger.critical(
                    "payment_signature_mismatch",
                    extra={"order_id": order_id, "payment_id": payment_id},
                )
                raise SignatureMismatchError(order_id, payment_id)

            try:
                subscription = self._subscriptions.get_by_order(order_id, lock=True)
            except NotFoundError:
                self.session.rollback()
                logger.error(
                    "payment_order_not_found",
                    extra={"order_id": order_id, "payment_id": payment_id},
                )
                raise

            replayed = (
                subscription.status == SubscriptionStatus.ACTIVE.value
                and subscription.gateway_payment_id == payment_id
            )
            if replayed:
                logger.info(
                    "payment_callback_replayed",
                    extra={"subscription_id": str(subscription.id), "payment_id": payment_id},
                )
                self.session.commit()
            else:
                try:
                    self._subscriptions.mark_payment_verified(
                        subscription, payment_id, performed_by=performed_by
                    )
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    raise
                logger.info(
                    "subscription_activated",
                    extra={"subscription_id": str(subscription.id), "payment_id": payment_id},
                )

            invoice = self._settle(subscription.id, order_id, payment_id)
            activated = self._subscriptions.get(subscription.id)
        return VerificationResult(subscription=activated, invoice=invoice, replayed=replayed)

    def _settle(self, subscription_id: UUID, order_id: str, payment_id: str) -> Invoice | None:
        """Issue the PAID invoice for ``payment_id`` unless it already exists."""
        existing = self._invoices.find_by_gateway_payment(payment_id)
        if existing is not None:
            return existing

        try:
            subscription = self._subscriptions.get_model(subscription_id, lock=True)
            quote = self._settled_quote(subscription)
            if quote.totals.total != subscription.amount_due:
                raise SettlementMismatchError(
                    str(subscription.id), subscription.amount_due, quote.totals.total
                )
            invoice = self._invoices.create_paid_invoice(
                customer_id=subscription.customer_id,
                contact_id=subscription.contact_id,
                subscription_id=subscription.id,
                lines=quote.lines,
                gateway_payment_id=payment_id,
                order_id=order_id,
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self._invoices.find_by_gateway_payment(payment_id)
            if existing is not None:
                return existing
            self._dead_letter(subscription_id, order_id, payment_id)
            return None
        except Exception:
            self.session.rollback()
            self._dead_letter(subscription_id, order_id, payment_id)
            return None

        self._notify(invoice)
        return invoice

    def _settled_quote(self, subscription: SubscriptionModel) -> CheckoutQuote:
        granted = None
        if subscription.discount_id is not None and subscription.discount_amount:
            discount = self.session.get(DiscountModel, subscription.discount_id)
            granted = DiscountQuote(
                code=discount.name if discount else "",
                amount=subscription.discount_amount,
                discount_id=subscription.discount_id,
            )
        tax_rate = subscription.checkout_tax_rate
        if tax_rate is None:
            tax_rate = self._settings.checkout_tax_rate
        return price_checkout(
            self._priced_lines(subscription),
            tax_rate=tax_rate,
            currency=self._settings.currency,
            granted_discount=granted,
        )

    def _dead_letter(self, subscription_id: UUID, order_id: str, payment_id: str) -> None:
        logger.exception(
            "auto_invoice_failed",
            extra={
                "subscription_id": str(subscription_id),
                "order_id": order_id,
                "payment_id": payment_id,
                "replay": "resend the payment callback to retry invoicing",
            },
        )

    def _notify(self, invoice: Invoice) -> None:
        customer = self.session.get(CustomerModel, invoice.customer_id)
        if customer is None or not customer.email:
            return
        try:
            self._notifier.invoice_paid(invoice, customer.email, customer.name)
        except Exception:
            logger.exception(
                "invoice_notification_failed",
                extra={"invoice_id": str(invoice.id), "recipient": customer.email},
            )
