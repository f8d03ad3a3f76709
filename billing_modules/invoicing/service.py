"""
Invoice Service - derives invoices and keeps their totals honest.

Every mutation ends in ``_recalculate``, a full recomputation of line and
document totals through ``billing_engines.ledger``; running totals are never
patched incrementally.  Status gating goes through ``INVOICE_WORKFLOW``.

Concurrency:
    - The invoice row is locked (``SELECT ... FOR UPDATE``) before a line
      mutation or a payment so totals are never computed from a stale line
      list.
    - Payment application is a compare-and-swap UPDATE on the observed
      ``paid_amount`` and CONFIRMED status.  If another payment landed
      first, the invoice is reloaded and the balance check runs again, so
      two concurrent partial payments can never jointly overpay.

Flush-only: the caller owns the transaction.

Usage:
    service = InvoiceService(session, clock)
    invoice = service.generate_from_subscription(subscription_id)
    invoice = service.confirm(invoice.id)
    payment = service.record_payment(invoice.id, Decimal("1430.00"), PaymentMethod.UPI)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update

from billing_engines.checkout import CheckoutLine
from billing_engines.ledger import LineTotals, aggregate_totals, compute_line, round_money
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    InvalidStateError,
    NotFoundError,
    OverpaymentError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_modules.catalog.orm import (
    ProductModel,
    QuotationTemplateModel,
    RecurringPlanModel,
    TaxModel,
)
from billing_modules.invoicing.models import (
    Invoice,
    InvoiceStatus,
    NewInvoiceLine,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from billing_modules.invoicing.orm import InvoiceLineModel, InvoiceModel, PaymentModel
from billing_modules.invoicing.workflows import INVOICE_WORKFLOW, settle
from billing_modules.subscriptions.orm import SubscriptionModel

logger = get_logger("modules.invoicing.service")

DEFAULT_DUE_DAYS = 30
_PAYMENT_CAS_ATTEMPTS = 3
_UNSET = object()


class InvoiceService(BaseService):
    """
    Invoice generation, line maintenance, status changes and payments.

    Engine composition:
    - ledger.compute_line / aggregate_totals: every amount on an invoice
    - invoicing.workflows.settle: payment balance check
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        due_days: int = DEFAULT_DUE_DAYS,
    ):
        super().__init__(session, clock)
        self._due_days = due_days
        self._sequences = SequenceService(session)

    # =========================================================================
    # Lookup
    # =========================================================================

    def _get(self, invoice_id: UUID, lock: bool = False) -> InvoiceModel:
        return self._load(InvoiceModel, invoice_id, "Invoice", lock=lock)

    def get(self, invoice_id: UUID) -> Invoice:
        return self._get(invoice_id).to_dto()

    def payments_for(self, invoice_id: UUID) -> list[Payment]:
        rows = self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.invoice_id == invoice_id)
            .order_by(PaymentModel.payment_date, PaymentModel.created_at)
        ).scalars().all()
        return [p.to_dto() for p in rows]

    def find_by_gateway_payment(self, gateway_payment_id: str) -> Invoice | None:
        invoice = self.session.execute(
            select(InvoiceModel).where(
                InvoiceModel.gateway_payment_id == gateway_payment_id
            )
        ).scalar_one_or_none()
        return invoice.to_dto() if invoice else None

    def _tax_rate(self, tax_id: UUID | None) -> Decimal | None:
        if tax_id is None:
            return None
        return self._load(TaxModel, tax_id, "Tax").rate

    def _require(self, invoice: InvoiceModel, action: str):
        return INVOICE_WORKFLOW.find_transition(invoice.status, action, str(invoice.id))

    # =========================================================================
    # Totals
    # =========================================================================

    def _build_line(
        self,
        line_number: int,
        description: str,
        quantity: int,
        unit_price: Decimal,
        discount: Decimal,
        product_id: UUID | None,
        tax_id: UUID | None,
        tax_rate: Decimal | None,
    ) -> InvoiceLineModel:
        totals = compute_line(quantity, unit_price, discount, tax_rate)
        return InvoiceLineModel(
            line_number=line_number,
            product_id=product_id,
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            discount=discount,
            tax_id=tax_id,
            tax_rate=tax_rate,
            tax_amount=totals.tax_amount,
            amount=totals.amount,
        )

    def _recalculate(self, invoice: InvoiceModel) -> None:
        line_totals: list[LineTotals] = []
        for line in invoice.lines:
            totals = compute_line(line.quantity, line.unit_price, line.discount, line.tax_rate)
            line.tax_amount = totals.tax_amount
            line.amount = totals.amount
            line_totals.append(totals)
        totals = aggregate_totals(line_totals)
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.tax_amount
        invoice.total_amount = totals.total
        self.session.flush()

    def recalculate_totals(self, invoice_id: UUID) -> Invoice:
        """
        Recompute every line and the document totals from the stored lines.

        Idempotent: two calls in a row give the same result.
        """
        invoice = self._get(invoice_id, lock=True)
        self._recalculate(invoice)
        return invoice.to_dto()

    # =========================================================================
    # Generation
    # =========================================================================

    def _new_invoice(
        self,
        customer_id: UUID,
        contact_id: UUID | None,
        subscription_id: UUID | None,
        issue_date: date,
        status: InvoiceStatus = InvoiceStatus.DRAFT,
    ) -> InvoiceModel:
        invoice = InvoiceModel(
            invoice_number=self._sequences.next_number(SequenceService.INVOICE, "INV"),
            customer_id=customer_id,
            contact_id=contact_id,
            subscription_id=subscription_id,
            status=status.value,
            invoice_date=issue_date,
            due_date=issue_date + timedelta(days=self._due_days),
            paid_amount=Decimal("0"),
        )
        self.session.add(invoice)
        return invoice

    def generate_from_subscription(
        self,
        subscription_id: UUID,
        issue_date: date | None = None,
    ) -> Invoice:
        """
        Snapshot a subscription into a DRAFT invoice.

        Each subscription line is copied with the current rate of its tax
        reference frozen onto the invoice line.  A subscription without
        lines is invoiced at its plan price.  The subscription's
        ``next_invoice_date`` advances by the due period.

        Raises:
            NotFoundError: unknown subscription.
            ValidationError: nothing to invoice (no lines and no plan).
        """
        subscription = self._load(SubscriptionModel, subscription_id, "Subscription")
        issue_date = issue_date or self.clock.today()

        with LogContext.bind(subscription_id=str(subscription_id)):
            invoice = self._new_invoice(
                subscription.customer_id,
                subscription.contact_id,
                subscription.id,
                issue_date,
            )
            if subscription.lines:
                for number, line in enumerate(subscription.lines, start=1):
                    invoice.lines.append(
                        self._build_line(
                            number,
                            line.description,
                            line.quantity,
                            line.unit_price,
                            line.discount,
                            line.product_id,
                            line.tax_id,
                            self._tax_rate(line.tax_id),
                        )
                    )
            elif subscription.plan_id is not None:
                plan = self.session.get(RecurringPlanModel, subscription.plan_id)
                invoice.lines.append(
                    self._build_line(1, plan.name, 1, plan.price, Decimal("0"), None, None, None)
                )
            else:
                raise ValidationError("lines", "subscription has no lines or plan to invoice")

            self._recalculate(invoice)

            base = subscription.next_invoice_date or issue_date
            subscription.next_invoice_date = base + timedelta(days=self._due_days)
            self.session.flush()

            logger.info(
                "invoice_generated",
                extra={
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "total_amount": invoice.total_amount,
                    "line_count": len(invoice.lines),
                },
            )
            return invoice.to_dto()

    def generate_from_template(
        self,
        template_id: UUID,
        customer_id: UUID,
        contact_id: UUID | None = None,
        issue_date: date | None = None,
    ) -> Invoice:
        """DRAFT invoice from a quotation template's lines (or its plan price)."""
        template = self._load(QuotationTemplateModel, template_id, "QuotationTemplate")
        issue_date = issue_date or self.clock.today()

        invoice = self._new_invoice(customer_id, contact_id, None, issue_date)
        if template.lines:
            for number, line in enumerate(template.lines, start=1):
                description = line.description
                if not description:
                    product = self.session.get(ProductModel, line.product_id)
                    description = product.name if product else "Item"
                invoice.lines.append(
                    self._build_line(
                        number,
                        description,
                        line.quantity,
                        line.unit_price,
                        Decimal("0"),
                        line.product_id,
                        line.tax_id,
                        self._tax_rate(line.tax_id),
                    )
                )
        elif template.plan_id is not None:
            plan = self.session.get(RecurringPlanModel, template.plan_id)
            invoice.lines.append(
                self._build_line(1, plan.name, 1, plan.price, Decimal("0"), None, None, None)
            )
        else:
            raise ValidationError("lines", "template has no lines or plan to invoice")

        self._recalculate(invoice)
        logger.info(
            "invoice_generated_from_template",
            extra={"invoice_id": str(invoice.id), "template_id": str(template_id)},
        )
        return invoice.to_dto()

    def create_paid_invoice(
        self,
        customer_id: UUID,
        contact_id: UUID | None,
        subscription_id: UUID,
        lines: Sequence[CheckoutLine],
        gateway_payment_id: str,
        order_id: str,
        paid_at: datetime | None = None,
    ) -> Invoice:
        """
        Issue the invoice for a settled gateway payment.

        The invoice is born PAID with ``paid_amount == total_amount`` and a
        COMPLETED GATEWAY payment.  ``gateway_payment_id`` is unique, so a
        second settlement of the same payment fails at flush.
        """
        paid_at = paid_at or self.clock.now()
        invoice = self._new_invoice(
            customer_id,
            contact_id,
            subscription_id,
            paid_at.date(),
            status=InvoiceStatus.PAID,
        )
        invoice.gateway_payment_id = gateway_payment_id
        for number, line in enumerate(lines, start=1):
            invoice.lines.append(
                self._build_line(
                    number,
                    line.description,
                    line.quantity,
                    line.unit_price,
                    line.discount,
                    line.product_id,
                    None,
                    line.tax_rate,
                )
            )
        self._recalculate(invoice)
        invoice.paid_amount = invoice.total_amount

        self.session.add(
            PaymentModel(
                invoice_id=invoice.id,
                customer_id=customer_id,
                amount=invoice.total_amount,
                method=PaymentMethod.GATEWAY.value,
                status=PaymentStatus.COMPLETED.value,
                payment_date=paid_at,
                reference=gateway_payment_id,
                notes=f"Gateway order: {order_id}",
            )
        )
        self.session.flush()
        logger.info(
            "settlement_invoice_issued",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "gateway_payment_id": gateway_payment_id,
                "total_amount": invoice.total_amount,
            },
        )
        return invoice.to_dto()

    # =========================================================================
    # DRAFT edits
    # =========================================================================

    def add_line(self, invoice_id: UUID, line: NewInvoiceLine) -> Invoice:
        invoice = self._get(invoice_id, lock=True)
        self._require(invoice, "add_line")
        next_number = max((l.line_number for l in invoice.lines), default=0) + 1
        invoice.lines.append(
            self._build_line(
                next_number,
                line.description,
                line.quantity,
                line.unit_price,
                line.discount,
                line.product_id,
                line.tax_id,
                self._tax_rate(line.tax_id),
            )
        )
        self._recalculate(invoice)
        logger.info(
            "invoice_line_added",
            extra={"invoice_id": str(invoice_id), "total_amount": invoice.total_amount},
        )
        return invoice.to_dto()

    def delete_line(self, invoice_id: UUID, line_id: UUID) -> Invoice:
        invoice = self._get(invoice_id, lock=True)
        self._require(invoice, "delete_line")
        line = next((l for l in invoice.lines if l.id == line_id), None)
        if line is None:
            raise NotFoundError("InvoiceLine", str(line_id))
        invoice.lines.remove(line)
        self._recalculate(invoice)
        logger.info(
            "invoice_line_deleted",
            extra={"invoice_id": str(invoice_id), "total_amount": invoice.total_amount},
        )
        return invoice.to_dto()

    def update_details(
        self,
        invoice_id: UUID,
        notes=_UNSET,
        due_date: date | None = None,
    ) -> Invoice:
        """Edit notes and/or due date of a DRAFT invoice."""
        invoice = self._get(invoice_id, lock=True)
        self._require(invoice, "update_details")
        if due_date is not None:
            if due_date < invoice.invoice_date:
                raise ValidationError("due_date", "must not precede the invoice date")
            invoice.due_date = due_date
        if notes is not _UNSET:
            invoice.notes = notes
        self.session.flush()
        return invoice.to_dto()

    # =========================================================================
    # Status
    # =========================================================================

    def _transition(self, invoice_id: UUID, action: str) -> Invoice:
        invoice = self._get(invoice_id, lock=True)
        transition = self._require(invoice, action)
        from_status = invoice.status
        invoice.status = transition.to_state
        self.session.flush()
        logger.info(
            "invoice_status_changed",
            extra={
                "invoice_id": str(invoice_id),
                "action": action,
                "from_status": from_status,
                "to_status": invoice.status,
            },
        )
        return invoice.to_dto()

    def confirm(self, invoice_id: UUID) -> Invoice:
        """DRAFT -> CONFIRMED."""
        return self._transition(invoice_id, "confirm")

    def cancel(self, invoice_id: UUID) -> Invoice:
        """DRAFT or CONFIRMED -> CANCELLED."""
        return self._transition(invoice_id, "cancel")

    # =========================================================================
    # Payments
    # =========================================================================

    def apply_payment(self, invoice_id: UUID, amount: Decimal) -> Invoice:
        """
        Add ``amount`` to ``paid_amount``; the invoice becomes PAID exactly
        when the balance reaches zero.

        Raises:
            ValidationError: amount is not positive or has more than two
                decimal places.
            OverpaymentError: amount exceeds the remaining balance, which is
                zero once the invoice is PAID.
            InvalidStateError: invoice is DRAFT or CANCELLED.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("amount", f"must be positive, got {amount}")
        if amount != round_money(amount):
            raise ValidationError("amount", f"must be a whole number of cents, got {amount}")

        invoice = self._get(invoice_id, lock=True)
        for _ in range(_PAYMENT_CAS_ATTEMPTS):
            if invoice.status == InvoiceStatus.PAID.value:
                raise OverpaymentError(
                    invoice_id=str(invoice.id), amount=amount, remaining=Decimal("0.00")
                )
            self._require(invoice, "apply_payment")
            observed_paid = invoice.paid_amount
            new_paid, new_status = settle(
                str(invoice.id), invoice.total_amount, observed_paid, amount
            )
            result = self.session.execute(
                update(InvoiceModel)
                .where(
                    InvoiceModel.id == invoice.id,
                    InvoiceModel.status == InvoiceStatus.CONFIRMED.value,
                    InvoiceModel.paid_amount == observed_paid,
                )
                .values(paid_amount=new_paid, status=new_status.value)
                .execution_options(synchronize_session=False)
            )
            invoice = self._get(invoice_id, lock=True)
            if result.rowcount == 1:
                logger.info(
                    "invoice_payment_applied",
                    extra={
                        "invoice_id": str(invoice_id),
                        "amount": amount,
                        "paid_amount": invoice.paid_amount,
                        "status": invoice.status,
                    },
                )
                return invoice.to_dto()
            logger.warning(
                "invoice_payment_cas_retry",
                extra={"invoice_id": str(invoice_id), "observed_paid": observed_paid},
            )

        raise InvalidStateError(
            entity_type="Invoice",
            entity_id=str(invoice_id),
            current_status=invoice.status,
            action="apply_payment",
            allowed=INVOICE_WORKFLOW.sources_for("apply_payment"),
        )

    def record_payment(
        self,
        invoice_id: UUID,
        amount: Decimal,
        method: PaymentMethod,
        payment_date: datetime | None = None,
        reference: str | None = None,
        notes: str | None = None,
    ) -> Payment:
        """Apply a payment and record it as COMPLETED."""
        invoice = self.apply_payment(invoice_id, amount)
        payment = PaymentModel(
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            amount=amount,
            method=PaymentMethod(method).value,
            status=PaymentStatus.COMPLETED.value,
            payment_date=payment_date or self.clock.now(),
            reference=reference,
            notes=notes,
        )
        self.session.add(payment)
        self.session.flush()
        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice_id),
                "payment_id": str(payment.id),
                "amount": amount,
                "method": payment.method,
            },
        )
        return payment.to_dto()
