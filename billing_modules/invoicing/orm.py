"""
Invoicing ORM Models (``billing_modules.invoicing.orm``).

Responsibility
--------------
Persistence for invoices, their lines and the payments recorded against
them.  Maps to the frozen DTOs in ``models.py``.

Ownership
---------
An invoice owns its lines (cascade).  Payments reference an invoice but
keep their own lifecycle.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase


class InvoiceModel(TrackedBase):
    """
    ORM model for invoices.

    Guarantees:
        - invoice_number is unique (uq_invoices_invoice_number).
        - gateway_payment_id is unique when set; it is the idempotency key
          of invoices issued by payment settlement.
        - totals are always a full recomputation of ``lines``.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        UniqueConstraint("gateway_payment_id", name="uq_invoices_gateway_payment_id"),
        Index("idx_invoices_customer_id", "customer_id"),
        Index("idx_invoices_subscription_id", "subscription_id"),
        Index("idx_invoices_status", "status"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False)
    contact_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("contacts.id"), nullable=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lines: Mapped[list["InvoiceLineModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineModel.line_number",
    )

    payments: Mapped[list["PaymentModel"]] = relationship(
        back_populates="invoice",
        order_by="PaymentModel.payment_date",
    )

    def to_dto(self):
        """Convert ORM model to frozen dataclass."""
        from billing_modules.invoicing.models import Invoice, InvoiceStatus

        return Invoice(
            id=self.id,
            invoice_number=self.invoice_number,
            customer_id=self.customer_id,
            contact_id=self.contact_id,
            subscription_id=self.subscription_id,
            status=InvoiceStatus(self.status),
            invoice_date=self.invoice_date,
            due_date=self.due_date,
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            total_amount=self.total_amount,
            paid_amount=self.paid_amount,
            lines=tuple(line.to_dto() for line in self.lines),
            notes=self.notes,
            gateway_payment_id=self.gateway_payment_id,
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel {self.invoice_number} status={self.status} "
            f"total={self.total_amount} paid={self.paid_amount}>"
        )


class InvoiceLineModel(TrackedBase):
    """
    ORM model for invoice lines.

    ``tax_rate`` is the rate snapshot taken when the line was written; a
    later edit of the referenced Tax does not change this line.
    """

    __tablename__ = "invoice_lines"

    __table_args__ = (
        Index("idx_invoice_lines_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("products.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    tax_id: Mapped[UUID | None] = mapped_column(ForeignKey("taxes.id"), nullable=True)
    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="lines")

    def to_dto(self):
        from billing_modules.invoicing.models import InvoiceLine

        return InvoiceLine(
            id=self.id,
            line_number=self.line_number,
            product_id=self.product_id,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount=self.discount,
            tax_id=self.tax_id,
            tax_rate=self.tax_rate,
            tax_amount=self.tax_amount,
            amount=self.amount,
        )


class PaymentModel(TrackedBase):
    """ORM model for payments recorded against an invoice."""

    __tablename__ = "payments"

    __table_args__ = (
        Index("idx_payments_invoice_id", "invoice_id"),
        Index("idx_payments_customer_id", "customer_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(20), default="OTHER")
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED")
    payment_date: Mapped[datetime] = mapped_column(nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="payments")

    def to_dto(self):
        from billing_modules.invoicing.models import Payment, PaymentMethod, PaymentStatus

        return Payment(
            id=self.id,
            invoice_id=self.invoice_id,
            customer_id=self.customer_id,
            amount=self.amount,
            method=PaymentMethod(self.method),
            status=PaymentStatus(self.status),
            payment_date=self.payment_date,
            reference=self.reference,
            notes=self.notes,
        )
