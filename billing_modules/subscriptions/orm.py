"""
Subscription ORM Models (``billing_modules.subscriptions.orm``).

Responsibility
--------------
Persistence for subscriptions, their lines and their append-only history.

Ownership
---------
A subscription owns its lines and history.  History rows are protected by
the listeners in ``billing_kernel.db.immutability``; the ``history``
relationship is read-only and entries are inserted directly.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase


class SubscriptionModel(TrackedBase):
    """
    ORM model for subscriptions.

    Guarantees:
        - subscription_number is unique.
        - gateway_order_id is unique when set (callback lookup key).
        - discount_amount and checkout_tax_rate record how ``amount_due``
          was priced so settlement can issue a matching invoice.
    """

    __tablename__ = "subscriptions"

    __table_args__ = (
        UniqueConstraint("subscription_number", name="uq_subscriptions_number"),
        UniqueConstraint("gateway_order_id", name="uq_subscriptions_gateway_order_id"),
        Index("idx_subscriptions_customer_id", "customer_id"),
        Index("idx_subscriptions_status", "status"),
    )

    subscription_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id"), nullable=False)
    contact_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("contacts.id"), nullable=True
    )
    plan_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("recurring_plans.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")
    recurring_total: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    discount_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("discounts.id"), nullable=True
    )
    discount_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    checkout_tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    amount_due: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    gateway_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_link_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    start_date: Mapped[date] = mapped_column(nullable=False)
    expiration_date: Mapped[date | None] = mapped_column(nullable=True)
    next_invoice_date: Mapped[date | None] = mapped_column(nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(String(255), nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=True
    )
    renewal_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    lines: Mapped[list["SubscriptionLineModel"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SubscriptionLineModel.line_number",
    )

    history: Mapped[list["SubscriptionHistoryModel"]] = relationship(
        viewonly=True,
        order_by="SubscriptionHistoryModel.entry_number",
    )

    def to_dto(self):
        """Convert ORM model to frozen dataclass."""
        from billing_modules.subscriptions.models import Subscription, SubscriptionStatus

        return Subscription(
            id=self.id,
            subscription_number=self.subscription_number,
            customer_id=self.customer_id,
            contact_id=self.contact_id,
            plan_id=self.plan_id,
            status=SubscriptionStatus(self.status),
            recurring_total=self.recurring_total,
            discount_id=self.discount_id,
            discount_amount=self.discount_amount,
            amount_due=self.amount_due,
            gateway_order_id=self.gateway_order_id,
            gateway_payment_id=self.gateway_payment_id,
            payment_link_expiry=self.payment_link_expiry,
            start_date=self.start_date,
            expiration_date=self.expiration_date,
            next_invoice_date=self.next_invoice_date,
            parent_subscription_id=self.parent_subscription_id,
            renewal_type=self.renewal_type,
            lines=tuple(line.to_dto() for line in self.lines),
        )

    def __repr__(self) -> str:
        return f"<SubscriptionModel {self.subscription_number} status={self.status}>"


class SubscriptionLineModel(TrackedBase):
    __tablename__ = "subscription_lines"

    __table_args__ = (
        Index("idx_subscription_lines_subscription_id", "subscription_id"),
    )

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("products.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    tax_id: Mapped[UUID | None] = mapped_column(ForeignKey("taxes.id"), nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    subscription: Mapped["SubscriptionModel"] = relationship(back_populates="lines")

    def to_dto(self):
        from billing_modules.subscriptions.models import SubscriptionLine

        return SubscriptionLine(
            id=self.id,
            line_number=self.line_number,
            product_id=self.product_id,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount=self.discount,
            tax_id=self.tax_id,
            tax_amount=self.tax_amount,
            amount=self.amount,
        )


class SubscriptionHistoryModel(TrackedBase):
    """
    Append-only audit entry.

    Guarantees:
        - (subscription_id, entry_number) is unique.
        - UPDATE and DELETE through the ORM raise ImmutabilityViolationError.
    """

    __tablename__ = "subscription_history"

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "entry_number", name="uq_subscription_history_entry"
        ),
    )

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False
    )
    entry_number: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self):
        from billing_modules.subscriptions.models import HistoryEntry

        return HistoryEntry(
            id=self.id,
            entry_number=self.entry_number,
            action=self.action,
            from_status=self.from_status,
            to_status=self.to_status,
            description=self.description,
            performed_by=self.performed_by,
            timestamp=self.timestamp,
        )
