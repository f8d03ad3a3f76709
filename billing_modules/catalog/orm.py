"""
Catalog ORM Models (``billing_modules.catalog.orm``).

Responsibility
--------------
Persistence for the reference data subscriptions and invoices point at:
customers, contacts, products, recurring plans, quotation templates,
taxes and discount codes.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db.base``
and the engine value types the rows convert into.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase


class CustomerModel(TrackedBase):
    """A billable customer.  Portal users are scoped to their own customer id."""

    __tablename__ = "customers"

    __table_args__ = (
        UniqueConstraint("email", name="uq_customers_email"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<CustomerModel {self.email}>"


class ContactModel(TrackedBase):
    __tablename__ = "contacts"

    __table_args__ = (
        Index("idx_contacts_customer_id", "customer_id"),
    )

    customer_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("customers.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ProductModel(TrackedBase):
    """Sellable product.  ``product_type`` drives tax suggestions."""

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_type: Mapped[str] = mapped_column(String(50), default="Service")
    sales_price: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ProductModel {self.name} {self.product_type}>"


class RecurringPlanModel(TrackedBase):
    """
    Recurring plan with its policy flags.

    Guarantees:
        - ``closable`` gates closing a subscription on this plan.
        - ``renewable`` gates renewal.
        - ``auto_close`` subscriptions are closed once past expiration.
        - ``pausable`` is informational; there is no paused state.
    """

    __tablename__ = "recurring_plans"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), default="MONTHLY")
    min_quantity: Mapped[int] = mapped_column(default=1)
    start_date: Mapped[date | None] = mapped_column(nullable=True)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    auto_close: Mapped[bool] = mapped_column(Boolean, default=False)
    closable: Mapped[bool] = mapped_column(Boolean, default=True)
    pausable: Mapped[bool] = mapped_column(Boolean, default=False)
    renewable: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<RecurringPlanModel {self.name} {self.price}/{self.billing_period}>"


class QuotationTemplateModel(TrackedBase):
    __tablename__ = "quotation_templates"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    validity_days: Mapped[int] = mapped_column(default=30)
    plan_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("recurring_plans.id"), nullable=True
    )

    lines: Mapped[list["QuotationTemplateLineModel"]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="QuotationTemplateLineModel.line_number",
    )


class QuotationTemplateLineModel(TrackedBase):
    __tablename__ = "quotation_template_lines"

    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("quotation_templates.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(ForeignKey("products.id"), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(default=1)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_id: Mapped[UUID | None] = mapped_column(ForeignKey("taxes.id"), nullable=True)

    template: Mapped["QuotationTemplateModel"] = relationship(back_populates="lines")


class TaxModel(TrackedBase):
    """Configured tax rate.  ``rate`` is a percentage, e.g. 18 for 18%."""

    __tablename__ = "taxes"

    __table_args__ = (
        Index("idx_taxes_country_active", "country", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    tax_type: Mapped[str] = mapped_column(String(50), default="GST")
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_historical(self):
        from billing_engines.tax import HistoricalTax

        return HistoricalTax(name=self.name, rate=self.rate, tax_type=self.tax_type)

    def __repr__(self) -> str:
        return f"<TaxModel {self.name} {self.rate}%>"


class DiscountModel(TrackedBase):
    """
    Discount code.  ``name`` is the redemption code (matched case-insensitively).

    Guarantees:
        - ``usage_count`` only moves through the compare-and-swap UPDATE in
          ``DiscountService.redeem``.
    """

    __tablename__ = "discounts"

    __table_args__ = (
        UniqueConstraint("name", name="uq_discounts_name"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(20), default="PERCENTAGE")
    value: Mapped[Decimal] = mapped_column(nullable=False)
    min_purchase: Mapped[Decimal | None] = mapped_column(nullable=True)
    min_quantity: Mapped[int | None] = mapped_column(nullable=True)
    start_date: Mapped[date | None] = mapped_column(nullable=True)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    limit_usage: Mapped[int | None] = mapped_column(nullable=True)
    usage_count: Mapped[int] = mapped_column(default=0)

    def to_terms(self):
        """Convert to the pricing engine's ``DiscountTerms``."""
        from billing_engines.discount import DiscountTerms, DiscountType

        return DiscountTerms(
            code=self.name,
            discount_type=DiscountType(self.discount_type),
            value=self.value,
            min_purchase=self.min_purchase,
            min_quantity=self.min_quantity,
            start_date=self.start_date,
            end_date=self.end_date,
            limit_usage=self.limit_usage,
            usage_count=self.usage_count or 0,
            discount_id=self.id,
        )

    def __repr__(self) -> str:
        return f"<DiscountModel {self.name} {self.discount_type} {self.value}>"
