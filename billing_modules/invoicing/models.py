"""
Invoicing Domain Models (``billing_modules.invoicing.models``).

Frozen DTOs returned by ``InvoiceService``.  The ``Invoice`` DTO is also
the snapshot a document renderer consumes: every amount on it is already
computed.

Invariants enforced
-------------------
* ``total_amount == subtotal + tax_amount``.
* ``paid_amount <= total_amount``; status is PAID iff they are equal.
* All monetary fields are ``Decimal`` -- NEVER ``float``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CARD = "CARD"
    UPI = "UPI"
    GATEWAY = "GATEWAY"
    OTHER = "OTHER"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class InvoiceLine:
    """One invoice line.  ``amount = subtotal + tax_amount``."""
    id: UUID
    line_number: int
    product_id: UUID | None
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    tax_id: UUID | None
    tax_rate: Decimal | None
    tax_amount: Decimal
    amount: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.amount - self.tax_amount


@dataclass(frozen=True)
class Payment:
    id: UUID
    invoice_id: UUID
    customer_id: UUID
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    payment_date: datetime
    reference: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Invoice:
    id: UUID
    invoice_number: str
    customer_id: UUID
    contact_id: UUID | None
    subscription_id: UUID | None
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    lines: tuple[InvoiceLine, ...] = field(default_factory=tuple)
    notes: str | None = None
    gateway_payment_id: str | None = None

    @property
    def remaining(self) -> Decimal:
        return self.total_amount - self.paid_amount


@dataclass(frozen=True)
class NewInvoiceLine:
    """Input for ``InvoiceService.add_line``."""
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    product_id: UUID | None = None
    tax_id: UUID | None = None
