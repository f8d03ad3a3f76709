"""
Subscription Domain Models (``billing_modules.subscriptions.models``).

Frozen DTOs returned by ``SubscriptionService`` and the line input type.

Invariants enforced
-------------------
* ``amount_due`` is zero once status is ACTIVE or CLOSED.
* Line ``amount = quantity * unit_price - discount + tax_amount``.
* History entries are append-only; ``entry_number`` orders them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class SubscriptionStatus(str, Enum):
    DRAFT = "DRAFT"
    QUOTATION = "QUOTATION"
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class HistoryAction(str, Enum):
    STATUS_CHANGE = "status_change"
    PAYMENT = "payment"
    LINE_CHANGE = "line_change"
    RENEWAL = "renewal"
    UPSELL = "upsell"


@dataclass(frozen=True)
class SubscriptionLine:
    id: UUID
    line_number: int
    product_id: UUID | None
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    tax_id: UUID | None
    tax_amount: Decimal
    amount: Decimal


@dataclass(frozen=True)
class HistoryEntry:
    id: UUID
    entry_number: int
    action: str
    from_status: str | None
    to_status: str | None
    description: str
    performed_by: str | None
    timestamp: datetime


@dataclass(frozen=True)
class Subscription:
    id: UUID
    subscription_number: str
    customer_id: UUID
    contact_id: UUID | None
    plan_id: UUID | None
    status: SubscriptionStatus
    recurring_total: Decimal
    discount_id: UUID | None
    discount_amount: Decimal
    amount_due: Decimal
    gateway_order_id: str | None
    gateway_payment_id: str | None
    payment_link_expiry: datetime | None
    start_date: date
    expiration_date: date | None
    next_invoice_date: date | None
    parent_subscription_id: UUID | None = None
    renewal_type: str | None = None
    lines: tuple[SubscriptionLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NewSubscriptionLine:
    """Line input.  ``unit_price`` defaults to the product's sales price."""
    product_id: UUID
    quantity: int
    unit_price: Decimal | None = None
    discount: Decimal = Decimal("0")
    tax_id: UUID | None = None
