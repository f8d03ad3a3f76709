"""
Module: billing_engines.discount
Responsibility:
    Decide whether a discount code applies to a purchase and price it.
    Lookup and redemption live in ``billing_modules.discounts.service``;
    this module only sees already-loaded terms.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``0 <= amount <= subtotal``, rounded to cents.
    - A discount never applies outside its [start_date, end_date] window
      or once ``usage_count`` has reached ``limit_usage``.

Failure modes:
    - DiscountRejectedError with a reason code when a validity rule fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_engines.ledger import round_money
from billing_kernel.exceptions import DiscountRejectedError

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class DiscountType(str, Enum):
    """How ``value`` is interpreted."""

    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class RejectionReason(str, Enum):
    """Reason codes carried by DiscountRejectedError."""

    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    MIN_PURCHASE_NOT_MET = "MIN_PURCHASE_NOT_MET"
    MIN_QUANTITY_NOT_MET = "MIN_QUANTITY_NOT_MET"


@dataclass(frozen=True)
class DiscountTerms:
    """Snapshot of a discount's pricing rules."""

    code: str
    discount_type: DiscountType
    value: Decimal
    min_purchase: Decimal | None = None
    min_quantity: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    limit_usage: int | None = None
    usage_count: int = 0
    discount_id: UUID | None = None


@dataclass(frozen=True)
class PurchaseContext:
    """What the discount is being applied to."""

    subtotal: Decimal
    quantity: int
    reference_date: date


@dataclass(frozen=True)
class DiscountQuote:
    """Priced discount.  ``amount`` is already clamped and rounded."""

    code: str
    amount: Decimal
    discount_id: UUID | None = None


def _reject(terms: DiscountTerms, reason: RejectionReason, message: str) -> None:
    raise DiscountRejectedError(
        discount_code=terms.code,
        reason_code=reason.value,
        reason=message,
    )


def check_validity(terms: DiscountTerms, context: PurchaseContext) -> None:
    """Raise DiscountRejectedError unless every validity rule holds."""
    if terms.start_date is not None and context.reference_date < terms.start_date:
        _reject(terms, RejectionReason.NOT_STARTED, f"valid from {terms.start_date}")
    if terms.end_date is not None and context.reference_date > terms.end_date:
        _reject(terms, RejectionReason.EXPIRED, f"expired on {terms.end_date}")
    if terms.limit_usage is not None and terms.usage_count >= terms.limit_usage:
        _reject(
            terms,
            RejectionReason.USAGE_LIMIT_REACHED,
            f"usage limit {terms.limit_usage} reached",
        )
    if terms.min_purchase is not None and context.subtotal < terms.min_purchase:
        _reject(
            terms,
            RejectionReason.MIN_PURCHASE_NOT_MET,
            f"minimum purchase is {terms.min_purchase}",
        )
    if terms.min_quantity is not None and context.quantity < terms.min_quantity:
        _reject(
            terms,
            RejectionReason.MIN_QUANTITY_NOT_MET,
            f"minimum quantity is {terms.min_quantity}",
        )


def raw_discount(terms: DiscountTerms, subtotal: Decimal) -> Decimal:
    """Unclamped discount value."""
    if terms.discount_type == DiscountType.PERCENTAGE:
        return subtotal * terms.value / _HUNDRED
    return terms.value


def clamp_discount(raw: Decimal, subtotal: Decimal) -> Decimal:
    """Clamp to ``[0, subtotal]`` and round to cents."""
    upper = max(subtotal, _ZERO)
    return round_money(min(max(raw, _ZERO), upper))


def evaluate_discount(terms: DiscountTerms, context: PurchaseContext) -> DiscountQuote:
    """Validate and price ``terms`` against ``context``."""
    check_validity(terms, context)
    amount = clamp_discount(raw_discount(terms, context.subtotal), context.subtotal)
    return DiscountQuote(code=terms.code, amount=amount, discount_id=terms.discount_id)
