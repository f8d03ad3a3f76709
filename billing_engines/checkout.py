"""
Module: billing_engines.checkout
Responsibility:
    Price a subscription at checkout: line subtotals, an optional
    order-level discount spread across lines, and the checkout tax rate
    applied per line.  The same function prices the gateway order and the
    invoice issued when that order is paid, so both agree to the cent.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Usage:
    quote = price_checkout(
        [PricedLine(product_id=None, description="Pro plan",
                    quantity=1, unit_price=Decimal("1000"))],
        tax_rate=Decimal("18"),
        discount_terms=welcome10,
        reference_date=date(2025, 1, 1),
    )
    quote.totals.total            # Decimal("1062.00")
    quote.amount_minor_units      # 106200
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from billing_engines.discount import (
    DiscountQuote,
    DiscountTerms,
    PurchaseContext,
    evaluate_discount,
)
from billing_engines.ledger import (
    LineTotals,
    Totals,
    aggregate_totals,
    allocate_discount,
    apply_tax,
    line_amount,
    to_minor_units,
)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class PricedLine:
    """Input line: what is being bought, before the order discount."""

    product_id: UUID | None
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal = _ZERO


@dataclass(frozen=True)
class CheckoutLine:
    """Output line with the order discount folded into ``discount``."""

    product_id: UUID | None
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal

    @property
    def amount(self) -> Decimal:
        return self.subtotal + self.tax_amount


@dataclass(frozen=True)
class CheckoutQuote:
    lines: tuple[CheckoutLine, ...]
    totals: Totals
    tax_rate: Decimal
    discount: DiscountQuote | None = None
    currency: str = "INR"

    @property
    def discount_amount(self) -> Decimal:
        return self.discount.amount if self.discount else _ZERO

    @property
    def amount_minor_units(self) -> int:
        return to_minor_units(self.totals.total, self.currency)


def price_checkout(
    lines: Sequence[PricedLine],
    tax_rate: Decimal,
    discount_terms: DiscountTerms | None = None,
    reference_date: date | None = None,
    currency: str = "INR",
    granted_discount: DiscountQuote | None = None,
) -> CheckoutQuote:
    """
    Price ``lines`` for payment.

    ``granted_discount`` re-applies a discount already validated and
    redeemed for this order, skipping evaluation; it is how the invoice for
    a settled order reproduces the amount that was collected.

    Raises:
        InvalidLineError: a line has quantity < 1 or a negative subtotal.
        DiscountRejectedError: the discount does not apply to this purchase.
        ValueError: a discount is given without a reference date.
    """
    base_subtotals = [line_amount(l.quantity, l.unit_price, l.discount) for l in lines]

    quote: DiscountQuote | None = None
    shares: tuple[Decimal, ...] = tuple(_ZERO for _ in lines)
    if granted_discount is not None:
        quote = granted_discount
        shares = allocate_discount(base_subtotals, quote.amount)
    elif discount_terms is not None:
        if reference_date is None:
            raise ValueError("reference_date is required to evaluate a discount")
        context = PurchaseContext(
            subtotal=sum(base_subtotals, _ZERO),
            quantity=sum(l.quantity for l in lines) or 1,
            reference_date=reference_date,
        )
        quote = evaluate_discount(discount_terms, context)
        shares = allocate_discount(base_subtotals, quote.amount)

    priced: list[CheckoutLine] = []
    for line, base, share in zip(lines, base_subtotals, shares):
        subtotal = base - share
        priced.append(
            CheckoutLine(
                product_id=line.product_id,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount + share,
                subtotal=subtotal,
                tax_rate=tax_rate,
                tax_amount=apply_tax(subtotal, tax_rate),
            )
        )

    totals = aggregate_totals(
        LineTotals(subtotal=l.subtotal, tax_amount=l.tax_amount) for l in priced
    )
    return CheckoutQuote(
        lines=tuple(priced),
        totals=totals,
        tax_rate=tax_rate,
        discount=quote,
        currency=currency,
    )
